import logging
import pathlib
import re
import typing

import attr
import gnupg

from .utils import (
    DecryptFailure,
    EncryptFailure,
    KeyNotFound,
    NoMatchingKey,
    NotPgpMessage,
    SecringEmpty,
    expand_path,
)

log = logging.getLogger(__name__)

ARMOR_BEGIN = re.compile(r'^-----BEGIN PGP ([A-Z ,0-9/]+)-----\s*$', re.MULTILINE)
USER_ID = re.compile(r'^(?P<name>.*?)\s*(?:\((?P<comment>.*)\))?\s*(?:<(?P<email>[^>]*)>)?$')

Key = typing.Dict[str, typing.Any]


def block_type(text: str) -> typing.Optional[str]:
    """Return the type of the first ASCII armored block in some text."""
    match = ARMOR_BEGIN.search(text)
    return match.group(1) if match else None


def parse_uid(uid: str) -> typing.Tuple[str, str]:
    """Split a user id like 'Name (comment) <email>' into name and email."""
    match = USER_ID.match(uid.strip())
    if not match:
        return uid, ''
    return match.group('name') or '', match.group('email') or ''


def key_ids(key: Key) -> typing.Sequence[str]:
    """All the ids a key can be addressed by, upper case."""
    ids = [key.get('fingerprint', ''), key.get('keyid', '')]
    for subkey in key.get('subkeys', []):
        ids.extend(s for s in subkey[:3] if isinstance(s, str) and s and len(s) >= 8)
    return tuple(i.upper() for i in ids if i)


def matches_id(identity: str, key: Key) -> bool:
    """Match a fingerprint, or a long or short key id, against a key."""
    identity = identity.upper().replace(' ', '')
    if identity.startswith('0X'):
        identity = identity[2:]
    if len(identity) < 8 or not all(c in '0123456789ABCDEF' for c in identity):
        return False
    return any(i == identity or (len(i) > len(identity) and i.endswith(identity))
               for i in key_ids(key))


def matches_email(identity: str, key: Key) -> bool:
    return any(parse_uid(uid)[1] == identity for uid in key.get('uids', []))


def matches_name(identity: str, key: Key) -> bool:
    return any(identity in (uid, parse_uid(uid)[0]) for uid in key.get('uids', []))


def find_key(keys: typing.Sequence[Key], identity: str) -> typing.Optional[Key]:
    """
    Find the key an identity refers to.

    Fingerprints and key ids are tried first, then email addresses, then names.
    The first matching key in keyring order wins.
    """
    for matcher in (matches_id, matches_email, matches_name):
        for key in keys:
            if matcher(identity, key):
                return key
    return None


def gnupg_home(pubring: pathlib.Path) -> pathlib.Path:
    return pubring.parent


@attr.s(frozen=True, kw_only=True)
class KeyProvider:
    """
    A resolved PGP key and the keyrings used to encrypt and decrypt values.

    Built once per invocation and shared read-only between workers.
    """
    pubring: pathlib.Path = attr.ib()
    secring: pathlib.Path = attr.ib()
    identity: typing.Optional[str] = attr.ib(default=None)
    key: typing.Optional[Key] = attr.ib(default=None, repr=False)
    gpg: gnupg.GPG = attr.ib(repr=False, eq=False)

    @classmethod
    def resolve(
            cls,
            identity: typing.Optional[str],
            pubring: typing.Union[str, pathlib.Path],
            secring: typing.Union[str, pathlib.Path]) -> 'KeyProvider':
        pubring = expand_path(pubring)
        secring = expand_path(secring)

        if not pubring.is_file():
            raise KeyNotFound(f"Public keyring {pubring} does not exist")
        if not secring.exists():
            log.info(f"Secret keyring {secring} does not exist, "
                     f"using the secret keys known to {gnupg_home(pubring)}")

        gpg = gnupg.GPG(
            gnupghome=gnupg_home(pubring).as_posix(),
            keyring=pubring.as_posix(),
            secret_keyring=secring.as_posix())
        gpg.encoding = 'utf-8'

        key = None
        if identity:
            key = find_key(gpg.list_keys(), identity)
            if key is None:
                raise KeyNotFound(
                    f"Unable to find key '{identity}' in public keyring {pubring}")
            log.debug(f"Resolved '{identity}' to {key['fingerprint']}")

        return cls(pubring=pubring, secring=secring, identity=identity, key=key, gpg=gpg)

    @property
    def fingerprint(self) -> typing.Optional[str]:
        return self.key['fingerprint'] if self.key else None

    def public_keys(self) -> typing.Sequence[Key]:
        return self.gpg.list_keys()

    def secret_keys(self) -> typing.Sequence[Key]:
        return self.gpg.list_keys(secret=True)

    def encrypt(self, plaintext: str) -> str:
        if self.key is None:
            raise KeyNotFound("No PGP key configured for encryption")

        result = self.gpg.encrypt(
            plaintext,
            [self.key['fingerprint']],
            armor=True,
            always_trust=True)
        if not result.ok:
            raise EncryptFailure(f"Encryption with {self.identity} failed: {result.status}")
        return str(result)

    def check_message(self, ciphertext: str) -> None:
        kind = block_type(ciphertext)
        if kind is None:
            raise NotPgpMessage("Value is not an ASCII armored PGP block")
        if kind != 'MESSAGE':
            raise NotPgpMessage(f"Block type is not PGP MESSAGE: PGP {kind}")

    def check_secring(self) -> typing.Sequence[Key]:
        keys = self.secret_keys()
        if not keys:
            raise SecringEmpty(f"No secret keys available in {self.secring}")
        return keys

    def decrypt(self, ciphertext: str) -> str:
        self.check_message(ciphertext)
        self.check_secring()

        result = self.gpg.decrypt(ciphertext, always_trust=True)
        if not result.ok:
            raise DecryptFailure(f"Unable to decrypt PGP message: {result.status}")
        return result.data.decode(self.gpg.encoding)

    def key_used_for(self, ciphertext: str) -> str:
        """Name the secret key that can decrypt a message, without decrypting it."""
        self.check_message(ciphertext)
        keys = self.check_secring()

        for recipient in self.gpg.get_recipients(ciphertext):
            for key in keys:
                if matches_id(recipient, key):
                    uid = key['uids'][0] if key.get('uids') else key['keyid']
                    return f"{recipient.upper()}: {uid}"

        raise NoMatchingKey(f"No secret key in {self.secring} matches the message recipients")
