import base64
import pathlib
import shutil
import typing

import attr
import click.testing
import gnupg
import pytest

import secure_pillar.cli
from secure_pillar.actions import Processor
from secure_pillar.config import keyrings
from secure_pillar.gpg import KeyProvider
from secure_pillar.utils import PGP_HEADER, DecryptFailure, EncryptFailure

ROOT = pathlib.Path(__file__).parent

KEY = 'Test Salt Master'
NEW_KEY = 'New Salt Master'


@pytest.fixture(scope='session')
def gnupghome(tmp_path_factory) -> pathlib.Path:
    """A throwaway GnuPG home with two unprotected keys."""
    if shutil.which('gpg') is None:
        pytest.skip("gpg is not installed")

    home = tmp_path_factory.mktemp('gnupg')
    home.chmod(0o700)
    gpg = gnupg.GPG(gnupghome=home.as_posix())

    for name, email in ((KEY, 'test@example.com'), (NEW_KEY, 'new@example.com')):
        result = gpg.gen_key(gpg.gen_key_input(
            key_type='RSA',
            key_length=2048,
            subkey_type='RSA',
            subkey_length=2048,
            subkey_usage='encrypt',
            name_real=name,
            name_email=email,
            no_protection=True))
        assert result.fingerprint, result.stderr

    return home


@pytest.fixture(scope='session')
def public_home(gnupghome, tmp_path_factory) -> pathlib.Path:
    """A GnuPG home holding only the public half of KEY."""
    home = tmp_path_factory.mktemp('public')
    home.chmod(0o700)
    exported = gnupg.GPG(gnupghome=gnupghome.as_posix()).export_keys(KEY)
    result = gnupg.GPG(gnupghome=home.as_posix()).import_keys(exported)
    assert result.count == 1, result.stderr
    return home


def provider(home: pathlib.Path, identity: typing.Optional[str]) -> KeyProvider:
    return KeyProvider.resolve(identity, *keyrings(home))


@pytest.fixture(scope='session')
def keys(gnupghome) -> KeyProvider:
    return provider(gnupghome, KEY)


@pytest.fixture(scope='session')
def new_keys(gnupghome) -> KeyProvider:
    return provider(gnupghome, NEW_KEY)


@pytest.fixture(scope='session')
def public_keys(public_home) -> KeyProvider:
    return provider(public_home, KEY)


@pytest.fixture()
def processor(keys) -> Processor:
    return Processor(keys)


@attr.s(frozen=True)
class FakeKeys:
    """
    Reversible stand-in for a KeyProvider that does not need gpg.

    Encrypting the value 'boom' fails.
    """
    name: str = attr.ib(default='FAKE')

    def encrypt(self, plaintext: str) -> str:
        if plaintext == 'boom':
            raise EncryptFailure("boom")
        body = base64.b64encode(plaintext.encode("utf-8")).decode("ascii")
        return f"{PGP_HEADER}\n{self.name}:{body}\n-----END PGP MESSAGE-----\n"

    def decrypt(self, ciphertext: str) -> str:
        body = ciphertext.splitlines()[1]
        name, _, encoded = body.partition(":")
        if name != self.name:
            raise DecryptFailure(f"Not encrypted for {self.name}")
        return base64.b64decode(encoded).decode("utf-8")

    def key_used_for(self, ciphertext: str) -> str:
        return ciphertext.splitlines()[1].partition(':')[0]


@pytest.fixture()
def fake() -> Processor:
    return Processor(FakeKeys())


@pytest.fixture()
def pillars(tmp_path) -> pathlib.Path:
    """A copy of the example pillar files that tests can modify."""
    directory = tmp_path / 'pillar'
    shutil.copytree(ROOT / 'files', directory)
    return directory


@pytest.fixture()
def invoke(gnupghome, monkeypatch, tmp_path):
    monkeypatch.setenv('GNUPGHOME', gnupghome.as_posix())
    monkeypatch.setenv('SECURE_PILLAR_CONFIG', (tmp_path / 'missing.yaml').as_posix())
    monkeypatch.delenv('SECURE_PILLAR_KEY', raising=False)

    def invoke_func(
            arguments: typing.Sequence[str],
            input: typing.Optional[str] = None,
            exit_code: int = 0) -> click.testing.Result:
        assert all(isinstance(arg, str) for arg in arguments)
        runner = click.testing.CliRunner()
        result = runner.invoke(secure_pillar.cli.main, list(arguments), input=input)
        if result.exit_code != exit_code:
            message = (f"Command secure-pillar {' '.join(arguments)} exited with "
                       f"{result.exit_code}: {result.output}")
            raise Exception(message) from result.exception
        return result

    return invoke_func
