"""
Actions applied to the values of a secure pillar document.

Each scalar value is either plain text or an ASCII armored PGP message, which
is decided only by the presence of the armor header. The per-value rules are:

    encrypt   encrypt plain values, leave encrypted values alone
    decrypt   decrypt encrypted values, leave plain values alone
    rotate    decrypt encrypted values, then encrypt every value with the current key
    validate  report the key each encrypted value was encrypted for
"""

import enum
import logging
import typing

import attr

from .gpg import KeyProvider
from .pillar import NOT_FOUND, SecureDocument, dump, format_path, leaves, parse_path
from .utils import (
    ArgumentMismatch,
    DecryptFailure,
    NoMatchingKey,
    SecurePillarException,
    is_encrypted,
)

log = logging.getLogger(__name__)


class Action(enum.Enum):
    ENCRYPT = 'encrypt'
    DECRYPT = 'decrypt'
    ROTATE = 'rotate'
    VALIDATE = 'validate'

    @classmethod
    def resolve(cls, name: typing.Union[str, 'Action']) -> 'Action':
        if isinstance(name, cls):
            return name
        if name == 'keys':
            return cls.VALIDATE
        try:
            return cls(name)
        except ValueError:
            raise SecurePillarException(f"Unknown action '{name}'") from None

    @property
    def mutates(self) -> bool:
        return self is not Action.VALIDATE


def text(value: typing.Any) -> str:
    """The plaintext of a scalar, spelled the way YAML spells it."""
    if isinstance(value, bool):
        return 'true' if value else 'false'
    return str(value)


def check_pairs(
        names: typing.Sequence[str],
        values: typing.Sequence[str]) -> typing.Tuple[typing.List[str], typing.List[str]]:
    names, values = list(names), list(values)

    if len(names) != len(values):
        raise ArgumentMismatch(
            f"Mismatch between number of names ({len(names)}) "
            f"and values ({len(values)})")
    if not names:
        raise ArgumentMismatch("No secret names provided")
    for position, name in enumerate(names, start=1):
        if not name or not name.strip():
            raise ArgumentMismatch(f"Secret name at position {position} is empty")

    return names, values


@attr.s(frozen=True)
class KeyReport:
    entries: typing.Tuple[typing.Tuple[str, str], ...] = attr.ib(converter=tuple)

    @property
    def unique(self) -> typing.Tuple[str, ...]:
        return tuple(dict.fromkeys(key for _, key in self.entries))

    @property
    def count(self) -> int:
        return len(self.unique)

    def summary(self) -> str:
        return '\n'.join([f"{self.count} keys found:", *(f"  {key}" for key in self.unique)])

    def format(self) -> bytes:
        return dump(dict(self.entries)).encode('utf-8')


@attr.s(frozen=True)
class Processor:
    keys: KeyProvider = attr.ib()

    def leaf(self, value: typing.Any, action: Action) -> typing.Any:
        if value is None:
            return value

        if action is Action.ENCRYPT:
            if is_encrypted(value):
                return value
            return self.keys.encrypt(text(value))

        if action is Action.DECRYPT:
            if is_encrypted(value):
                return self.keys.decrypt(value)
            return value

        if action is Action.ROTATE:
            if is_encrypted(value):
                value = self.keys.decrypt(value)
            return self.keys.encrypt(text(value))

        raise SecurePillarException(f"'{action.value}' does not change values")

    def process_values(self, value: typing.Any, action: Action) -> typing.Any:
        """Return a processed copy of a value, recursing into mappings and lists."""
        if isinstance(value, dict):
            return {k: self.process_values(v, action) for k, v in value.items()}
        if isinstance(value, list):
            return [self.process_values(v, action) for v in value]
        return self.leaf(value, action)

    def perform(self, document: SecureDocument, action: typing.Union[str, Action]) -> bytes:
        """
        Apply an action to the secure element of a document (or all of it).

        Returns the formatted document, or the key report for 'validate'. The
        document is only changed once every value was processed.
        """
        action = Action.resolve(action)

        if document.error is not None:
            raise document.error

        if document.is_include:
            log.info(f"Skipping {document.name} as it contains include directives")
            return b''

        if action is Action.VALIDATE:
            return self.report(document).format()

        scope = document.scope()
        if scope is NOT_FOUND:
            log.info(f"{document.name} has no '{document.element}' element, "
                     f"nothing to {action.value}")
            return document.format()

        log.debug(f"Running {action.value} on {document.name}")
        processed = self.process_values(scope, action)
        if document.element:
            document.tree[document.element] = processed
        else:
            document.tree = processed

        return document.format()

    def process_path(
            self,
            document: SecureDocument,
            path: str,
            action: typing.Union[str, Action]) -> typing.Any:
        """
        Apply an action to the value at a single path.

        Returns the new value, a KeyReport for 'validate', or NOT_FOUND.
        """
        action = Action.resolve(action)
        parts = parse_path(path)

        if document.error is not None:
            raise document.error
        if document.is_include:
            raise SecurePillarException(
                f"{document.name} contains include directives and cannot be processed")

        value = document.get(parts)
        if value is NOT_FOUND:
            log.warning(f"Unable to find path '{format_path(parts)}' in {document.name}")
            return NOT_FOUND

        if action is Action.VALIDATE:
            return self._report(leaves(value, parts), document.name)

        processed = self.process_values(value, action)
        document.set(parts, processed)
        return processed

    def process_pairs(
            self,
            document: SecureDocument,
            names: typing.Sequence[str],
            values: typing.Sequence[str]) -> None:
        """Encrypt values and store them under names (paths), e.g. for 'create'."""
        names, values = check_pairs(names, values)

        if document.error is not None:
            raise document.error
        if document.is_include:
            raise SecurePillarException(
                f"{document.name} contains include directives and cannot be updated")

        encrypted = [self.leaf(value, Action.ENCRYPT) for value in values]

        for name, value in zip(names, encrypted):
            path = parse_path(name.strip())
            if document.element:
                path = (document.element, *path)
            log.debug(f"Setting {format_path(path)} in {document.name}")
            document.set(path, value)

    def report(self, document: SecureDocument) -> KeyReport:
        if document.error is not None:
            raise document.error
        if document.scope() is NOT_FOUND:
            log.info(f"{document.name} has no '{document.element}' element")
        return self._report(document.secure_leaves(), document.name)

    def _report(self, pairs, name: str) -> KeyReport:
        entries = []
        for path, value in pairs:
            if not is_encrypted(value):
                continue
            try:
                entries.append((format_path(path), self.keys.key_used_for(value)))
            except (DecryptFailure, NoMatchingKey) as error:
                log.warning(f"{name}: {format_path(path)}: {error.message}")
        return KeyReport(entries)
