"""
SaltStack pillar files as a generic YAML tree.

A document is a mapping of plain Python values as loaded by PyYAML. Values are
addressed with colon separated paths, e.g. 'secure_vars:db:password'; there is
no escaping, so keys containing ':' cannot be addressed. Keys YAML loads as
numbers or booleans are addressed by their spelling, e.g. 'ports:80' or
'features:true'.
"""

import logging
import os
import pathlib
import re
import tempfile
import typing

import attr
import click
import yaml

from .utils import ParseFailure, SecurePillarException

log = logging.getLogger(__name__)

RENDERER = '#!yaml|gpg\n\n'
STDIO = '-'
INCLUDE = re.compile(r'^include\s*:', re.MULTILINE)

Path = typing.Tuple[typing.Union[str, int], ...]
Tree = typing.Dict[typing.Any, typing.Any]


class _NotFound:
    def __repr__(self):
        return 'NOT_FOUND'

    def __bool__(self):
        return False


NOT_FOUND = _NotFound()


class Dumper(yaml.SafeDumper):
    pass


def _represent_str(dumper: yaml.SafeDumper, data: str) -> yaml.Node:
    if '\n' in data:
        return dumper.represent_scalar('tag:yaml.org,2002:str', data, style='|')
    return dumper.represent_str(data)


Dumper.add_representer(str, _represent_str)


def dump(data: typing.Any) -> str:
    return yaml.dump(
        data,
        Dumper=Dumper,
        default_flow_style=False,
        sort_keys=False,
        allow_unicode=True)


def parse_path(path: typing.Union[str, typing.Sequence]) -> Path:
    """Split 'a:b:c' into ('a', 'b', 'c'). Sequences are passed through."""
    if isinstance(path, str):
        return tuple(path.split(':'))
    return tuple(path)


def format_path(path: Path) -> str:
    return ':'.join(str(part) for part in path)


def _spelling(key: typing.Any) -> str:
    if isinstance(key, bool):
        return 'true' if key else 'false'
    return str(key)


def _key(node: Tree, key: typing.Union[str, int]) -> typing.Any:
    """The existing mapping key a path segment names, or the segment itself."""
    if key in node:
        return key
    # YAML keys are not always strings, e.g. '80: http' or 'true: yes'.
    for candidate in node:
        if isinstance(candidate, bool):
            if _spelling(candidate) == str(key).lower():
                return candidate
        elif not isinstance(candidate, str) and str(candidate) == str(key):
            return candidate
    return key


def _child(node: typing.Any, key: typing.Union[str, int]) -> typing.Any:
    if isinstance(node, dict):
        return node.get(_key(node, key), NOT_FOUND)
    if isinstance(node, list):
        try:
            index = int(key)
        except ValueError:
            return NOT_FOUND
        if -len(node) <= index < len(node):
            return node[index]
    return NOT_FOUND


def dig(tree: typing.Any, path: Path) -> typing.Any:
    node = tree
    for key in path:
        node = _child(node, key)
        if node is NOT_FOUND:
            break
    return node


def leaves(node: typing.Any, prefix: Path = ()) -> typing.Iterator[typing.Tuple[Path, typing.Any]]:
    """Depth first (path, value) pairs for every scalar under a node."""
    if isinstance(node, dict):
        for key, value in node.items():
            yield from leaves(value, prefix + (key,))
    elif isinstance(node, list):
        for index, value in enumerate(node):
            yield from leaves(value, prefix + (index,))
    else:
        yield prefix, node


@attr.s(kw_only=True)
class SecureDocument:
    path: str = attr.ib()
    tree: Tree = attr.ib(factory=dict)
    element: typing.Optional[str] = attr.ib(default=None)
    is_include: bool = attr.ib(default=False)
    error: typing.Optional[Exception] = attr.ib(default=None)

    @classmethod
    def read(
            cls,
            text: str,
            path: str = STDIO,
            element: typing.Optional[str] = None) -> 'SecureDocument':
        """Parse YAML text, recording parse failures rather than raising them."""
        document = cls(path=path, element=element or None)
        document.is_include = INCLUDE.search(text) is not None
        if document.is_include:
            log.info(f"{document.name} contains include directives")

        try:
            tree = yaml.safe_load(text)
        except yaml.YAMLError as error:
            document.error = ParseFailure(f"Unable to parse {document.name}: {error}")
            log.warning(document.error.message)
            return document

        if tree is None:
            tree = {}
        if not isinstance(tree, dict):
            document.error = ParseFailure(
                f"Unable to parse {document.name}: top level is not a mapping")
            log.warning(document.error.message)
            return document

        document.tree = tree
        return document

    @classmethod
    def open(
            cls,
            path: typing.Union[str, pathlib.Path],
            element: typing.Optional[str] = None,
            create: bool = False) -> 'SecureDocument':
        if str(path) == STDIO:
            return cls.read(click.get_text_stream('stdin').read(), STDIO, element)

        path = pathlib.Path(path)
        log.debug(f"Reading {path}")
        try:
            text = path.read_text(encoding='utf-8')
        except FileNotFoundError:
            if create:
                return cls(path=str(path), element=element or None)
            return cls(path=str(path), element=element or None,
                       error=ParseFailure(f"{path} does not exist"))
        except (OSError, UnicodeDecodeError) as error:
            return cls(path=str(path), element=element or None,
                       error=ParseFailure(f"Unable to read {path}: {error}"))

        return cls.read(text, str(path), element)

    @property
    def name(self) -> str:
        if self.path == STDIO:
            return '<stdin>'
        return os.path.relpath(self.path) if os.path.isabs(self.path) else self.path

    def get(self, path: typing.Union[str, Path]) -> typing.Any:
        return dig(self.tree, parse_path(path))

    def set(self, path: typing.Union[str, Path], value: typing.Any) -> None:
        """Set a value, creating any missing mappings along the way."""
        parts = parse_path(path)
        if not parts:
            raise SecurePillarException("Cannot set a value at an empty path")

        node: typing.Any = self.tree
        for key in parts[:-1]:
            child = _child(node, key)
            if not isinstance(child, (dict, list)):
                if not isinstance(node, dict):
                    raise SecurePillarException(
                        f"Cannot create '{key}' inside a list at {format_path(parts)}")
                child = node[_key(node, key)] = {}
            node = child

        last = parts[-1]
        if isinstance(node, list):
            try:
                node[int(last)] = value
            except (ValueError, IndexError):
                raise SecurePillarException(
                    f"No list index '{last}' at {format_path(parts)}") from None
        else:
            node[_key(node, last)] = value

    def scope(self) -> typing.Any:
        """The sub-tree actions apply to, or NOT_FOUND if the element is missing."""
        if not self.element:
            return self.tree
        return self.tree.get(self.element, NOT_FOUND)

    def secure_leaves(self) -> typing.Iterator[typing.Tuple[Path, typing.Any]]:
        scope = self.scope()
        if scope is NOT_FOUND:
            return iter(())
        prefix = (self.element,) if self.element else ()
        return leaves(scope, prefix)

    def format(self) -> bytes:
        if not self.tree:
            raise SecurePillarException(f"{self.name} has no values to format")
        try:
            text = dump(self.tree)
        except yaml.YAMLError as error:
            raise SecurePillarException(f"{self.name} format error: {error}")
        return (RENDERER + text).encode('utf-8')


def write(buffer: bytes, path: typing.Union[str, pathlib.Path]) -> int:
    """
    Write a whole buffer to a file, or to stdout for '-'.

    The file is replaced atomically by a temporary file in the same directory.
    """
    if str(path) == STDIO:
        stream = click.get_binary_stream('stdout')
        stream.write(buffer)
        stream.flush()
        return len(buffer)

    path = pathlib.Path(path).absolute()
    path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)

    fd, temporary = tempfile.mkstemp(prefix=f'.{path.name}.', dir=path.parent)
    try:
        with os.fdopen(fd, 'wb') as f:
            f.write(buffer)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(temporary, 0o600)
        os.replace(temporary, path)
    except BaseException:
        if os.path.exists(temporary):
            os.unlink(temporary)
        raise

    log.info(f"Wrote {len(buffer)} bytes to {os.path.relpath(path)}")
    return len(buffer)

