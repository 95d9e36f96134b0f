import logging
import os.path
import pathlib
import typing

import click
import git

log = logging.getLogger(__name__)

PGP_HEADER = '-----BEGIN PGP MESSAGE-----'


class SecurePillarException(click.ClickException):
    pass


class KeyNotFound(SecurePillarException):
    pass


class EncryptFailure(SecurePillarException):
    pass


class DecryptFailure(SecurePillarException):
    pass


class NotPgpMessage(DecryptFailure):
    pass


class SecringEmpty(DecryptFailure):
    pass


class NoMatchingKey(SecurePillarException):
    pass


class ParseFailure(SecurePillarException):
    pass


class ArgumentMismatch(SecurePillarException):
    pass


class NotADirectory(SecurePillarException):
    pass


class NoMatchingFiles(SecurePillarException):
    pass


class BatchFailure(SecurePillarException):
    """The first error raised while processing a directory.

    Files processed before the error was seen may already be written.
    """

    def __init__(
            self,
            error: Exception,
            path: typing.Optional[pathlib.Path] = None,
            completed: typing.Sequence = ()):
        message = getattr(error, 'message', None) or str(error) or type(error).__name__
        super().__init__(f"{path}: {message}" if path else message)
        self.error = error
        self.path = path
        self.completed = tuple(completed)


def is_encrypted(value: typing.Any) -> bool:
    return isinstance(value, str) and PGP_HEADER in value


def expand_path(path: typing.Union[str, pathlib.Path]) -> pathlib.Path:
    """Expand '~' and make a path absolute."""
    return pathlib.Path(os.path.expanduser(str(path))).absolute()


def find_git_directory(
        path: typing.Optional[pathlib.Path] = None) -> typing.Optional[pathlib.Path]:
    try:
        repo = git.Repo(path or pathlib.Path.cwd(), search_parent_directories=True)
    except (git.exc.InvalidGitRepositoryError, git.exc.NoSuchPathError):
        return None
    if repo.bare:
        return None
    return pathlib.Path(repo.working_dir)


def in_directory(
        file: pathlib.Path,
        directory: pathlib.Path) -> bool:
    """Check if a path is a subpath of a directory."""
    try:
        file.relative_to(directory)
    except ValueError:
        return False
    else:
        return True


def unignored_paths(
        paths: typing.Sequence[pathlib.Path]) -> typing.Sequence[pathlib.Path]:
    """
    Return the paths inside a git work tree that .gitignore does not exclude.

    Paths outside of any repository are never returned.
    """
    if not paths:
        return ()

    directory = find_git_directory(paths[0].parent)
    if directory is None:
        return ()

    resolved = {p.resolve(): p for p in paths}
    inside = {r.relative_to(directory.resolve()).as_posix(): p
              for r, p in resolved.items()
              if in_directory(r, directory.resolve())}
    if not inside:
        return ()

    repo = git.Repo(directory)
    try:
        ignored = set(repo.ignored(*inside.keys()))
    except git.exc.GitCommandError as error:
        log.warning(f"Unable to check .gitignore in {directory}: {error}")
        return ()
    log.debug(f"git check-ignore matched {len(ignored)} of {len(inside)} paths")
    return tuple(p for rel, p in sorted(inside.items()) if rel not in ignored)
