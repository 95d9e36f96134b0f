import functools
import logging
import os.path
import pathlib
import typing

import attr
import click

from . import __doc__, __version__
from .actions import Action, KeyReport, Processor, check_pairs
from .batch import DEFAULT_EXTENSION, FileResult, process_directory
from .config import KeySettings, Settings
from .gpg import KeyProvider
from .pillar import NOT_FOUND, STDIO, SecureDocument, dump, write
from .utils import SecurePillarException, unignored_paths

log = logging.getLogger(__name__)

DONE = {
    Action.ENCRYPT: 'Encrypted',
    Action.DECRYPT: 'Decrypted',
    Action.ROTATE: 'Rotated',
}


@functools.lru_cache()
def rel(path: typing.Union[str, pathlib.Path]) -> str:
    """
    Convert a path to a relative path.

    Returns a string as these should only be used for presentation.
    """
    if str(path) == STDIO:
        return '<stdout>'
    return os.path.relpath(pathlib.Path(path).absolute().as_posix(), pathlib.Path.cwd().as_posix())


def sls(path: typing.Union[str, pathlib.Path]) -> str:
    """Style a path to a pillar file."""
    return click.style(rel(path), fg='green')


class PathType(click.Path):
    def convert(self, value, param, ctx):
        return pathlib.Path(super().convert(value, param, ctx))


@attr.s(kw_only=True)
class Session:
    keys: KeySettings = attr.ib()
    element: typing.Optional[str] = attr.ib(default=None)
    extension: str = attr.ib(default=DEFAULT_EXTENSION)
    jobs: typing.Optional[int] = attr.ib(default=None)
    _provider: typing.Optional[KeyProvider] = attr.ib(default=None, init=False)

    def provider(self, require_key: bool = False) -> KeyProvider:
        if require_key and not self.keys.identity:
            raise SecurePillarException(
                "No PGP key given: use --pgp-key or a profile with a default_key")
        if self._provider is None:
            self._provider = KeyProvider.resolve(
                self.keys.identity, self.keys.pubring, self.keys.secring)
        return self._provider

    def processor(self, action: Action) -> Processor:
        return Processor(self.provider(require_key=action in (Action.ENCRYPT, Action.ROTATE)))

    def open(self, path: typing.Union[str, pathlib.Path], create: bool = False) -> SecureDocument:
        """Open a single file, where parse errors and include files are fatal."""
        document = SecureDocument.open(path, self.element, create=create)
        if document.error is not None:
            raise document.error
        if document.is_include:
            raise SecurePillarException(
                f"{document.name} contains include directives and cannot be processed")
        return document


file_option = click.option(
    '-f', '--file', 'file',
    default=STDIO,
    show_default=True,
    help="Input file, '-' reads from stdin.")

outfile_option = click.option(
    '-o', '--outfile', 'outfile',
    default=STDIO,
    show_default=True,
    help="Output file, '-' writes to stdout.")

update_option = click.option(
    '-u', '--update', 'update',
    default=False,
    is_flag=True,
    help="Write the result back to the input file.")

dir_option = click.option(
    '-d', '--dir', 'directory',
    type=PathType(),
    default=None,
    help="Process every pillar file under this directory.")

path_option = click.option(
    '-p', '--path', 'yaml_path',
    metavar='PATH',
    default=None,
    help="Colon separated YAML path, e.g. 'some:yaml:path'.")

names_option = click.option(
    '-n', '--name', 'names',
    multiple=True,
    required=True,
    help="Secret name (or path), may be repeated.")

values_option = click.option(
    '-s', '--value', 'values',
    multiple=True,
    required=True,
    help="Secret value, one for each --name.")

mode_argument = click.argument(
    'mode',
    type=click.Choice(['all', 'recurse', 'path']))


@click.group(help=__doc__)
@click.option(
    '--config', 'config_path',
    type=PathType(dir_okay=False),
    default=None,
    help="Config file with profiles, defaults to ~/.config/secure-pillar/config.yaml.")
@click.option(
    '--profile', 'profile',
    default=None,
    help="Profile name from the config file.")
@click.option(
    '-k', '--pgp-key', 'identity',
    metavar='ID',
    envvar='SECURE_PILLAR_KEY',
    default=None,
    help="PGP key name, email, or ID to use for encryption.")
@click.option(
    '--pubring', 'pubring',
    default=None,
    help="PGP public keyring, defaults to $GNUPGHOME/pubring.kbx or pubring.gpg.")
@click.option(
    '--secring', 'secring',
    default=None,
    help="PGP secret keyring, defaults to $GNUPGHOME/secring.gpg.")
@click.option(
    '-e', '--element', 'element',
    default=None,
    help="Top level element under which encrypted values are kept.")
@click.option(
    '-x', '--extension', 'extension',
    default=DEFAULT_EXTENSION,
    show_default=True,
    help="File extension searched for when recursing.")
@click.option(
    '-j', '--jobs', 'jobs',
    type=click.IntRange(min=1),
    default=None,
    help="Maximum number of files processed at once when recursing.")
@click.option(
    '-d', '--debug', 'debug',
    default=False,
    is_flag=True,
    help="Enable debug logging.")
@click.option(
    '-v', '--verbose', 'verbose',
    default=False,
    is_flag=True,
    help="Log each file as it is written.")
@click.pass_context
def main(
        ctx,
        config_path: typing.Optional[pathlib.Path],
        profile: typing.Optional[str],
        identity: typing.Optional[str],
        pubring: typing.Optional[str],
        secring: typing.Optional[str],
        element: typing.Optional[str],
        extension: str,
        jobs: typing.Optional[int],
        debug: bool,
        verbose: bool):
    logging.basicConfig(level=(
        logging.DEBUG if debug else logging.INFO if verbose else logging.WARNING))
    settings = Settings.load(config_path)
    ctx.obj = Session(
        keys=KeySettings.resolve(settings, profile, identity, pubring, secring),
        element=element,
        extension=extension,
        jobs=jobs)


def echo_value(path: str, value: typing.Any) -> None:
    if isinstance(value, (dict, list)):
        click.echo(dump({path: value}), nl=False)
    else:
        click.echo(f"{path}: {value}")


def echo_report(report: KeyReport) -> None:
    if report.entries:
        click.echo(report.format().decode('utf-8'), nl=False)
    click.echo(report.summary())


def warn_unignored(paths: typing.Iterable[typing.Union[str, pathlib.Path]]) -> None:
    """Warn about decrypted files a git commit would pick up."""
    written = [pathlib.Path(p).absolute() for p in paths if str(p) != STDIO]
    for path in unignored_paths(written):
        click.secho(
            f"Decrypted plaintext {rel(path)} is not excluded by .gitignore",
            fg='yellow', err=True)


def target(file: str, outfile: str, update: bool) -> typing.Optional[str]:
    if update and file != STDIO:
        return file
    if outfile != STDIO:
        return outfile
    return None


def recurse(
        session: Session,
        processor: Processor,
        action: Action,
        directory: typing.Optional[pathlib.Path]) -> typing.Sequence[FileResult]:
    if directory is None:
        raise click.UsageError("--dir is required to recurse")

    results = process_directory(
        directory,
        session.extension,
        action,
        processor,
        element=session.element,
        max_workers=session.jobs)

    for result in sorted(results, key=lambda r: r.path):
        if result.skipped:
            click.echo(f"Skipped {sls(result.path)}")
        elif result.report is not None:
            click.echo(f"{sls(result.path)}:")
            click.echo(result.report.summary())
        else:
            click.echo(f"{DONE[action]} {sls(result.path)} ({result.written} bytes)")
    return results


def run(
        session: Session,
        action: Action,
        mode: str,
        file: str,
        outfile: str,
        update: bool,
        directory: typing.Optional[pathlib.Path],
        yaml_path: typing.Optional[str]) -> None:
    processor = session.processor(action)
    written: typing.List[typing.Union[str, pathlib.Path]] = []

    if mode == 'recurse':
        results = recurse(session, processor, action, directory)
        written = [r.path for r in results if r.written]

    elif mode == 'path':
        if not yaml_path:
            raise click.UsageError("--path is required for 'path'")
        document = session.open(file)
        value = processor.process_path(document, yaml_path, action)
        if value is NOT_FOUND:
            return
        echo_value(yaml_path, value)
        output = target(file, outfile, update)
        if output is not None:
            write(document.format(), output)
            written = [output]

    else:
        document = session.open(file)
        output = target(file, outfile, update) or STDIO
        write(processor.perform(document, action), output)
        written = [output]

    if action is Action.DECRYPT:
        warn_unignored(written)


@main.command()
def version():
    """Show the application version."""
    click.echo(f"secure-pillar {__version__}")


@main.command()
@names_option
@values_option
@outfile_option
@click.pass_obj
def create(
        session: Session,
        names: typing.Sequence[str],
        values: typing.Sequence[str],
        outfile: str):
    """
    Create a pillar file from encrypted name/value pairs.

    Names may be colon separated paths. With --element the values are stored
    under that element. An existing output file is added to.
    """
    check_pairs(names, values)
    processor = session.processor(Action.ENCRYPT)

    if outfile == STDIO:
        document = SecureDocument(path=STDIO, element=session.element)
    else:
        document = session.open(outfile, create=True)

    processor.process_pairs(document, names, values)
    write(document.format(), outfile)


@main.command()
@names_option
@values_option
@file_option
@click.pass_obj
def update(
        session: Session,
        names: typing.Sequence[str],
        values: typing.Sequence[str],
        file: str):
    """Add or replace encrypted values in a pillar file, in place."""
    check_pairs(names, values)
    processor = session.processor(Action.ENCRYPT)

    document = session.open(file)
    processor.process_pairs(document, names, values)
    write(document.format(), file)


@main.command()
@mode_argument
@file_option
@outfile_option
@update_option
@dir_option
@path_option
@click.pass_obj
def encrypt(
        session: Session,
        mode: str,
        file: str,
        outfile: str,
        update: bool,
        directory: typing.Optional[pathlib.Path],
        yaml_path: typing.Optional[str]):
    """
    Encrypt plain text values.

    \b
        all      every value in a file (or under --element)
        recurse  every file under --dir, in place
        path     the value at --path in a file

    Values that are already encrypted are left unchanged.
    """
    run(session, Action.ENCRYPT, mode, file, outfile, update, directory, yaml_path)


@main.command()
@mode_argument
@file_option
@outfile_option
@update_option
@dir_option
@path_option
@click.pass_obj
def decrypt(
        session: Session,
        mode: str,
        file: str,
        outfile: str,
        update: bool,
        directory: typing.Optional[pathlib.Path],
        yaml_path: typing.Optional[str]):
    """
    Decrypt encrypted values (requires the secret key).

    \b
        all      every value in a file (or under --element)
        recurse  every file under --dir, in place
        path     the value at --path in a file
    """
    run(session, Action.DECRYPT, mode, file, outfile, update, directory, yaml_path)


@main.command()
@click.option(
    '-f', '--file', 'file',
    default=None,
    help="Input file, '-' reads from stdin.")
@outfile_option
@update_option
@dir_option
@click.pass_obj
def rotate(
        session: Session,
        file: typing.Optional[str],
        outfile: str,
        update: bool,
        directory: typing.Optional[pathlib.Path]):
    """
    Decrypt values and re-encrypt everything with the given key.

    Requires the secret keys for the current values. Plain text values are
    encrypted too.
    """
    if directory is not None:
        run(session, Action.ROTATE, 'recurse', STDIO, outfile, update, directory, None)
    elif file is not None:
        run(session, Action.ROTATE, 'all', file, outfile, update, None, None)
    else:
        raise click.UsageError("Either --dir or --file is required")


@main.command()
@click.argument(
    'mode',
    type=click.Choice(['all', 'recurse', 'path', 'count']))
@file_option
@dir_option
@path_option
@click.option(
    '-v', '--verbose', 'verbose',
    default=False,
    is_flag=True,
    help="Show the keys found by 'count'.")
@click.pass_context
def keys(
        ctx,
        mode: str,
        file: str,
        directory: typing.Optional[pathlib.Path],
        yaml_path: typing.Optional[str],
        verbose: bool):
    """
    Show the PGP keys values are encrypted for (requires the secret keys).

    \b
        all      every value in a file (or under --element)
        recurse  every file under --dir
        path     the value at --path in a file
        count    the number of keys used in a file, as the exit status
                 when more than one key is used
    """
    session: Session = ctx.obj
    processor = session.processor(Action.VALIDATE)

    if mode == 'recurse':
        recurse(session, processor, Action.VALIDATE, directory)
        return

    if mode == 'path':
        if not yaml_path:
            raise click.UsageError("--path is required for 'path'")
        report = processor.process_path(session.open(file), yaml_path, Action.VALIDATE)
        if report is not NOT_FOUND:
            echo_report(report)
        return

    report = processor.report(session.open(file))

    if mode == 'count':
        if verbose:
            click.echo(report.summary())
        if report.count > 1:
            ctx.exit(report.count)
        return

    echo_report(report)
