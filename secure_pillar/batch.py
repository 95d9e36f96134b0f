"""
Apply one action to every pillar file under a directory.
"""

import concurrent.futures
import logging
import pathlib
import typing

import attr

from .actions import Action, KeyReport, Processor
from .pillar import SecureDocument, write
from .utils import (
    BatchFailure,
    NoMatchingFiles,
    NotADirectory,
    SecurePillarException,
    expand_path,
)

log = logging.getLogger(__name__)

DEFAULT_EXTENSION = '.sls'


@attr.s(frozen=True, kw_only=True)
class FileResult:
    path: pathlib.Path = attr.ib()
    written: int = attr.ib(default=0)
    skipped: bool = attr.ib(default=False)
    report: typing.Optional[KeyReport] = attr.ib(default=None)


def find_files(
        root: typing.Union[str, pathlib.Path],
        extension: str = DEFAULT_EXTENSION) -> typing.Sequence[pathlib.Path]:
    """Recursively find files with names ending in an extension."""
    root = expand_path(root)
    if not root.is_dir():
        raise NotADirectory(f"{root} is not a directory")

    log.info(f"Searching for '{extension}' files in {root}")
    files = tuple(sorted(
        p for p in root.rglob('*') if p.is_file() and p.name.endswith(extension)))

    if not files:
        raise NoMatchingFiles(f"No files ending in '{extension}' found in {root}")

    log.info(f"Found {len(files)} '{extension}' files in {root}")
    return files


def apply(
        path: pathlib.Path,
        action: Action,
        processor: Processor,
        element: typing.Optional[str] = None) -> FileResult:
    """Apply an action to one file, writing mutated documents back in place."""
    document = SecureDocument.open(path, element)

    if document.is_include:
        log.info(f"Skipping {document.name} as it contains include directives")
        return FileResult(path=path, skipped=True)

    if document.error is not None:
        log.warning(f"Skipping {document.name}: {document.error.message}")
        return FileResult(path=path, skipped=True)

    if not document.tree:
        log.info(f"Skipping {document.name} as it has no values")
        return FileResult(path=path, skipped=True)

    if not action.mutates:
        return FileResult(path=path, report=processor.report(document))

    buffer = processor.perform(document, action)
    if not buffer:
        raise SecurePillarException(
            f"Zero length buffer produced by '{action.value}' for {document.name}")

    return FileResult(path=path, written=write(buffer, path))


def process_directory(
        root: typing.Union[str, pathlib.Path],
        extension: str,
        action: typing.Union[str, Action],
        processor: Processor,
        element: typing.Optional[str] = None,
        max_workers: typing.Optional[int] = None) -> typing.Sequence[FileResult]:
    """
    Apply an action to every matching file under a directory concurrently.

    There is one worker per file unless max_workers is lower. Unparseable and
    include files are skipped. The first error stops collection and is raised
    as a BatchFailure: workers already running still finish (and may still
    write their file), files not yet started are cancelled, and files already
    written are left as they are.
    """
    action = Action.resolve(action)
    files = find_files(root, extension)
    workers = min(len(files), max_workers) if max_workers else len(files)

    log.info(f"Running {action.value} on {len(files)} files with {workers} workers")
    results: typing.List[FileResult] = []
    executor = concurrent.futures.ThreadPoolExecutor(
        max_workers=workers, thread_name_prefix='secure-pillar')
    try:
        futures = {
            executor.submit(apply, path, action, processor, element): path
            for path in files}

        for future in concurrent.futures.as_completed(futures):
            try:
                result = future.result()
            except Exception as error:
                log.error(f"Failed to {action.value} {futures[future]}: {error}")
                raise BatchFailure(error, path=futures[future], completed=results) from error

            results.append(result)
            log.info(f"Finished processing {len(results)} of {len(files)} files")
    finally:
        executor.shutdown(wait=False, cancel_futures=True)

    return results
