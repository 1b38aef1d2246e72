"""Directory-level recompression.

Files are discovered up front in lexical order, each one is compressed in
isolation and its outcome is folded into a :class:`BatchStats`. A failing
file never stops the run; only an unreadable input directory does.
"""

from __future__ import annotations

from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from threading import Event
import logging
from typing import Callable

from .compress import compress_image_file
from .errors import CompressError, ImageIOError
from .models import (
    COMPRESSED,
    FAILED,
    SKIPPED,
    BatchStats,
    CompressOptions,
    FileResult,
    FileTask,
    OutputFormat,
    iter_source_files,
)
from .router import FormatRouter

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int, FileResult], None]


def compress_directory(
    input_dir: Path | str,
    output_dir: Path | str,
    to_format: OutputFormat | str,
    options: CompressOptions | None = None,
    recursive: bool = False,
    *,
    router: FormatRouter | None = None,
    workers: int = 1,
    cancel: Event | None = None,
    progress: ProgressCallback | None = None,
) -> BatchStats:
    fmt = to_format if isinstance(to_format, OutputFormat) else OutputFormat.from_extension(to_format)
    options = options or CompressOptions()
    router = router or FormatRouter()
    router.codec_for(fmt)
    input_dir = Path(input_dir)
    output_dir = Path(output_dir)
    if not input_dir.is_dir():
        raise ImageIOError("input directory not found", input_dir)
    try:
        output_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise ImageIOError(f"failed to create output directory ({exc.strerror or exc})", output_dir) from exc

    files = iter_source_files(input_dir, recursive, exclude=nested_output_dir(input_dir, output_dir))
    tasks = [build_task(source, input_dir, output_dir, fmt) for source in files]
    logger.info("found %d file(s) in %s", len(tasks), input_dir)

    stats = BatchStats()
    total = len(tasks)

    def collect(result: FileResult) -> None:
        stats.record(result)
        if progress is not None:
            progress(stats.visited, total, result)

    if workers <= 1:
        for task in tasks:
            if cancel is not None and cancel.is_set():
                break
            collect(process_task(task, options, router))
    else:
        _run_pool(tasks, options, router, workers, cancel, collect)

    if stats.visited < total:
        logger.warning("batch cancelled after %d of %d file(s)", stats.visited, total)
    logger.info(
        "batch finished: %d compressed, %d failed, %d skipped",
        stats.compressed_count,
        stats.failed_count,
        stats.skipped_count,
    )
    return stats


def _run_pool(
    tasks: list[FileTask],
    options: CompressOptions,
    router: FormatRouter,
    workers: int,
    cancel: Event | None,
    collect: Callable[[FileResult], None],
) -> None:
    # Results are drained in submission order by this thread only. A task
    # whose output is still being written by an earlier one waits for it.
    pending: deque[tuple[Path, Future[FileResult]]] = deque()
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="imgrecompress") as executor:
        for task in tasks:
            if cancel is not None and cancel.is_set():
                break
            while pending and (
                len(pending) >= workers or any(output == task.output for output, _ in pending)
            ):
                collect(pending.popleft()[1].result())
            pending.append((task.output, executor.submit(process_task, task, options, router)))
        while pending:
            collect(pending.popleft()[1].result())


def build_task(source: Path, input_dir: Path, output_dir: Path, fmt: OutputFormat) -> FileTask:
    relative = source.relative_to(input_dir)
    output = (output_dir / relative).with_suffix(f".{fmt.extension}")
    return FileTask(source, output, fmt)


def nested_output_dir(input_dir: Path, output_dir: Path) -> Path | None:
    """Output directory as seen from ``input_dir`` when it lives inside it."""
    resolved_input = input_dir.resolve()
    resolved_output = output_dir.resolve()
    if resolved_output == resolved_input or not resolved_output.is_relative_to(resolved_input):
        return None
    return input_dir / resolved_output.relative_to(resolved_input)


def process_task(task: FileTask, options: CompressOptions, router: FormatRouter) -> FileResult:
    if task.output.exists() and not options.overwrite:
        logger.debug("skipping %s, %s exists", task.source, task.output)
        return FileResult(task, SKIPPED, reason="output exists")
    try:
        stats = compress_image_file(task.source, task.output, options, router)
    except CompressError as exc:
        logger.debug("failed %s: %s", task.source, exc)
        return FileResult(task, FAILED, reason=exc.message)
    return FileResult(task, COMPRESSED, stats=stats)
