from __future__ import annotations

from pathlib import Path
import argparse
import logging
import signal
import sys
import threading

from .batch import compress_directory
from .compress import compress_image_file
from .errors import CompressError, InvalidOptions
from .models import CompressOptions, FileResult, ResizeMode, ResizeOptions
from .plugin import VERSION, serve
from .report import format_batch_summary, format_compressed_line, format_failure_line
from .tools import get_engine_status

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2
EXIT_INTERRUPTED = 130


def main(argv: list[str] | None = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)
    configure_logging(args.verbose, args.quiet)
    if args.command == "plugin":
        return serve()
    try:
        options = build_options(args)
    except InvalidOptions as exc:
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_USAGE
    logger.debug("engines: %s", get_engine_status(options.keep_metadata))
    if args.command == "compress":
        return run_compress(args.input, args.output, options)
    return run_batch(args, options)


def run_compress(source: Path, output: Path, options: CompressOptions) -> int:
    try:
        stats = compress_image_file(source, output, options)
    except CompressError as exc:
        print(f"error: failed to compress {source} → {output}: {exc}", file=sys.stderr)
        return EXIT_FAILURE
    print(format_compressed_line(source, output, stats))
    return EXIT_OK


def run_batch(args: argparse.Namespace, options: CompressOptions) -> int:
    cancel = threading.Event()

    def on_progress(index: int, total: int, result: FileResult) -> None:
        if result.success and result.stats is not None:
            print(format_compressed_line(result.task.source, result.task.output, result.stats), flush=True)

    previous_handler = _install_interrupt_handler(cancel)
    try:
        stats = compress_directory(
            args.input_dir,
            args.output_dir,
            args.to,
            options,
            args.recursive,
            workers=args.workers,
            cancel=cancel,
            progress=on_progress,
        )
    except CompressError as exc:
        print(
            f"error: failed batch compression from {args.input_dir} to {args.output_dir}: {exc}",
            file=sys.stderr,
        )
        return EXIT_FAILURE
    finally:
        if previous_handler is not None:
            signal.signal(signal.SIGINT, previous_handler)
    for failure in stats.failures:
        print(format_failure_line(failure), file=sys.stderr)
    print(format_batch_summary(stats))
    if cancel.is_set():
        return EXIT_INTERRUPTED
    return EXIT_OK


def _install_interrupt_handler(cancel: threading.Event):
    if threading.current_thread() is not threading.main_thread():
        return None

    def handler(signum, frame) -> None:
        if cancel.is_set():
            raise KeyboardInterrupt
        logger.warning("interrupted, finishing files in progress (press Ctrl-C again to abort)")
        cancel.set()

    return signal.signal(signal.SIGINT, handler)


def build_options(args: argparse.Namespace) -> CompressOptions:
    resize = None
    if args.resize is not None:
        resize = ResizeOptions(args.resize[0], args.resize[1], ResizeMode(args.resize_mode))
    return CompressOptions(
        quality=args.quality,
        lossless=args.lossless,
        progressive=args.progressive,
        keep_metadata=args.keep_metadata,
        resize=resize,
        png_level=args.png_level,
        avif_speed=args.avif_speed,
        overwrite=args.overwrite,
    )


def configure_logging(verbose: int, quiet: bool) -> None:
    if quiet:
        level = logging.ERROR
    elif verbose >= 2:
        level = logging.DEBUG
    elif verbose == 1:
        level = logging.INFO
    else:
        level = logging.WARNING
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s", stream=sys.stderr)
    logging.getLogger("imgrecompress").setLevel(level)


def parse_args(args: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="imgrecompress",
        description="Recompress images to JPEG, PNG, WebP or AVIF and report the savings.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="More log output (repeat for debug).")
    parser.add_argument("-q", "--quiet", action="store_true", help="Only log errors.")
    commands = parser.add_subparsers(dest="command", required=True)

    compress = commands.add_parser("compress", help="Compress a single image file")
    compress.add_argument("input", type=Path, help="Input image path")
    compress.add_argument("output", type=Path, help="Output image path (format determined by extension)")
    add_compress_flags(compress)

    batch = commands.add_parser("batch", help="Compress all images in a directory")
    batch.add_argument("input_dir", type=Path, help="Input directory")
    batch.add_argument("output_dir", type=Path, help="Output directory")
    batch.add_argument("--to", required=True, metavar="FORMAT", help="Target format (jpg, png, webp, avif)")
    batch.add_argument("--recursive", action="store_true", help="Process subdirectories")
    batch.add_argument(
        "--workers", type=int_range(1, 64), default=1, help="Files compressed in parallel (default: 1)"
    )
    add_compress_flags(batch)

    commands.add_parser("plugin", help="Serve JSON-RPC requests on stdin/stdout")
    return parser.parse_args(args)


def add_compress_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--quality", type=int_range(1, 100), default=None, help="Quality 1-100 (JPEG/WebP 85, AVIF 80)")
    parser.add_argument("--lossless", action="store_true", help="Lossless mode (WebP, AVIF)")
    parser.add_argument("--progressive", action="store_true", help="Progressive JPEG")
    parser.add_argument("--keep-metadata", action="store_true", help="Preserve EXIF/ICC metadata (default: strip)")
    parser.add_argument("--resize", type=parse_resize, default=None, metavar="WxH", help="Resize dimensions")
    parser.add_argument("--resize-mode", choices=[mode.value for mode in ResizeMode], default="fit")
    parser.add_argument("--overwrite", action="store_true", help="Overwrite existing output files")
    parser.add_argument("--png-level", type=int_range(1, 6), default=2, help="PNG optimization level (1-6)")
    parser.add_argument(
        "--avif-speed", type=int_range(1, 10), default=4, help="AVIF encoding speed (1=slow/best, 10=fast)"
    )


def int_range(low: int, high: int):
    def parse(value: str) -> int:
        try:
            number = int(value)
        except ValueError:
            raise argparse.ArgumentTypeError(f"expected an integer, got {value!r}") from None
        if not low <= number <= high:
            raise argparse.ArgumentTypeError(f"must be between {low} and {high}, got {number}")
        return number

    return parse


def parse_resize(value: str) -> tuple[int, int]:
    try:
        resize = ResizeOptions.parse(value)
    except InvalidOptions as exc:
        raise argparse.ArgumentTypeError(str(exc)) from None
    return resize.width, resize.height
