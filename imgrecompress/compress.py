from __future__ import annotations

from io import BytesIO
from pathlib import Path
import logging
import os
import tempfile

from PIL import Image, UnidentifiedImageError

from .codecs import is_png_bytes
from .errors import AlreadyExists, CompressError, DecodeError, ImageIOError
from .models import CompressionStats, CompressOptions, OutputFormat, RasterImage
from .resize import resize_image
from .router import FormatRouter, map_options

logger = logging.getLogger(__name__)

NOT_AN_IMAGE = "not a recognised image"


def compress_image_file(
    input_path: Path | str,
    output_path: Path | str,
    options: CompressOptions | None = None,
    router: FormatRouter | None = None,
) -> CompressionStats:
    """Recompress one image and write it to ``output_path``.

    The output format follows the extension of ``output_path``. PNG input
    written to PNG without a resize skips decoding entirely and goes straight
    to the PNG optimiser. Raises a :class:`CompressError` subclass on failure;
    the destination is never left half written.
    """
    source = Path(input_path)
    output = Path(output_path)
    options = options or CompressOptions()
    router = router or FormatRouter()
    fmt, codec = router.route(output)
    data = read_input(source)
    if output.exists() and not options.overwrite:
        raise AlreadyExists("output file exists (use --overwrite to replace)", output)
    try:
        if fmt is OutputFormat.PNG and options.resize is None and is_png_bytes(data):
            logger.debug("%s: PNG to PNG, optimising raw bytes", source)
            encoded = codec.encode(data, map_options(fmt, options))
        else:
            image = decode_image(data, source)
            if options.resize is not None:
                image = resize_image(image, options.resize)
            encoded = codec.encode(image, map_options(fmt, options, image))
    except CompressError as exc:
        if exc.path is None:
            exc.path = source
        raise
    write_atomic(output, encoded)
    stats = CompressionStats(len(data), len(encoded))
    logger.info(
        "%s -> %s: %d -> %d bytes (%.1f%%)",
        source,
        output,
        stats.original_bytes,
        stats.compressed_bytes,
        stats.savings_percent,
    )
    return stats


def read_input(path: Path) -> bytes:
    if not path.is_file():
        raise ImageIOError("input file not found", path)
    try:
        return path.read_bytes()
    except OSError as exc:
        raise ImageIOError(f"failed to read input file ({exc.strerror or exc})", path) from exc


def decode_image(data: bytes, path: Path | None = None) -> RasterImage:
    try:
        image = Image.open(BytesIO(data))
        image.load()
    except UnidentifiedImageError as exc:
        raise DecodeError(NOT_AN_IMAGE, path) from exc
    except (OSError, SyntaxError, ValueError, Image.DecompressionBombError) as exc:
        raise DecodeError(f"corrupt image data ({exc})", path) from exc
    logger.debug("decoded %s: %s %dx%d", path, image.mode, image.width, image.height)
    xmp = image.info.get("xmp")
    if isinstance(xmp, str):
        xmp = xmp.encode()
    return RasterImage(
        image,
        exif=image.info.get("exif"),
        icc_profile=image.info.get("icc_profile"),
        xmp=xmp,
    )


def write_atomic(path: Path, data: bytes) -> None:
    """Write through a temporary sibling file and rename it into place."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    except OSError as exc:
        raise ImageIOError(f"failed to create output file ({exc.strerror or exc})", path) from exc
    temp = Path(temp_name)
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
        # mkstemp creates owner-only files
        temp.chmod(0o644)
        temp.replace(path)
    except BaseException as exc:
        temp.unlink(missing_ok=True)
        if isinstance(exc, OSError):
            raise ImageIOError(f"failed to write output file ({exc.strerror or exc})", path) from exc
        raise
