from __future__ import annotations

import logging

from PIL import Image

from .errors import InvalidOptions
from .models import RasterImage, ResizeMode, ResizeOptions

logger = logging.getLogger(__name__)

RESAMPLE_FILTER = Image.Resampling.LANCZOS


def fit_dimensions(src_width: int, src_height: int, target_width: int, target_height: int) -> tuple[int, int]:
    """Largest size with the source aspect ratio that fits inside the target box."""
    if src_width <= 0 or src_height <= 0:
        raise InvalidOptions(f"cannot fit a {src_width}x{src_height} image")
    scale = min(target_width / src_width, target_height / src_height)
    width = min(target_width, max(1, round(src_width * scale)))
    height = min(target_height, max(1, round(src_height * scale)))
    return width, height


def target_dimensions(src_width: int, src_height: int, resize: ResizeOptions) -> tuple[int, int]:
    if resize.mode is ResizeMode.EXACT:
        return resize.width, resize.height
    return fit_dimensions(src_width, src_height, resize.width, resize.height)


def resize(image: RasterImage, target_width: int, target_height: int, mode: ResizeMode = ResizeMode.FIT) -> RasterImage:
    options = ResizeOptions(target_width, target_height, mode)
    return resize_image(image, options)


def resize_image(image: RasterImage, options: ResizeOptions) -> RasterImage:
    size = target_dimensions(image.width, image.height, options)
    logger.debug(
        "resizing %dx%d -> %dx%d (%s)", image.width, image.height, size[0], size[1], options.mode.value
    )
    source = image.image
    # Palette and low bit depth images cannot be resampled with Lanczos directly.
    if source.mode in {"P", "1"}:
        source = source.convert("RGBA" if _has_alpha(source) else "RGB")
    elif source.mode.startswith("I;16"):
        source = source.convert("I")
    resized = source.resize(size, RESAMPLE_FILTER)
    return RasterImage(resized, exif=image.exif, icc_profile=image.icc_profile, xmp=image.xmp)


def _has_alpha(image: Image.Image) -> bool:
    return image.mode == "P" and "transparency" in image.info
