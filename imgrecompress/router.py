from __future__ import annotations

from pathlib import Path

from .codecs import Codec, EncodeOptions, default_codecs
from .errors import UnsupportedFormat
from .models import CompressOptions, OutputFormat, RasterImage


def resolve_format(path: Path) -> OutputFormat:
    suffix = path.suffix
    if not suffix:
        raise UnsupportedFormat("output path must include a file extension", path)
    return OutputFormat.from_extension(suffix)


def map_options(fmt: OutputFormat, options: CompressOptions, image: RasterImage | None = None) -> EncodeOptions:
    """Translate user options into the record a codec understands.

    PNG takes an optimisation level instead of a quality. Metadata is only
    forwarded when ``keep_metadata`` is set.
    """
    keep = options.keep_metadata
    return EncodeOptions(
        quality=options.quality_for(fmt),
        level=options.png_level if fmt is OutputFormat.PNG else None,
        lossless=options.lossless if fmt in (OutputFormat.WEBP, OutputFormat.AVIF) else False,
        progressive=options.progressive if fmt is OutputFormat.JPEG else False,
        speed=options.avif_speed if fmt is OutputFormat.AVIF else None,
        strip_metadata=not keep,
        exif=image.exif if keep and image is not None else None,
        icc_profile=image.icc_profile if keep and image is not None else None,
        xmp=image.xmp if keep and image is not None else None,
    )


class FormatRouter:
    def __init__(self, codecs: dict[OutputFormat, Codec] | None = None) -> None:
        self.codecs = default_codecs()
        if codecs:
            self.codecs.update(codecs)

    def codec_for(self, fmt: OutputFormat) -> Codec:
        codec = self.codecs.get(fmt)
        if codec is None:
            raise UnsupportedFormat(f"no encoder registered for {fmt.extension}")
        return codec

    def route(self, path: Path) -> tuple[OutputFormat, Codec]:
        fmt = resolve_format(path)
        return fmt, self.codec_for(fmt)

    def register(self, fmt: OutputFormat, codec: Codec) -> None:
        self.codecs[fmt] = codec
