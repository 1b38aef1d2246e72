"""Codec adapters for the four output formats.

Every adapter exposes ``encode(source, options) -> bytes``. Each one first
tries an external encoder found by :mod:`imgrecompress.tools` and falls back
to Pillow, so the pipeline works with nothing but Pillow installed.
"""

from __future__ import annotations

from dataclasses import dataclass
from io import BytesIO
from pathlib import Path
import logging
import tempfile
from typing import Callable, Iterator, Protocol, Union

from PIL import Image, UnidentifiedImageError

from .errors import DecodeError, EncodeError
from .models import OutputFormat, RasterImage
from .tools import get_tool_executable, run_command

logger = logging.getLogger(__name__)

EncodeSource = Union[RasterImage, bytes]
PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"
_PNG_MODES = {"1", "L", "LA", "I", "I;16", "P", "RGB", "RGBA"}
_PNG_METADATA_CHUNKS = {b"eXIf", b"tEXt", b"zTXt", b"iTXt", b"tIME"}
_ENCODER_ERRORS = (OSError, ValueError, TypeError, KeyError)


@dataclass(frozen=True)
class EncodeOptions:
    quality: int | None = None
    level: int | None = None
    lossless: bool = False
    progressive: bool = False
    speed: int | None = None
    strip_metadata: bool = True
    exif: bytes | None = None
    icc_profile: bytes | None = None
    xmp: bytes | None = None

    def metadata_kwargs(self) -> dict[str, bytes]:
        # Some Pillow encoders fall back to image.info, so stripping must be explicit.
        if self.strip_metadata:
            return {"exif": b"", "icc_profile": b"", "xmp": b""}
        kwargs: dict[str, bytes] = {}
        for key in ("exif", "icc_profile", "xmp"):
            value = getattr(self, key)
            if value:
                kwargs[key] = value
        return kwargs


class Codec(Protocol):
    format: OutputFormat

    def encode(self, source: EncodeSource, options: EncodeOptions) -> bytes:
        ...


def is_png_bytes(data: bytes) -> bool:
    return data.startswith(PNG_SIGNATURE)


def _run_engine_chain(label: str, engines: list[tuple[str, Callable[[], bytes | None]]]) -> bytes:
    for name, runner in engines:
        data = runner()
        if data is not None:
            logger.debug("%s encoded with %s (%d bytes)", label, name, len(data))
            return data
        logger.debug("%s engine %s failed, trying next", label, name)
    raise EncodeError(f"no {label} engine produced output")


def _require_image(source: EncodeSource, label: str) -> Image.Image:
    if not isinstance(source, RasterImage):
        raise EncodeError(f"{label} encoder needs a decoded image")
    _check_dimensions(source.image, label)
    return source.image


def iter_png_chunks(data: bytes) -> Iterator[tuple[bytes, bytes]]:
    """Yield ``(type, raw chunk)`` pairs up to and including ``IEND``."""
    offset = len(PNG_SIGNATURE)
    while offset + 8 <= len(data):
        length = int.from_bytes(data[offset : offset + 4], "big")
        kind = data[offset + 4 : offset + 8]
        end = offset + 12 + length
        if end > len(data):
            raise DecodeError(f"corrupt PNG data (truncated {kind.decode('latin-1')} chunk)")
        yield kind, data[offset:end]
        if kind == b"IEND":
            return
        offset = end
    raise DecodeError("corrupt PNG data (no IEND chunk)")


def needs_raw_chunks(data: bytes) -> bool:
    """True for PNGs Pillow cannot re-save without loss: 16-bit samples or APNG frames."""
    if len(data) < 33 or data[12:16] != b"IHDR":
        return False
    if data[24] == 16:
        return True
    # acTL must precede the first IDAT
    for kind, _chunk in iter_png_chunks(data):
        if kind == b"acTL":
            return True
        if kind == b"IDAT":
            break
    return False


def copy_png_chunks(data: bytes, strip_metadata: bool) -> bytes:
    chunks = [
        chunk
        for kind, chunk in iter_png_chunks(data)
        if not (strip_metadata and kind in _PNG_METADATA_CHUNKS)
    ]
    return PNG_SIGNATURE + b"".join(chunks)


def _check_dimensions(image: Image.Image, label: str) -> None:
    if image.width == 0 or image.height == 0:
        raise EncodeError(f"cannot encode {label} with zero dimension ({image.width}x{image.height})")


def _flatten_alpha(image: Image.Image) -> Image.Image:
    rgba = image.convert("RGBA")
    background = Image.new("RGB", rgba.size, (255, 255, 255))
    background.paste(rgba, mask=rgba.getchannel("A"))
    return background


def _has_alpha(image: Image.Image) -> bool:
    return image.mode in {"RGBA", "LA", "PA", "La", "RGBa"} or (
        image.mode == "P" and "transparency" in image.info
    )


def to_8bit(image: Image.Image) -> Image.Image:
    """Scale 16-bit greyscale (decoded as ``I;16`` or ``I``) down to ``L`` instead of clamping."""
    if image.mode != "I" and not image.mode.startswith("I;16"):
        return image
    if image.mode != "I":
        image = image.convert("I")
    return image.point(lambda value: value * (1 / 257)).convert("L")


def _to_rgb_or_rgba(image: Image.Image) -> Image.Image:
    image = to_8bit(image)
    if image.mode in {"RGB", "RGBA"}:
        return image
    return image.convert("RGBA" if _has_alpha(image) else "RGB")


def _as_bytes(value: object) -> bytes | None:
    if isinstance(value, str):
        return value.encode()
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    return None


def _pillow_save(image: Image.Image, label: str, **kwargs: object) -> bytes:
    buffer = BytesIO()
    try:
        image.save(buffer, **kwargs)
    except _ENCODER_ERRORS as exc:
        raise EncodeError(f"{label} encoding failed ({exc})") from exc
    return buffer.getvalue()


def _run_tool(command: list[str], output: Path) -> bytes | None:
    result = run_command(command)
    if result.returncode != 0 or not output.exists():
        return None
    data = output.read_bytes()
    return data or None


class JpegCodec:
    format = OutputFormat.JPEG

    def encode(self, source: EncodeSource, options: EncodeOptions) -> bytes:
        image = self.prepare(_require_image(source, "JPEG"))
        engines: list[tuple[str, Callable[[], bytes | None]]] = []
        cjpeg = get_tool_executable(["cjpeg", "mozjpeg"])
        if cjpeg and options.strip_metadata and image.mode in {"RGB", "L"}:
            engines.append(("mozjpeg", lambda: self.run_cjpeg(cjpeg, image, options)))
        engines.append(("Pillow", lambda: self.encode_pillow(image, options)))
        return _run_engine_chain("JPEG", engines)

    @staticmethod
    def prepare(image: Image.Image) -> Image.Image:
        image = to_8bit(image)
        if _has_alpha(image):
            return _flatten_alpha(image)
        if image.mode in {"RGB", "L", "CMYK"}:
            return image
        return image.convert("RGB")

    @staticmethod
    def run_cjpeg(cjpeg: str, image: Image.Image, options: EncodeOptions) -> bytes | None:
        with tempfile.TemporaryDirectory(prefix="imgrecompress_") as tmp:
            source = Path(tmp) / "input.ppm"
            output = Path(tmp) / "output.jpg"
            image.save(source, format="PPM")
            command = [cjpeg, "-quality", str(options.quality), "-optimize"]
            if options.progressive:
                command.append("-progressive")
            command += ["-outfile", str(output), str(source)]
            return _run_tool(command, output)

    @staticmethod
    def encode_pillow(image: Image.Image, options: EncodeOptions) -> bytes:
        return _pillow_save(
            image,
            "JPEG",
            format="JPEG",
            quality=options.quality,
            optimize=True,
            progressive=options.progressive,
            **options.metadata_kwargs(),
        )


class PngCodec:
    """Lossless PNG output.

    Accepts raw PNG bytes (the re-optimisation path) or a decoded image. The
    optimisation level trades time for size; pixels are never altered.
    """

    format = OutputFormat.PNG

    def encode(self, source: EncodeSource, options: EncodeOptions) -> bytes:
        level = options.level or 2
        engines: list[tuple[str, Callable[[], bytes | None]]] = []
        oxipng = get_tool_executable(["oxipng"])
        if isinstance(source, (bytes, bytearray)):
            data = bytes(source)
            if not is_png_bytes(data):
                raise EncodeError("raw input for the PNG encoder is not PNG data")
            if oxipng:
                engines.append(("oxipng", lambda: self.run_oxipng(oxipng, data, level, options)))
            engines.append(("Pillow", lambda: self.reencode_bytes(data, level, options)))
        else:
            image = self.prepare(_require_image(source, "PNG"))
            if oxipng:
                engines.append(
                    ("oxipng", lambda: self.run_oxipng(oxipng, self.encode_pillow(image, 1, options), level, options))
                )
            engines.append(("Pillow", lambda: self.encode_pillow(image, level, options)))
        return _run_engine_chain("PNG", engines)

    @staticmethod
    def prepare(image: Image.Image) -> Image.Image:
        if image.mode in _PNG_MODES:
            return image
        return image.convert("RGBA" if _has_alpha(image) else "RGB")

    @staticmethod
    def run_oxipng(oxipng: str, data: bytes, level: int, options: EncodeOptions) -> bytes | None:
        with tempfile.TemporaryDirectory(prefix="imgrecompress_") as tmp:
            source = Path(tmp) / "input.png"
            output = Path(tmp) / "output.png"
            source.write_bytes(data)
            strip = "safe" if options.strip_metadata else "none"
            command = [oxipng, "-q", "-o", str(level), "--strip", strip, "--out", str(output), str(source)]
            return _run_tool(command, output)

    def reencode_bytes(self, data: bytes, level: int, options: EncodeOptions) -> bytes:
        if needs_raw_chunks(data):
            logger.debug("PNG is 16-bit or animated, keeping pixel chunks as they are")
            return copy_png_chunks(data, options.strip_metadata)
        try:
            image = Image.open(BytesIO(data))
            image.load()
        except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as exc:
            raise DecodeError(f"corrupt PNG data ({exc})") from exc
        _check_dimensions(image, "PNG")
        if not options.strip_metadata:
            options = EncodeOptions(
                level=level,
                strip_metadata=False,
                exif=image.info.get("exif"),
                icc_profile=image.info.get("icc_profile"),
                xmp=_as_bytes(image.info.get("xmp")),
            )
        return self.encode_pillow(image, level, options)

    @staticmethod
    def encode_pillow(image: Image.Image, level: int, options: EncodeOptions) -> bytes:
        return _pillow_save(
            image,
            "PNG",
            format="PNG",
            compress_level=min(9, level + 3),
            optimize=level >= 6,
            **options.metadata_kwargs(),
        )


class WebpCodec:
    format = OutputFormat.WEBP

    def encode(self, source: EncodeSource, options: EncodeOptions) -> bytes:
        image = _to_rgb_or_rgba(_require_image(source, "WebP"))
        engines: list[tuple[str, Callable[[], bytes | None]]] = []
        cwebp = get_tool_executable(["cwebp"])
        if cwebp and options.strip_metadata:
            engines.append(("cwebp", lambda: self.run_cwebp(cwebp, image, options)))
        engines.append(("Pillow", lambda: self.encode_pillow(image, options)))
        return _run_engine_chain("WebP", engines)

    @staticmethod
    def run_cwebp(cwebp: str, image: Image.Image, options: EncodeOptions) -> bytes | None:
        with tempfile.TemporaryDirectory(prefix="imgrecompress_") as tmp:
            source = Path(tmp) / "input.png"
            output = Path(tmp) / "output.webp"
            image.save(source, format="PNG", compress_level=1)
            if options.lossless:
                command = [cwebp, "-quiet", "-lossless", "-z", "9"]
            else:
                command = [cwebp, "-quiet", "-q", str(options.quality), "-m", "6"]
            command += ["-metadata", "none", str(source), "-o", str(output)]
            return _run_tool(command, output)

    @staticmethod
    def encode_pillow(image: Image.Image, options: EncodeOptions) -> bytes:
        if options.lossless:
            quality_kwargs = {"lossless": True, "quality": 100}
        else:
            quality_kwargs = {"lossless": False, "quality": options.quality}
        return _pillow_save(
            image,
            "WebP",
            format="WEBP",
            method=6,
            **quality_kwargs,
            **options.metadata_kwargs(),
        )


class AvifCodec:
    format = OutputFormat.AVIF

    def encode(self, source: EncodeSource, options: EncodeOptions) -> bytes:
        image = _to_rgb_or_rgba(_require_image(source, "AVIF"))
        engines: list[tuple[str, Callable[[], bytes | None]]] = []
        avifenc = get_tool_executable(["avifenc"])
        if avifenc and options.strip_metadata:
            engines.append(("avifenc", lambda: self.run_avifenc(avifenc, image, options)))
        engines.append(("Pillow", lambda: self.encode_pillow(image, options)))
        return _run_engine_chain("AVIF", engines)

    @staticmethod
    def run_avifenc(avifenc: str, image: Image.Image, options: EncodeOptions) -> bytes | None:
        with tempfile.TemporaryDirectory(prefix="imgrecompress_") as tmp:
            source = Path(tmp) / "input.png"
            output = Path(tmp) / "output.avif"
            image.save(source, format="PNG", compress_level=1)
            command = [avifenc, "-s", str(options.speed)]
            if options.lossless:
                command.append("--lossless")
            else:
                command += ["-q", str(options.quality)]
            command += ["--ignore-exif", "--ignore-xmp", "--ignore-icc", str(source), str(output)]
            return _run_tool(command, output)

    @staticmethod
    def encode_pillow(image: Image.Image, options: EncodeOptions) -> bytes:
        if options.lossless:
            quality_kwargs: dict[str, object] = {"quality": 100, "subsampling": "4:4:4"}
        else:
            quality_kwargs = {"quality": options.quality}
        return _pillow_save(
            image,
            "AVIF",
            format="AVIF",
            speed=options.speed,
            **quality_kwargs,
            **options.metadata_kwargs(),
        )


def default_codecs() -> dict[OutputFormat, Codec]:
    return {
        OutputFormat.JPEG: JpegCodec(),
        OutputFormat.PNG: PngCodec(),
        OutputFormat.WEBP: WebpCodec(),
        OutputFormat.AVIF: AvifCodec(),
    }
