from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
import logging

from PIL import Image

from .errors import ImageIOError, InvalidOptions, UnsupportedFormat

logger = logging.getLogger(__name__)


class OutputFormat(Enum):
    JPEG = "jpg"
    PNG = "png"
    WEBP = "webp"
    AVIF = "avif"

    @property
    def extension(self) -> str:
        return self.value

    @property
    def default_quality(self) -> int | None:
        return _DEFAULT_QUALITY[self]

    @classmethod
    def from_extension(cls, extension: str) -> OutputFormat:
        normalized = extension.strip().lstrip(".").lower()
        if not normalized:
            raise UnsupportedFormat("format/extension cannot be empty")
        fmt = _EXTENSIONS.get(normalized)
        if fmt is None:
            raise UnsupportedFormat(f"unsupported output format: {normalized}")
        return fmt


_EXTENSIONS = {
    "jpg": OutputFormat.JPEG,
    "jpeg": OutputFormat.JPEG,
    "png": OutputFormat.PNG,
    "webp": OutputFormat.WEBP,
    "avif": OutputFormat.AVIF,
}
_DEFAULT_QUALITY = {
    OutputFormat.JPEG: 85,
    OutputFormat.PNG: None,
    OutputFormat.WEBP: 85,
    OutputFormat.AVIF: 80,
}


class ResizeMode(Enum):
    FIT = "fit"
    EXACT = "exact"


@dataclass(frozen=True)
class ResizeOptions:
    width: int
    height: int
    mode: ResizeMode = ResizeMode.FIT

    def __post_init__(self) -> None:
        for name in ("width", "height"):
            value = getattr(self, name)
            if not _is_int(value) or value < 1:
                raise InvalidOptions(f"resize {name} must be an integer greater than zero, got {value!r}")
        if not isinstance(self.mode, ResizeMode):
            raise InvalidOptions(f"unknown resize mode: {self.mode!r}")

    @classmethod
    def parse(cls, value: str, mode: ResizeMode = ResizeMode.FIT) -> ResizeOptions:
        normalized = value.strip().lower()
        width, sep, height = normalized.partition("x")
        if not sep:
            raise InvalidOptions("resize must be in WIDTHxHEIGHT format (example: 1920x1080)")
        try:
            return cls(int(width), int(height), mode)
        except ValueError as exc:
            if isinstance(exc, InvalidOptions):
                raise
            raise InvalidOptions("resize width and height must be integers") from exc


@dataclass(frozen=True)
class CompressOptions:
    quality: int | None = None
    lossless: bool = False
    progressive: bool = False
    keep_metadata: bool = False
    resize: ResizeOptions | None = None
    png_level: int = 2
    avif_speed: int = 4
    overwrite: bool = False

    def __post_init__(self) -> None:
        if self.quality is not None:
            _check_range("quality", self.quality, 1, 100)
        _check_range("png_level", self.png_level, 1, 6)
        _check_range("avif_speed", self.avif_speed, 1, 10)
        if self.resize is not None and not isinstance(self.resize, ResizeOptions):
            raise InvalidOptions(f"resize must be ResizeOptions, got {type(self.resize).__name__}")

    def quality_for(self, fmt: OutputFormat) -> int | None:
        if fmt.default_quality is None:
            return None
        if self.quality is None:
            return fmt.default_quality
        return self.quality


def _is_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _check_range(name: str, value: object, low: int, high: int) -> None:
    if not _is_int(value) or not low <= value <= high:
        raise InvalidOptions(f"{name} must be an integer between {low} and {high}, got {value!r}")


@dataclass
class RasterImage:
    """Decoded pixels plus the metadata read alongside them.

    Owned by a single compression call and never shared between files.
    """

    image: Image.Image
    exif: bytes | None = None
    icc_profile: bytes | None = None
    xmp: bytes | None = None

    @property
    def width(self) -> int:
        return self.image.width

    @property
    def height(self) -> int:
        return self.image.height

    @property
    def mode(self) -> str:
        return self.image.mode


@dataclass(frozen=True)
class CompressionStats:
    original_bytes: int
    compressed_bytes: int

    @property
    def savings_percent(self) -> float:
        if self.original_bytes == 0:
            return 0.0
        return (1 - self.compressed_bytes / self.original_bytes) * 100

    @property
    def saved_bytes(self) -> int:
        return self.original_bytes - self.compressed_bytes


@dataclass(frozen=True)
class FileTask:
    source: Path
    output: Path
    format: OutputFormat


@dataclass(frozen=True)
class FileFailure:
    source: Path
    reason: str


COMPRESSED = "compressed"
SKIPPED = "skipped"
FAILED = "failed"


@dataclass(frozen=True)
class FileResult:
    task: FileTask
    status: str
    stats: CompressionStats | None = None
    reason: str = ""

    @property
    def success(self) -> bool:
        return self.status == COMPRESSED


@dataclass
class BatchStats:
    compressed_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    total_original_bytes: int = 0
    total_compressed_bytes: int = 0
    failures: list[FileFailure] = field(default_factory=list)
    skipped: list[Path] = field(default_factory=list)

    def record(self, result: FileResult) -> None:
        if result.status == COMPRESSED and result.stats is not None:
            self.compressed_count += 1
            self.total_original_bytes += result.stats.original_bytes
            self.total_compressed_bytes += result.stats.compressed_bytes
        elif result.status == SKIPPED:
            self.skipped_count += 1
            self.skipped.append(result.task.source)
        else:
            self.failed_count += 1
            self.failures.append(FileFailure(result.task.source, result.reason))

    @property
    def visited(self) -> int:
        return self.compressed_count + self.failed_count + self.skipped_count

    @property
    def saved_bytes(self) -> int:
        return max(0, self.total_original_bytes - self.total_compressed_bytes)

    @property
    def savings_percent(self) -> float:
        if self.total_original_bytes == 0:
            return 0.0
        return (1 - self.total_compressed_bytes / self.total_original_bytes) * 100


def iter_source_files(root: Path, recursive: bool, exclude: Path | None = None) -> list[Path]:
    try:
        entries = list(root.iterdir())
    except OSError as exc:
        raise ImageIOError(f"failed to read directory ({exc.strerror or exc})", root) from exc
    files: list[Path] = []
    _collect(entries, recursive, exclude, files)
    return sorted(files, key=lambda path: path.relative_to(root).parts)


def _collect(entries: list[Path], recursive: bool, exclude: Path | None, files: list[Path]) -> None:
    for path in entries:
        if exclude is not None and path.is_relative_to(exclude):
            continue
        if path.is_file():
            files.append(path)
        elif recursive and path.is_dir():
            try:
                children = list(path.iterdir())
            except OSError as exc:
                logger.warning("cannot read directory %s: %s", path, exc)
                continue
            _collect(children, recursive, exclude, files)
