from __future__ import annotations

from pathlib import Path

import pytest

from imgrecompress.errors import ImageIOError, InvalidOptions, UnsupportedFormat
from imgrecompress.models import (
    COMPRESSED,
    FAILED,
    SKIPPED,
    BatchStats,
    CompressionStats,
    CompressOptions,
    FileResult,
    FileTask,
    OutputFormat,
    ResizeMode,
    ResizeOptions,
    iter_source_files,
)


def test_compress_options_defaults() -> None:
    options = CompressOptions()
    assert options.quality is None
    assert options.lossless is False
    assert options.progressive is False
    assert options.keep_metadata is False
    assert options.resize is None
    assert options.png_level == 2
    assert options.avif_speed == 4
    assert options.overwrite is False


@pytest.mark.parametrize(
    "kwargs",
    [
        {"quality": 0},
        {"quality": 101},
        {"png_level": 0},
        {"png_level": 7},
        {"avif_speed": 0},
        {"avif_speed": 11},
        {"quality": "85"},
        {"quality": True},
    ],
)
def test_out_of_range_options_are_rejected(kwargs: dict) -> None:
    with pytest.raises(InvalidOptions):
        CompressOptions(**kwargs)


def test_options_are_immutable() -> None:
    options = CompressOptions()
    with pytest.raises(AttributeError):
        options.quality = 50  # type: ignore[misc]


def test_quality_defaults_per_format() -> None:
    options = CompressOptions()
    assert options.quality_for(OutputFormat.JPEG) == 85
    assert options.quality_for(OutputFormat.WEBP) == 85
    assert options.quality_for(OutputFormat.AVIF) == 80
    assert options.quality_for(OutputFormat.PNG) is None
    assert CompressOptions(quality=40).quality_for(OutputFormat.AVIF) == 40


@pytest.mark.parametrize(
    ("extension", "expected"),
    [
        ("jpg", OutputFormat.JPEG),
        ("JPEG", OutputFormat.JPEG),
        (" .WebP ", OutputFormat.WEBP),
        ("png", OutputFormat.PNG),
        ("AVIF", OutputFormat.AVIF),
    ],
)
def test_output_format_from_extension(extension: str, expected: OutputFormat) -> None:
    assert OutputFormat.from_extension(extension) is expected


@pytest.mark.parametrize("extension", ["bmp", "gif", "tiff", "", ".", "  "])
def test_unknown_extensions_are_unsupported(extension: str) -> None:
    with pytest.raises(UnsupportedFormat):
        OutputFormat.from_extension(extension)


def test_resize_options_parse() -> None:
    assert ResizeOptions.parse(" 1920X1080 ") == ResizeOptions(1920, 1080, ResizeMode.FIT)
    assert ResizeOptions.parse("10x20", ResizeMode.EXACT).mode is ResizeMode.EXACT


@pytest.mark.parametrize("value", ["1920", "0x100", "100x0", "axb", "10x-5"])
def test_resize_options_parse_rejects(value: str) -> None:
    with pytest.raises(InvalidOptions):
        ResizeOptions.parse(value)


def test_savings_percent_formula() -> None:
    stats = CompressionStats(original_bytes=2_400_000, compressed_bytes=420_000)
    assert stats.savings_percent == pytest.approx(82.5)
    assert stats.saved_bytes == 1_980_000


def test_savings_percent_can_be_negative() -> None:
    stats = CompressionStats(original_bytes=100, compressed_bytes=150)
    assert stats.savings_percent == pytest.approx(-50.0)
    assert CompressionStats(0, 10).savings_percent == 0.0


def test_batch_stats_counts_every_outcome() -> None:
    task = FileTask(Path("a.png"), Path("out/a.jpg"), OutputFormat.JPEG)
    stats = BatchStats()
    stats.record(FileResult(task, COMPRESSED, stats=CompressionStats(1000, 400)))
    stats.record(FileResult(task, SKIPPED, reason="output exists"))
    stats.record(FileResult(task, FAILED, reason="not a recognised image"))
    stats.record(FileResult(task, COMPRESSED, stats=CompressionStats(500, 100)))

    assert (stats.compressed_count, stats.failed_count, stats.skipped_count) == (2, 1, 1)
    assert stats.visited == 4
    assert stats.total_original_bytes == 1500
    assert stats.total_compressed_bytes == 500
    assert stats.saved_bytes == 1000
    assert stats.savings_percent == pytest.approx(66.666, abs=0.01)
    assert stats.failures[0].reason == "not a recognised image"


def test_batch_stats_saved_bytes_never_negative() -> None:
    task = FileTask(Path("a.png"), Path("a.png"), OutputFormat.PNG)
    stats = BatchStats()
    stats.record(FileResult(task, COMPRESSED, stats=CompressionStats(100, 300)))
    assert stats.saved_bytes == 0
    assert BatchStats().savings_percent == 0.0


def test_iter_source_files_sorted_and_optionally_recursive(tmp_path: Path) -> None:
    for name in ["b.png", "a.png", "sub/c.png", "sub/deeper/d.png", "A_upper.png"]:
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"x")

    flat = iter_source_files(tmp_path, recursive=False)
    assert [p.name for p in flat] == ["A_upper.png", "a.png", "b.png"]

    deep = iter_source_files(tmp_path, recursive=True)
    assert [p.relative_to(tmp_path).as_posix() for p in deep] == [
        "A_upper.png",
        "a.png",
        "b.png",
        "sub/c.png",
        "sub/deeper/d.png",
    ]

    excluded = iter_source_files(tmp_path, recursive=True, exclude=tmp_path / "sub")
    assert [p.name for p in excluded] == ["A_upper.png", "a.png", "b.png"]


def test_iter_source_files_missing_directory(tmp_path: Path) -> None:
    with pytest.raises(ImageIOError):
        iter_source_files(tmp_path / "missing", recursive=False)
