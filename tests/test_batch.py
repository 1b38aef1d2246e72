from __future__ import annotations

from pathlib import Path
from threading import Event

import pytest
from PIL import Image

from imgrecompress.batch import build_task, compress_directory
from imgrecompress.compress import NOT_AN_IMAGE
from imgrecompress.errors import ImageIOError, UnsupportedFormat
from imgrecompress.models import CompressOptions, FileResult, OutputFormat


@pytest.fixture
def input_dir(tmp_path: Path) -> Path:
    path = tmp_path / "input"
    path.mkdir()
    return path


def _save(path: Path, image_factory, size=(48, 32)) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    image_factory(size).save(path)
    return path


def test_compresses_and_skips_existing(tmp_path: Path, input_dir: Path, image_factory) -> None:
    for index in range(17):
        _save(input_dir / f"img{index:02d}.png", image_factory)
    output_dir = tmp_path / "out"
    output_dir.mkdir()
    (output_dir / "img03.jpg").write_bytes(b"old")
    (output_dir / "img11.jpg").write_bytes(b"old")

    stats = compress_directory(input_dir, output_dir, "jpg", CompressOptions())

    assert (stats.compressed_count, stats.failed_count, stats.skipped_count) == (15, 0, 2)
    assert stats.visited == 17
    assert (output_dir / "img03.jpg").read_bytes() == b"old"
    assert sorted(p.name for p in stats.skipped) == ["img03.png", "img11.png"]
    with Image.open(output_dir / "img00.jpg") as result:
        assert result.format == "JPEG"


def test_failures_are_isolated(tmp_path: Path, input_dir: Path, image_factory) -> None:
    _save(input_dir / "a.png", image_factory)
    (input_dir / "b.jpg").write_bytes(b"\xff\xd8\xff garbage")
    (input_dir / "c.txt").write_text("not an image")
    _save(input_dir / "d.png", image_factory)

    stats = compress_directory(input_dir, tmp_path / "out", "webp")

    assert (stats.compressed_count, stats.failed_count, stats.skipped_count) == (2, 2, 0)
    assert stats.visited == 4
    reasons = {failure.source.name: failure.reason for failure in stats.failures}
    assert set(reasons) == {"b.jpg", "c.txt"}
    assert reasons["c.txt"] == NOT_AN_IMAGE
    assert (tmp_path / "out" / "d.webp").exists()
    assert not (tmp_path / "out" / "c.webp").exists()


def test_byte_totals_only_cover_compressed_files(tmp_path: Path, input_dir: Path, image_factory) -> None:
    first = _save(input_dir / "a.png", image_factory)
    _save(input_dir / "b.png", image_factory)
    (input_dir / "c.png").write_bytes(b"broken")
    output_dir = tmp_path / "out"
    output_dir.mkdir()
    (output_dir / "b.jpg").write_bytes(b"old")

    stats = compress_directory(input_dir, output_dir, "jpg")

    assert stats.total_original_bytes == first.stat().st_size
    assert stats.total_compressed_bytes == (output_dir / "a.jpg").stat().st_size


def test_unsupported_target_fails_before_io(tmp_path: Path) -> None:
    output_dir = tmp_path / "out"
    with pytest.raises(UnsupportedFormat):
        compress_directory(tmp_path / "does-not-exist", output_dir, "bmp")
    assert not output_dir.exists()


def test_missing_input_directory_aborts(tmp_path: Path) -> None:
    with pytest.raises(ImageIOError):
        compress_directory(tmp_path / "missing", tmp_path / "out", "png")


def test_recursive_mirrors_structure(tmp_path: Path, input_dir: Path, image_factory) -> None:
    _save(input_dir / "top.png", image_factory)
    _save(input_dir / "2024" / "trip" / "deep.jpg", image_factory)
    output_dir = tmp_path / "out"

    flat = compress_directory(input_dir, output_dir, "webp", recursive=False)
    assert flat.visited == 1

    deep = compress_directory(input_dir, output_dir, "webp", recursive=True)
    assert (deep.compressed_count, deep.skipped_count) == (1, 1)
    assert (output_dir / "2024" / "trip" / "deep.webp").exists()


def test_target_format_overrides_source_extension(tmp_path: Path) -> None:
    task = build_task(tmp_path / "in" / "a" / "photo.JPG", tmp_path / "in", tmp_path / "out", OutputFormat.AVIF)
    assert task.output == tmp_path / "out" / "a" / "photo.avif"
    assert task.format is OutputFormat.AVIF


def test_output_inside_input_is_not_rediscovered(input_dir: Path, image_factory) -> None:
    _save(input_dir / "a.png", image_factory)
    output_dir = input_dir / "compressed"
    output_dir.mkdir()
    _save(output_dir / "stale.png", image_factory)

    stats = compress_directory(input_dir, output_dir, "jpg", recursive=True)

    assert stats.visited == 1
    assert (output_dir / "a.jpg").exists()


def test_progress_reports_in_lexical_order(tmp_path: Path, input_dir: Path, image_factory) -> None:
    for name in ["c.png", "a.png", "b.png"]:
        _save(input_dir / name, image_factory)
    seen: list[tuple[int, int, str]] = []

    def progress(index: int, total: int, result: FileResult) -> None:
        seen.append((index, total, result.task.source.name))

    compress_directory(input_dir, tmp_path / "out", "png", progress=progress)

    assert seen == [(1, 3, "a.png"), (2, 3, "b.png"), (3, 3, "c.png")]


def test_worker_pool_matches_sequential(tmp_path: Path, input_dir: Path, image_factory) -> None:
    for index in range(8):
        _save(input_dir / f"img{index}.png", image_factory)
    (input_dir / "junk.bin").write_bytes(b"\x00" * 10)
    order: list[str] = []

    stats = compress_directory(
        input_dir,
        tmp_path / "out",
        "webp",
        workers=3,
        progress=lambda index, total, result: order.append(result.task.source.name),
    )

    assert (stats.compressed_count, stats.failed_count, stats.skipped_count) == (8, 1, 0)
    assert order == sorted(order)


@pytest.mark.parametrize("workers", [1, 2])
def test_cancel_stops_new_files(tmp_path: Path, input_dir: Path, image_factory, workers: int) -> None:
    for index in range(6):
        _save(input_dir / f"img{index}.png", image_factory)
    cancel = Event()

    def progress(index: int, total: int, result: FileResult) -> None:
        cancel.set()

    stats = compress_directory(
        input_dir, tmp_path / "out", "jpg", workers=workers, cancel=cancel, progress=progress
    )

    assert 1 <= stats.visited < 6
    assert stats.compressed_count == stats.visited
    if workers == 1:
        assert stats.visited == 1



@pytest.mark.parametrize("workers", [1, 2])
def test_sources_sharing_an_output_are_not_raced(
    tmp_path: Path, input_dir: Path, image_factory, workers: int
) -> None:
    _save(input_dir / "a.jpg", image_factory)
    _save(input_dir / "a.png", image_factory)
    _save(input_dir / "b.png", image_factory)

    stats = compress_directory(input_dir, tmp_path / "out", "webp", workers=workers)

    assert (stats.compressed_count, stats.failed_count, stats.skipped_count) == (2, 0, 1)
    assert [path.name for path in stats.skipped] == ["a.png"]
