from __future__ import annotations

from pathlib import Path

from .models import BatchStats, CompressionStats, FileFailure


def format_size(size: int) -> str:
    if size >= 1_000_000:
        return f"{size / 1_000_000:.1f} MB"
    if size >= 1_000:
        return f"{size / 1_000:.0f} KB"
    return f"{size} B"


def format_compressed_line(source: Path, output: Path, stats: CompressionStats) -> str:
    return (
        f"compressed {source.name} → {output.name} "
        f"({format_size(stats.original_bytes)} → {format_size(stats.compressed_bytes)}, "
        f"saved {stats.savings_percent:.1f}%)"
    )


def format_batch_summary(stats: BatchStats) -> str:
    return (
        f"batch complete: compressed={stats.compressed_count}, failed={stats.failed_count}, "
        f"skipped={stats.skipped_count}, saved {format_size(stats.saved_bytes)} "
        f"({stats.savings_percent:.1f}%)"
    )


def format_failure_line(failure: FileFailure) -> str:
    return f"failed {failure.source}: {failure.reason}"
