from __future__ import annotations

from pathlib import Path


class CompressError(Exception):
    """Base class for every failure of a single compression."""

    def __init__(self, message: str, path: Path | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.path = path

    def __str__(self) -> str:
        if self.path is None:
            return self.message
        return f"{self.message}: {self.path}"


class ImageIOError(CompressError):
    pass


class DecodeError(CompressError):
    pass


class UnsupportedFormat(CompressError):
    pass


class EncodeError(CompressError):
    pass


class AlreadyExists(CompressError):
    pass


class InvalidOptions(ValueError):
    pass
