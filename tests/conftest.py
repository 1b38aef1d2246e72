from __future__ import annotations

from pathlib import Path
from typing import Callable

import pytest
from PIL import Image

from imgrecompress.tools import DISABLE_TOOLS_ENV, clear_tool_cache


@pytest.fixture(autouse=True)
def pillow_only(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv(DISABLE_TOOLS_ENV, "1")
    clear_tool_cache()
    yield
    clear_tool_cache()


def make_image(size: tuple[int, int] = (96, 64), mode: str = "RGB") -> Image.Image:
    width, height = size
    image = Image.new("RGB", size)
    image.putdata(
        [
            ((x * 255) // max(1, width - 1), (y * 255) // max(1, height - 1), (x * 7 + y * 13) % 256)
            for y in range(height)
            for x in range(width)
        ]
    )
    if mode != "RGB":
        image = image.convert(mode)
    return image


@pytest.fixture
def write_image(tmp_path: Path) -> Callable[..., Path]:
    def _write(
        name: str,
        size: tuple[int, int] = (96, 64),
        mode: str = "RGB",
        format: str | None = None,
        **save_kwargs: object,
    ) -> Path:
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        make_image(size, mode).save(path, format=format, **save_kwargs)
        return path

    return _write


@pytest.fixture
def image_factory() -> Callable[..., Image.Image]:
    return make_image
