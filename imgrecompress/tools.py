from __future__ import annotations

from pathlib import Path
import logging
import os
import shutil
import subprocess
import sys
from threading import Lock

logger = logging.getLogger(__name__)

TOOL_PATH_ENV = "IMGRECOMPRESS_TOOL_PATH"
DISABLE_TOOLS_ENV = "IMGRECOMPRESS_DISABLE_TOOLS"
WINDOWS_CREATIONFLAGS = (
    getattr(subprocess, "CREATE_NO_WINDOW", 0) if sys.platform.startswith("win") else 0
)
_TOOL_CACHE: dict[tuple[str, ...], str | None] = {}
_TOOL_LOCK = Lock()


def tools_disabled() -> bool:
    return os.environ.get(DISABLE_TOOLS_ENV, "").strip().lower() in {"1", "true", "yes", "on"}


def get_tool_executable(names: list[str]) -> str | None:
    if tools_disabled():
        return None
    key = tuple(names)
    with _TOOL_LOCK:
        if key in _TOOL_CACHE:
            return _TOOL_CACHE[key]
    resolved = _find_executable(names)
    if resolved:
        logger.debug("found %s at %s", names[0], resolved)
    with _TOOL_LOCK:
        _TOOL_CACHE[key] = resolved
    return resolved


def _find_executable(names: list[str]) -> str | None:
    for base in _get_tool_search_dirs():
        for name in names:
            for path in (base / name, base / f"{name}.exe"):
                if path.is_file() and os.access(path, os.X_OK):
                    return str(path)
    for name in names:
        system_path = shutil.which(name)
        if system_path:
            return system_path
    return None


def _get_tool_search_dirs() -> list[Path]:
    configured = os.environ.get(TOOL_PATH_ENV, "")
    return [Path(entry) for entry in configured.split(os.pathsep) if entry]


def clear_tool_cache() -> None:
    with _TOOL_LOCK:
        _TOOL_CACHE.clear()


def run_command(command: list[str]) -> subprocess.CompletedProcess[bytes]:
    logger.debug("running %s", " ".join(command))
    result = subprocess.run(command, capture_output=True, creationflags=WINDOWS_CREATIONFLAGS)
    if result.returncode != 0:
        stderr = result.stderr.decode(errors="replace").strip()
        logger.debug("%s exited with %d: %s", Path(command[0]).name, result.returncode, stderr)
    return result


def get_engine_status(keep_metadata: bool = False) -> dict[str, str]:
    """Name the engine each output format would use with the current environment."""
    jpg = "Pillow"
    if not keep_metadata and get_tool_executable(["cjpeg", "mozjpeg"]):
        jpg = "mozjpeg"
    png = "Pillow"
    if get_tool_executable(["oxipng"]):
        png = "oxipng"
    webp = "Pillow"
    if not keep_metadata and get_tool_executable(["cwebp"]):
        webp = "cwebp"
    avif = "Pillow"
    if not keep_metadata and get_tool_executable(["avifenc"]):
        avif = "avifenc"
    return {"JPG": jpg, "PNG": png, "WebP": webp, "AVIF": avif}
