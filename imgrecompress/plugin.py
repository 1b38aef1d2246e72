"""Line-oriented JSON-RPC 2.0 server exposing compression as tools.

One request per line on stdin, one response per line on stdout. Diagnostics
go to the logging handlers (stderr), never to stdout.
"""

from __future__ import annotations

from pathlib import Path
import json
import logging
import sys
from typing import Any, TextIO

from .batch import compress_directory
from .compress import compress_image_file
from .errors import CompressError, InvalidOptions
from .models import CompressOptions, OutputFormat, ResizeMode, ResizeOptions
from .report import format_size

logger = logging.getLogger(__name__)

NAME = "image-compressor"
VERSION = "0.1.0"
PROTOCOL_VERSION = "2024-11-05"
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
TOOL_FAILED = -32000
# Stand-in for an unbounded side when only one of max_width/max_height is given.
UNBOUNDED = 2**31 - 1
FORMAT_NAMES = ["jpeg", "png", "webp", "avif"]

TOOL_DEFINITIONS: list[dict[str, Any]] = [
    {
        "name": "compress_image",
        "description": "Compress a single image file (JPEG, PNG, WebP or AVIF output)",
        "inputSchema": {
            "type": "object",
            "required": ["input_path"],
            "properties": {
                "input_path": {"type": "string", "description": "Path to the source image file"},
                "output_path": {
                    "type": "string",
                    "description": "Path for the compressed output (format inferred from extension). "
                    "Defaults to input path with format extension.",
                },
                "quality": {
                    "type": "integer",
                    "description": "Compression quality 1-100 (default: format-specific, JPEG 85, WebP 85, AVIF 80)",
                    "minimum": 1,
                    "maximum": 100,
                },
                "format": {
                    "type": "string",
                    "enum": FORMAT_NAMES,
                    "description": "Output format (overrides output_path extension)",
                },
                "max_width": {
                    "type": "integer",
                    "description": "Maximum width in pixels (maintains aspect ratio)",
                    "minimum": 1,
                },
                "max_height": {
                    "type": "integer",
                    "description": "Maximum height in pixels (maintains aspect ratio)",
                    "minimum": 1,
                },
                "lossless": {
                    "type": "boolean",
                    "description": "Use lossless compression (WebP and AVIF only, default: false)",
                },
            },
        },
    },
    {
        "name": "compress_directory",
        "description": "Batch compress all images in a directory",
        "inputSchema": {
            "type": "object",
            "required": ["input_dir"],
            "properties": {
                "input_dir": {"type": "string", "description": "Path to the source directory"},
                "output_dir": {
                    "type": "string",
                    "description": "Path for compressed output (defaults to input_dir + '_compressed')",
                },
                "quality": {
                    "type": "integer",
                    "description": "Compression quality 1-100 (default: format-specific)",
                    "minimum": 1,
                    "maximum": 100,
                },
                "format": {
                    "type": "string",
                    "enum": FORMAT_NAMES,
                    "description": "Output format for all images (default: webp)",
                },
            },
        },
    },
]


class ToolError(Exception):
    def __init__(self, code: int, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


def serve(stdin: TextIO | None = None, stdout: TextIO | None = None) -> int:
    stdin = stdin or sys.stdin
    stdout = stdout or sys.stdout
    for line in stdin:
        line = line.strip()
        if not line:
            continue
        try:
            request = json.loads(line)
        except json.JSONDecodeError as exc:
            logger.error("JSON parse error: %s", exc)
            continue
        if not isinstance(request, dict):
            logger.error("ignoring non-object request")
            continue
        request_id = request.get("id")
        if request_id is None:
            continue
        method = request.get("method") or ""
        params = request.get("params") or {}
        if not isinstance(params, dict):
            response = error(request_id, INVALID_PARAMS, "params must be an object")
        else:
            response = handle_request(request_id, method, params)
        stdout.write(json.dumps(response, ensure_ascii=False) + "\n")
        stdout.flush()
        if method == "shutdown":
            logger.info("shutdown requested")
            break
    return 0


def handle_request(request_id: Any, method: str, params: dict[str, Any]) -> dict[str, Any]:
    if method == "initialize":
        logger.info("plugin initialized")
        return ok(
            request_id,
            {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {"tools": {}},
                "serverInfo": {"name": NAME, "version": VERSION},
            },
        )
    if method in {"ping", "shutdown"}:
        return ok(request_id, {})
    if method == "health/check":
        return ok(request_id, {"ok": True})
    if method == "tools/list":
        return ok(request_id, {"tools": TOOL_DEFINITIONS})
    if method == "tools/call":
        try:
            arguments = params.get("arguments") or {}
            if not isinstance(arguments, dict):
                raise ToolError(INVALID_PARAMS, "arguments must be an object")
            text = call_tool(params.get("name") or "", arguments)
        except ToolError as exc:
            return error(request_id, exc.code, exc.message)
        return ok(request_id, {"content": [{"type": "text", "text": text}]})
    return error(request_id, METHOD_NOT_FOUND, f"Method not found: {method}")


def call_tool(name: str, arguments: dict[str, Any]) -> str:
    if name == "compress_image":
        return call_compress_image(arguments)
    if name == "compress_directory":
        return call_compress_directory(arguments)
    raise ToolError(METHOD_NOT_FOUND, f"Unknown tool: {name}")


def call_compress_image(arguments: dict[str, Any]) -> str:
    input_path = _required(arguments, "input_path")
    extension = _format_extension(arguments.get("format"))
    output_value = _optional_string(arguments, "output_path")
    if output_value:
        output_path = Path(output_value)
        if extension:
            output_path = output_path.with_suffix(f".{extension}")
    else:
        output_path = Path(input_path).with_suffix(f".{extension or 'webp'}")
    options = _build_options(
        quality=arguments.get("quality"),
        lossless=_optional_bool(arguments, "lossless"),
        resize=_fit_box(arguments.get("max_width"), arguments.get("max_height")),
    )
    logger.info("compress_image: %s -> %s", input_path, output_path)
    try:
        stats = compress_image_file(Path(input_path), output_path, options)
    except CompressError as exc:
        raise ToolError(TOOL_FAILED, f"Compression failed: {exc}") from exc
    return (
        f"Compressed {input_path} -> {output_path} "
        f"({format_size(stats.original_bytes)} -> {format_size(stats.compressed_bytes)}, "
        f"saved {stats.savings_percent:.1f}%)"
    )


def call_compress_directory(arguments: dict[str, Any]) -> str:
    input_dir = _required(arguments, "input_dir")
    extension = _format_extension(arguments.get("format")) or "webp"
    output_dir = _optional_string(arguments, "output_dir") or f"{input_dir}_compressed"
    options = _build_options(quality=arguments.get("quality"))
    logger.info("compress_directory: %s -> %s (format: %s)", input_dir, output_dir, extension)
    try:
        report = compress_directory(Path(input_dir), Path(output_dir), extension, options, recursive=True)
    except CompressError as exc:
        raise ToolError(TOOL_FAILED, f"Batch compression failed: {exc}") from exc
    return (
        f"Batch compression complete: {report.compressed_count} compressed, "
        f"{report.skipped_count} skipped, {report.failed_count} failed "
        f"({format_size(report.total_original_bytes)} -> {format_size(report.total_compressed_bytes)})"
    )


def _required(arguments: dict[str, Any], key: str) -> str:
    value = arguments.get(key)
    if not isinstance(value, str) or not value:
        raise ToolError(INVALID_PARAMS, f"Missing required parameter: {key}")
    return value


def _optional_string(arguments: dict[str, Any], key: str) -> str | None:
    value = arguments.get(key)
    if value is not None and not isinstance(value, str):
        raise ToolError(INVALID_PARAMS, f"{key} must be a string")
    return value


def _optional_bool(arguments: dict[str, Any], key: str) -> bool:
    value = arguments.get(key)
    if value is None:
        return False
    if not isinstance(value, bool):
        raise ToolError(INVALID_PARAMS, f"{key} must be a boolean")
    return value


def _format_extension(value: Any) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ToolError(INVALID_PARAMS, "format must be a string")
    try:
        return OutputFormat.from_extension(value).extension
    except CompressError as exc:
        raise ToolError(INVALID_PARAMS, str(exc)) from exc


def _fit_box(max_width: Any, max_height: Any) -> ResizeOptions | None:
    if max_width is None and max_height is None:
        return None
    try:
        return ResizeOptions(
            max_width if max_width is not None else UNBOUNDED,
            max_height if max_height is not None else UNBOUNDED,
            ResizeMode.FIT,
        )
    except InvalidOptions as exc:
        raise ToolError(INVALID_PARAMS, str(exc)) from exc


def _build_options(**kwargs: Any) -> CompressOptions:
    try:
        return CompressOptions(overwrite=True, **kwargs)
    except InvalidOptions as exc:
        raise ToolError(INVALID_PARAMS, str(exc)) from exc


def ok(request_id: Any, result: dict[str, Any]) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "result": result}


def error(request_id: Any, code: int, message: str) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "error": {"code": code, "message": message}}
