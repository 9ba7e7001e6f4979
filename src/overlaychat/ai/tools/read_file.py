"""Tool that reads a local text file for the model."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, ClassVar, Mapping

from .tool_registry import ToolRegistration, ToolRegistry

LOGGER = logging.getLogger(__name__)

READ_FILE = "read_file"
DEFAULT_MAX_BYTES = 200_000

_PARAMETERS: Mapping[str, Any] = {
    "type": "object",
    "properties": {
        "path": {"type": "string", "description": "Absolute path to a local text file."},
    },
    "required": ["path"],
    "additionalProperties": False,
}


class ReadFileTool:
    """Read a local text file. Expected failures come back as error payloads."""

    name: ClassVar[str] = READ_FILE
    description: ClassVar[str] = (
        "Read a local text file from disk. Use when the user asks to inspect a file."
    )

    def __init__(self, *, max_bytes: int = DEFAULT_MAX_BYTES) -> None:
        self._max_bytes = max(1, int(max_bytes))

    def __call__(self, path: str) -> dict[str, Any]:
        target = Path(path).expanduser()
        if not target.is_absolute():
            return {"error": "invalid_path", "message": "path must be absolute.", "path": path}
        if not target.exists():
            return {"error": "not_found", "message": f"No such file: {target}", "path": str(target)}
        if not target.is_file():
            return {"error": "not_a_file", "message": f"Not a regular file: {target}", "path": str(target)}

        data = target.read_bytes()
        truncated = len(data) > self._max_bytes
        if truncated:
            data = data[: self._max_bytes]
        if b"\x00" in data:
            return {"error": "binary_file", "message": f"Refusing to read binary file: {target}", "path": str(target)}

        content = data.decode("utf-8", errors="replace")
        LOGGER.debug("read_file %s (bytes=%s, truncated=%s)", target, len(data), truncated)
        result: dict[str, Any] = {"path": str(target), "bytes": len(data), "content": content}
        if truncated:
            result["truncated"] = True
        return result


def register_read_file_tool(
    registry: ToolRegistry,
    *,
    enabled: bool = False,
    max_bytes: int = DEFAULT_MAX_BYTES,
) -> ToolRegistration:
    tool = ReadFileTool(max_bytes=max_bytes)
    return registry.register(
        tool,
        name=tool.name,
        description=tool.description,
        parameters=_PARAMETERS,
        enabled=enabled,
    )


__all__ = ["READ_FILE", "ReadFileTool", "register_read_file_tool"]
