"""Model-callable tools and their registry."""

from .capture_screen import (
    CAPTURE_SCREEN_IMAGE,
    CAPTURE_SCREEN_TEXT,
    CaptureScreenImageTool,
    CaptureScreenTextTool,
    register_capture_tools,
)
from .read_file import READ_FILE, ReadFileTool, register_read_file_tool
from .tool_registry import ToolOutput, ToolRegistration, ToolRegistry, ToolSchema

__all__ = [
    "CAPTURE_SCREEN_IMAGE",
    "CAPTURE_SCREEN_TEXT",
    "CaptureScreenImageTool",
    "CaptureScreenTextTool",
    "register_capture_tools",
    "READ_FILE",
    "ReadFileTool",
    "register_read_file_tool",
    "ToolOutput",
    "ToolRegistration",
    "ToolRegistry",
    "ToolSchema",
]
