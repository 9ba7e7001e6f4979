"""Screen capture tools backed by the host's capture/OCR capability."""

from __future__ import annotations

import logging
from typing import Any, ClassVar, Mapping

from ..ai_types import ScreenCapture
from .tool_registry import ToolOutput, ToolRegistration, ToolRegistry

LOGGER = logging.getLogger(__name__)

CAPTURE_SCREEN_TEXT = "capture_screen_text"
CAPTURE_SCREEN_IMAGE = "capture_screen_image"

_EMPTY_PARAMETERS: Mapping[str, Any] = {"type": "object", "properties": {}}
_IMAGE_METADATA_KEYS = ("source", "app_name", "resolution", "mime_type")


class CaptureScreenTextTool:
    """Capture on-screen text via OCR and return text plus metadata."""

    name: ClassVar[str] = CAPTURE_SCREEN_TEXT
    description: ClassVar[str] = (
        "Capture on-screen text via OCR. Requires explicit user approval and returns text + metadata only."
    )

    def __init__(self, capture: ScreenCapture) -> None:
        self._capture = capture

    async def __call__(self) -> ToolOutput:
        result = await self._capture.capture_text()
        payload = dict(result or {})
        LOGGER.debug("Captured screen text (chars=%s)", len(str(payload.get("text") or "")))
        return ToolOutput(payload=payload)


class CaptureScreenImageTool:
    """Capture a screenshot; the image goes to the model in a follow-up message."""

    name: ClassVar[str] = CAPTURE_SCREEN_IMAGE
    description: ClassVar[str] = (
        "Capture a screenshot of the current screen. Requires explicit user approval and returns image + metadata."
    )

    def __init__(self, capture: ScreenCapture) -> None:
        self._capture = capture

    async def __call__(self) -> ToolOutput:
        result = dict(await self._capture.capture_image() or {})
        payload = {key: result.get(key) for key in _IMAGE_METADATA_KEYS}
        file_path = result.get("file_path")
        if not file_path:
            return ToolOutput(payload=payload)
        app_name = result.get("app_name")
        label = f"Screenshot from {app_name}." if app_name else "Screenshot attached."
        return ToolOutput(payload=payload, images=[str(file_path)], image_label=label)


def register_capture_tools(
    registry: ToolRegistry,
    capture: ScreenCapture,
    *,
    text_enabled: bool = True,
    image_enabled: bool = True,
) -> list[ToolRegistration]:
    """Register both capture tools; both require consent and hide the overlay."""

    text_tool = CaptureScreenTextTool(capture)
    image_tool = CaptureScreenImageTool(capture)
    return [
        registry.register(
            text_tool,
            name=text_tool.name,
            description=text_tool.description,
            parameters=_EMPTY_PARAMETERS,
            enabled=text_enabled,
            requires_consent=True,
            suppress_ui=True,
        ),
        registry.register(
            image_tool,
            name=image_tool.name,
            description=image_tool.description,
            parameters=_EMPTY_PARAMETERS,
            enabled=image_enabled,
            requires_consent=True,
            suppress_ui=True,
            prefers_vision_model=True,
        ),
    ]


__all__ = [
    "CAPTURE_SCREEN_TEXT",
    "CAPTURE_SCREEN_IMAGE",
    "CaptureScreenTextTool",
    "CaptureScreenImageTool",
    "register_capture_tools",
]
