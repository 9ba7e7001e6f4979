"""Settings dataclass and loading helpers."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping

from ..ai.client import ClientSettings

__all__ = [
    "Settings",
    "SettingsStore",
    "DEFAULT_MODEL",
    "DEFAULT_SYSTEM_PROMPT",
    "BACKEND_CHOICES",
]

LOGGER = logging.getLogger(__name__)
_SETTINGS_DIR = Path.home() / ".overlaychat"
_DEFAULT_SETTINGS_PATH = _SETTINGS_DIR / "settings.json"
_ENV_OVERRIDES: Mapping[str, str] = {
    "OVERLAYCHAT_BACKEND": "backend",
    "OVERLAYCHAT_BASE_URL": "base_url",
    "OVERLAYCHAT_API_KEY": "api_key",
    "OVERLAYCHAT_MODEL": "model",
    "OVERLAYCHAT_VISION_MODEL": "vision_model",
    "OVERLAYCHAT_SYSTEM_PROMPT": "system_prompt",
}
_BOOL_ENV_OVERRIDES: Mapping[str, str] = {
    "OVERLAYCHAT_STREAMING": "streaming",
    "OVERLAYCHAT_TOOLS_ENABLED": "tools_enabled",
    "OVERLAYCHAT_CAPTURE_SCREEN_TEXT_ENABLED": "capture_screen_text_enabled",
    "OVERLAYCHAT_CAPTURE_SCREEN_IMAGE_ENABLED": "capture_screen_image_enabled",
    "OVERLAYCHAT_READ_FILE_ENABLED": "read_file_enabled",
    "OVERLAYCHAT_SHOW_THINKING": "show_thinking",
    "OVERLAYCHAT_DEBUG_LOGGING": "debug_logging",
}
_FLOAT_ENV_OVERRIDES: Mapping[str, str] = {
    "OVERLAYCHAT_REQUEST_TIMEOUT": "request_timeout",
    "OVERLAYCHAT_RETRY_MIN_SECONDS": "retry_min_seconds",
    "OVERLAYCHAT_RETRY_MAX_SECONDS": "retry_max_seconds",
}
_INT_ENV_OVERRIDES: Mapping[str, str] = {
    "OVERLAYCHAT_MAX_RETRIES": "max_retries",
    "OVERLAYCHAT_MAX_TOOL_DEPTH": "max_tool_depth",
    "OVERLAYCHAT_READ_FILE_MAX_BYTES": "read_file_max_bytes",
}
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}

DEFAULT_MODEL = "gpt-oss:20b-cloud"
BACKEND_CHOICES: tuple[str, ...] = ("ollama", "openai")
DEFAULT_SYSTEM_PROMPT = (
    "You are a concise desktop assistant living in a small overlay window. "
    "Answer in markdown. When the user asks about something on their screen, "
    "use the screen capture tools; the user must approve each capture."
)


@dataclass(slots=True)
class Settings:
    """User-facing configuration persisted between sessions."""

    backend: str = "ollama"
    base_url: str = "http://localhost:11434"
    api_key: str = "ollama"
    model: str = DEFAULT_MODEL
    vision_model: str | None = None
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    streaming: bool = True
    request_timeout: float = 12.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    max_tool_depth: int = 8
    tools_enabled: bool = True
    capture_screen_text_enabled: bool = True
    capture_screen_image_enabled: bool = True
    read_file_enabled: bool = False
    read_file_max_bytes: int = 200_000
    show_thinking: bool = True
    debug_logging: bool = False

    def client_settings(self) -> ClientSettings:
        """Return the subset the backend client needs."""

        return ClientSettings(
            base_url=self.base_url,
            api_key=self.api_key,
            request_timeout=self.request_timeout,
            max_retries=self.max_retries,
            retry_min_seconds=self.retry_min_seconds,
            retry_max_seconds=self.retry_max_seconds,
            debug_logging=self.debug_logging,
        )


class SettingsStore:
    """Loads :class:`Settings` from an optional JSON file plus overrides."""

    def __init__(self, path: Path | None = None) -> None:
        self._path = path or _DEFAULT_SETTINGS_PATH

    @property
    def path(self) -> Path:
        return self._path

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> Settings:
        """Load settings from disk, applying CLI/environment overrides when present."""

        payload = self._read_payload()
        settings = Settings()
        if payload:
            data = _filter_fields(payload)
            try:
                settings = Settings(**data)
            except TypeError as exc:
                LOGGER.warning("Settings payload contained unexpected data: %s", exc)
                settings = Settings()
            LOGGER.debug("Settings loaded from %s (%s field(s))", self._path, len(data))

        if overrides:
            settings = self._apply_overrides(settings, overrides, source="CLI")

        settings = self._apply_env_overrides(settings)
        return _normalize(settings)

    def _read_payload(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            text = self._path.read_text(encoding="utf-8")
            data = json.loads(text)
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Settings file %s is not valid JSON: %s", self._path, exc)
            return {}
        if not isinstance(data, dict):
            LOGGER.warning("Settings file %s does not contain an object", self._path)
            return {}
        return data

    def _apply_overrides(
        self,
        settings: Settings,
        overrides: Mapping[str, Any],
        *,
        source: str = "runtime",
    ) -> Settings:
        allowed = {field.name for field in fields(Settings)}
        filtered: Dict[str, Any] = {}
        for key, value in overrides.items():
            if key not in allowed or value is None:
                continue
            filtered[key] = value
        if filtered:
            LOGGER.debug("Applying %s settings overrides: %s", source, sorted(filtered))
            settings = replace(settings, **filtered)
        return settings

    def _apply_env_overrides(self, settings: Settings) -> Settings:
        overrides: Dict[str, Any] = {}
        for env_name, field_name in _ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value
        for env_name, field_name in _BOOL_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value.strip().lower() in _TRUE_VALUES
        for env_name, field_name in _INT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = int(value, 10)
            except ValueError:
                LOGGER.warning(
                    "Environment override %s=%s is not a valid integer",
                    env_name,
                    value,
                )
        for env_name, field_name in _FLOAT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = float(value)
            except ValueError:
                LOGGER.warning(
                    "Environment override %s=%s is not a valid float", env_name, value
                )
        if overrides:
            settings = self._apply_overrides(settings, overrides, source="environment")
        return settings


def _filter_fields(payload: Mapping[str, Any]) -> Dict[str, Any]:
    allowed = {field.name for field in fields(Settings)}
    result: Dict[str, Any] = {}
    for key, value in payload.items():
        if key not in allowed:
            continue
        result[key] = value
    return result


def _normalize(settings: Settings) -> Settings:
    backend = (settings.backend or "ollama").strip().lower()
    if backend not in BACKEND_CHOICES:
        LOGGER.warning("Unknown backend %r; falling back to ollama", settings.backend)
        backend = "ollama"
    vision_model = (settings.vision_model or "").strip() or None
    return replace(
        settings,
        backend=backend,
        vision_model=vision_model,
        max_tool_depth=max(1, int(settings.max_tool_depth)),
        max_retries=max(1, int(settings.max_retries)),
    )
