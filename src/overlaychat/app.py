"""Application bootstrap: build the chat core from settings and run a console REPL."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, TextIO, get_args, get_origin, get_type_hints

from .ai.ai_types import CaptureHooks, ChatBackend, ConsentDecision, ConsentProvider, HostBridge, ScreenCapture
from .ai.client import OllamaClient, OpenAICompatClient, create_backend
from .ai.errors import BackendUnreachable
from .ai.orchestration.chat_orchestrator import ConversationOrchestrator
from .ai.tools.capture_screen import register_capture_tools
from .ai.tools.read_file import register_read_file_tool
from .ai.tools.tool_registry import ToolRegistry
from .chat.input_history import InputHistory
from .services.settings import Settings, SettingsStore
from .utils import logging as logging_utils

_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_FALSE_VALUES = {"0", "false", "no", "off", "disabled"}
_LOGGER = logging.getLogger(__name__)

QUIT_COMMANDS = frozenset({"/quit", "/exit"})
RETRY_COMMAND = "/retry"
HISTORY_COMMAND = "/history"
REPEAT_COMMAND = "!!"


def configure_logging(debug: bool = False, *, force: bool = False, console: bool = False) -> None:
    """Configure logging for the application."""

    level = logging_utils.resolve_level(debug=debug)
    logging_utils.setup_logging(level, force=force, console=console)
    _LOGGER.debug("Logging configured (level=%s)", logging.getLevelName(level))


def load_settings(
    path: Optional[Path] = None,
    *,
    store: SettingsStore | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Load settings or fall back to defaults."""

    active_store = store or SettingsStore(path)
    try:
        return active_store.load(overrides=overrides)
    except OSError as exc:
        _LOGGER.warning("Failed to load settings from %s: %s", active_store.path, exc)
        return Settings()


def build_registry(settings: Settings, *, capture: ScreenCapture | None = None) -> ToolRegistry:
    """Register the tools the settings allow.

    Capture tools are only registered when a capture capability is available.
    """

    registry = ToolRegistry()
    if capture is not None:
        register_capture_tools(
            registry,
            capture,
            text_enabled=settings.capture_screen_text_enabled,
            image_enabled=settings.capture_screen_image_enabled,
        )
    register_read_file_tool(
        registry,
        enabled=settings.read_file_enabled,
        max_bytes=settings.read_file_max_bytes,
    )
    return registry


def build_orchestrator(
    settings: Settings,
    *,
    backend: ChatBackend | None = None,
    capture: ScreenCapture | None = None,
    consent: ConsentProvider | None = None,
    hooks: CaptureHooks | None = None,
    host: HostBridge | None = None,
) -> ConversationOrchestrator:
    """Wire backend, tool registry and orchestrator from ``settings``."""

    active_backend = backend or create_backend(settings.backend, settings.client_settings())
    return ConversationOrchestrator(
        active_backend,
        build_registry(settings, capture=capture),
        model=settings.model,
        vision_model=settings.vision_model,
        system_prompt=settings.system_prompt or None,
        consent=consent,
        hooks=hooks,
        host=host,
        streaming=settings.streaming,
        show_thinking=settings.show_thinking,
        tools_enabled=settings.tools_enabled,
        max_tool_depth=settings.max_tool_depth,
    )


# -----------------------------------------------------------------------------
# Console collaborators
# -----------------------------------------------------------------------------


class ConsoleConsent:
    """Asks for tool consent on the terminal."""

    def __init__(self, reader: Callable[[str], str] = input) -> None:
        self._reader = reader

    async def request_consent(self, tool_name: str) -> ConsentDecision:
        answer = await asyncio.to_thread(self._reader, f"Allow {tool_name.replace('_', ' ')}? [y/N] ")
        return ConsentDecision(approved=answer.strip().lower() in {"y", "yes"})


class ConsoleHost:
    """Host bridge for the console; there is no overlay window to move."""

    async def invoke(self, command: str, args: Mapping[str, Any] | None = None) -> None:
        _LOGGER.info("Host command %s %s ignored in console mode", command, dict(args or {}))


async def run_repl(
    orchestrator: ConversationOrchestrator,
    *,
    reader: Callable[[str], str] = input,
    stream: TextIO | None = None,
    history: InputHistory | None = None,
) -> None:
    """Read lines, submit them, print replies. EOF or ``/quit`` exits.

    ``!!`` resubmits the most recent input and ``/history`` lists past inputs.
    """

    out = stream or sys.stdout
    recall = history if history is not None else InputHistory()
    while True:
        try:
            line = await asyncio.to_thread(reader, "> ")
        except EOFError:
            break
        text = line.strip()
        if not text:
            continue
        if text in QUIT_COMMANDS:
            break
        if text == HISTORY_COMMAND:
            for position, entry in enumerate(recall.entries, start=1):
                out.write(f"{position:>3}  {entry}\n")
            out.flush()
            continue
        if text == REPEAT_COMMAND:
            recalled = recall.previous()
            recall.reset()
            if recalled is None:
                out.write("! Nothing to repeat.\n")
                out.flush()
                continue
            text = recalled
        recall.record(text)
        if text == RETRY_COMMAND:
            await orchestrator.regenerate_last()
        else:
            await orchestrator.submit(text)
        _print_turn(orchestrator, out)


def _print_turn(orchestrator: ConversationOrchestrator, out: TextIO) -> None:
    if orchestrator.last_error:
        out.write(f"! {orchestrator.last_error}\n")
        out.flush()
        return
    messages = orchestrator.display_messages
    if not messages or messages[-1].role != "assistant":
        return
    reply = messages[-1]
    if reply.tool_activity_label:
        out.write(f"[{reply.tool_activity_label}]\n")
    if reply.thinking:
        seconds = (reply.thinking_duration_ms or 0) / 1000
        out.write(f"(thought for {seconds:.1f}s) {reply.thinking}\n")
    out.write(f"{reply.content}\n")
    out.flush()


async def _check_backend(backend: OllamaClient | OpenAICompatClient) -> None:
    try:
        await backend.health_check()
    except BackendUnreachable as exc:
        _LOGGER.warning("Backend health check failed: %s", exc)
        print(f"Warning: {exc}", file=sys.stderr)


async def _run_console(settings: Settings) -> None:
    backend = create_backend(settings.backend, settings.client_settings())
    try:
        await _check_backend(backend)
        orchestrator = build_orchestrator(
            settings,
            backend=backend,
            consent=ConsoleConsent(),
            host=ConsoleHost(),
        )
        await run_repl(orchestrator)
    finally:
        await backend.aclose()


def main(argv: Sequence[str] | None = None) -> None:
    """Entry point invoked by the `overlaychat` console script."""

    args = _parse_cli_args(argv)
    debug = args.debug or _env_flag("OVERLAYCHAT_DEBUG", default=False)
    configure_logging(debug)

    settings_path = args.settings_path or os.environ.get("OVERLAYCHAT_SETTINGS_PATH")
    resolved_path = Path(settings_path).expanduser() if settings_path else None
    settings_store = SettingsStore(resolved_path)
    try:
        cli_overrides = _coerce_cli_overrides(args.overrides or [])
    except ValueError as exc:
        print(f"Invalid --set override: {exc}", file=sys.stderr)
        raise SystemExit(2) from exc

    settings = load_settings(resolved_path, store=settings_store, overrides=cli_overrides or None)

    if args.dump_settings:
        _dump_settings(settings, settings_store, overrides=cli_overrides)
        return

    if settings.debug_logging and not debug:
        configure_logging(True, force=True)

    try:
        asyncio.run(_run_console(settings))
    except KeyboardInterrupt:  # pragma: no cover - manual shutdown path
        _LOGGER.info("Shutdown requested by user.")


def _env_flag(name: str, *, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _parse_cli_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="overlaychat",
        description="Chat with a local model from the terminal or inspect the configuration.",
    )
    parser.add_argument(
        "--dump-settings",
        action="store_true",
        help="Print the effective settings payload (with secrets redacted) and exit.",
    )
    parser.add_argument(
        "--settings-path",
        metavar="PATH",
        help="Override the default ~/.overlaychat/settings.json path.",
    )
    parser.add_argument(
        "--set",
        dest="overrides",
        metavar="KEY=VALUE",
        action="append",
        default=[],
        help="Override settings before launch (repeatable).",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging.")
    return parser.parse_args(argv)


def _coerce_cli_overrides(items: Sequence[str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    if not items:
        return overrides

    fields = Settings.__dataclass_fields__  # type: ignore[attr-defined]
    type_hints = get_type_hints(Settings)
    for entry in items:
        if "=" not in entry:
            raise ValueError(f"Override '{entry}' must use KEY=VALUE syntax.")
        key, raw_value = entry.split("=", 1)
        key = key.strip()
        if not key:
            raise ValueError("Override is missing a field name.")
        if key not in fields:
            raise ValueError(f"Unknown setting '{key}'.")
        overrides[key] = _coerce_value(type_hints.get(key, str), raw_value.strip())
    return overrides


def _coerce_value(annotation: Any, raw_value: str) -> Any:
    optional = type(None) in get_args(annotation)
    if optional and raw_value.lower() in {"none", "null", ""}:
        return None
    target = _resolve_annotation(annotation)
    if target is bool:
        return _parse_bool(raw_value)
    if target is int:
        return int(raw_value, 10)
    if target is float:
        return float(raw_value)
    return raw_value


def _resolve_annotation(annotation: Any) -> Any:
    if get_origin(annotation) is None:
        return annotation
    args = [arg for arg in get_args(annotation) if arg is not type(None)]
    return args[0] if args else annotation


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"Cannot coerce '{value}' to a boolean.")


def _dump_settings(
    settings: Settings,
    store: SettingsStore,
    *,
    overrides: Mapping[str, Any],
    stream: TextIO | None = None,
) -> None:
    destination = stream or sys.stdout
    payload = asdict(settings)
    payload["api_key"] = _redact_secret(str(payload.get("api_key") or ""))
    metadata = {
        "path": str(store.path),
        "cli_overrides": sorted(overrides.keys()),
        "environment_variables": sorted(name for name in os.environ if name.startswith("OVERLAYCHAT_")),
    }
    json.dump({"settings": payload, "meta": metadata}, destination, indent=2)
    destination.write("\n")


def _redact_secret(value: str) -> str:
    stripped = value.strip()
    if not stripped:
        return ""
    if len(stripped) <= 4:
        return "*" * len(stripped)
    return f"{stripped[:2]}{'*' * (len(stripped) - 4)}{stripped[-2:]}"


if __name__ == "__main__":  # pragma: no cover - manual entry point
    main()
