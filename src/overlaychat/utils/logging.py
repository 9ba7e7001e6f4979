"""Logging setup for the overlay chat console and its backend clients.

The rotating log file always receives full records. The console handler
writes to stderr with a compact format so it does not interleave with the
REPL transcript on stdout.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
import sys
from pathlib import Path

__all__ = ["LOG_DIR_ENV", "LOG_LEVEL_ENV", "get_log_path", "parse_level", "resolve_level", "setup_logging"]

LOG_DIR_ENV = "OVERLAYCHAT_LOG_DIR"
LOG_LEVEL_ENV = "OVERLAYCHAT_LOG_LEVEL"

_DEFAULT_LOG_DIR = Path.home() / ".overlaychat" / "logs"
_LOG_FILE_NAME = "overlaychat.log"
_FILE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
_CONSOLE_FORMAT = "%(levelname)s %(name)s: %(message)s"
# capped at WARNING or the root level, whichever is higher
_NOISY_LOGGERS: tuple[str, ...] = ("asyncio", "httpx", "httpcore", "openai")

_LOG_PATH: Path | None = None


def setup_logging(
    level: int = logging.INFO,
    *,
    log_dir: Path | str | None = None,
    console: bool = True,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    force: bool = False,
) -> Path:
    """Install the file (and optionally stderr) handlers on the root logger.

    A second call is a no-op returning the existing log path unless
    ``force`` is set.
    """

    global _LOG_PATH
    if _LOG_PATH is not None and not force:
        return _LOG_PATH

    log_path = _log_dir(log_dir) / _LOG_FILE_NAME
    log_path.parent.mkdir(parents=True, exist_ok=True)

    handlers: list[logging.Handler] = [_file_handler(log_path, level, max_bytes, backup_count)]
    if console:
        handlers.append(_console_handler(level))

    logging.basicConfig(level=level, handlers=handlers, force=True)
    logging.captureWarnings(True)
    quiet = max(level, logging.WARNING)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(quiet)

    _LOG_PATH = log_path
    return log_path


def get_log_path() -> Path | None:
    return _LOG_PATH


def parse_level(value: str | int | None, *, default: int = logging.INFO) -> int:
    """Map a level name ("debug") or number to a logging level."""

    if value is None or value == "":
        return default
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if text.isdigit():
        return int(text)
    resolved = logging.getLevelName(text.upper())
    return resolved if isinstance(resolved, int) else default


def resolve_level(*, debug: bool = False) -> int:
    """DEBUG when ``debug`` is set, otherwise ``OVERLAYCHAT_LOG_LEVEL`` (INFO if unset)."""

    if debug:
        return logging.DEBUG
    return parse_level(os.environ.get(LOG_LEVEL_ENV))


def _log_dir(log_dir: Path | str | None) -> Path:
    return Path(log_dir or os.environ.get(LOG_DIR_ENV) or _DEFAULT_LOG_DIR).expanduser()


def _file_handler(path: Path, level: int, max_bytes: int, backup_count: int) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
    )
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(_FILE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    return handler


def _console_handler(level: int) -> logging.Handler:
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(_CONSOLE_FORMAT))
    return handler
