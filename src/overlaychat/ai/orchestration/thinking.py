"""Helpers for reasoning ("thinking") side-channel text."""

from __future__ import annotations

import re

__all__ = [
    "INLINE_REASONING_PATTERNS",
    "extract_inline_reasoning",
    "normalize",
    "merge_incremental",
    "choose_reasoning",
]

INLINE_REASONING_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"<think>(.*?)</think>", re.IGNORECASE | re.DOTALL),
    re.compile(r"<thinking>(.*?)</thinking>", re.IGNORECASE | re.DOTALL),
)

_PUNCTUATION_ONLY_RE = re.compile(r"^[.?!]+$")
_PLACEHOLDER_MAX_WORDS = 2
_PLACEHOLDER_MAX_CHARS = 24


def extract_inline_reasoning(text: str) -> tuple[str, str | None]:
    """Strip inline reasoning spans from ``text``.

    Returns the cleaned, trimmed text and the matched inner contents joined
    by a blank line, or ``None`` when nothing non-blank matched.
    """

    cleaned = text or ""
    parts: list[str] = []

    def _collect(match: re.Match[str]) -> str:
        inner = match.group(1).strip()
        if inner:
            parts.append(inner)
        return ""

    for pattern in INLINE_REASONING_PATTERNS:
        cleaned = pattern.sub(_collect, cleaned)

    reasoning = "\n\n".join(parts).strip() if parts else None
    return cleaned.strip(), reasoning or None


def normalize(value: str | None) -> str | None:
    """Return the trimmed value, or ``None`` for blank or punctuation-only noise."""

    if not value:
        return None
    trimmed = value.strip()
    if not trimmed:
        return None
    if _PUNCTUATION_ONLY_RE.match(trimmed):
        return None
    return trimmed


def merge_incremental(current: str | None, next_value: str) -> str:
    """Merge a streamed reasoning fragment into the accumulated value.

    Backends either resend the cumulative text or send deltas. A fragment that
    already starts with the accumulated text replaces it; anything else is
    appended.
    """

    if not current:
        return next_value
    if next_value.startswith(current):
        return next_value
    return current + next_value


def choose_reasoning(structured: str | None, extracted: str | None) -> str | None:
    """Prefer the structured reasoning field unless it is a short placeholder."""

    if not extracted:
        return structured
    if not structured:
        return extracted
    words = structured.split()
    if len(words) <= _PLACEHOLDER_MAX_WORDS and len(structured) <= _PLACEHOLDER_MAX_CHARS:
        return extracted
    return structured
