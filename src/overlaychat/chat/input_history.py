"""Up/down recall of previously submitted inputs."""

from __future__ import annotations

from typing import Sequence


class InputHistory:
    """Navigates submitted inputs newest-first while preserving the draft.

    ``previous`` moves to an older entry, ``next`` to a newer one; stepping
    past the newest entry restores whatever the user was typing before
    navigation started.
    """

    def __init__(self, entries: Sequence[str] | None = None) -> None:
        self._entries: list[str] = list(entries or [])
        self._index = -1
        self._draft = ""

    @property
    def entries(self) -> tuple[str, ...]:
        return tuple(self._entries)

    @property
    def is_navigating(self) -> bool:
        return self._index != -1

    def record(self, text: str) -> None:
        """Remember a submitted input and end navigation."""

        value = (text or "").strip()
        if value:
            self._entries.append(value)
        self.reset()

    def previous(self, current: str = "") -> str | None:
        """Return the next older entry, or ``None`` when there is nothing to recall."""

        if not self._entries:
            return None
        if self._index == -1:
            self._draft = current
        self._index = min(self._index + 1, len(self._entries) - 1)
        return self._value_at(self._index)

    def next(self) -> str | None:
        if self._index == -1:
            return None
        self._index = max(self._index - 1, -1)
        return self._value_at(self._index)

    def reset(self) -> None:
        self._index = -1
        self._draft = ""

    def _value_at(self, index: int) -> str:
        if index == -1:
            return self._draft
        return self._entries[len(self._entries) - 1 - index]


__all__ = ["InputHistory"]
