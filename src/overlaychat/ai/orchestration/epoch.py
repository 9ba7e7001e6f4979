"""Monotonic request generation counter used to discard stale async results."""

from __future__ import annotations

import logging
from typing import Callable

LOGGER = logging.getLogger(__name__)

EpochListener = Callable[[int], None]


class RequestEpochTracker:
    """Holds the epoch of the currently valid request.

    Every async continuation captures :attr:`current` when it starts and checks
    :meth:`is_current` before touching shared state. Nothing is ever aborted:
    a result tagged with an old epoch is simply ignored.
    """

    def __init__(self, start: int = 0) -> None:
        self._current = int(start)
        self._listeners: list[EpochListener] = []

    @property
    def current(self) -> int:
        return self._current

    def bump(self) -> int:
        """Advance to a new epoch and return it."""
        self._current += 1
        epoch = self._current
        for listener in list(self._listeners):
            try:
                listener(epoch)
            except Exception:  # pragma: no cover - listener bugs must not block cancel
                LOGGER.debug("Epoch listener failed", exc_info=True)
        return epoch

    def cancel(self) -> int:
        """Invalidate the in-flight request without starting a new one."""
        return self.bump()

    def is_current(self, epoch: int) -> bool:
        return epoch == self._current

    def add_listener(self, listener: EpochListener) -> Callable[[], None]:
        """Register ``listener`` for epoch changes; returns an unsubscribe callable."""

        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove


__all__ = ["RequestEpochTracker", "EpochListener"]
