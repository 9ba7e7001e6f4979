"""Shared pytest fixtures."""

from __future__ import annotations

import pytest

from tests.helpers import FakeClock, ScriptedBackend


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def backend(clock: FakeClock) -> ScriptedBackend:
    return ScriptedBackend(clock)
