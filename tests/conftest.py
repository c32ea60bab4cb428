"""Shared fixtures: a controllable clock and common model builders."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

T0 = datetime(2024, 6, 1, 12, 0, 0, tzinfo=UTC)


class MockClock:
    """A controllable clock for testing time-dependent behavior."""

    def __init__(self, start: datetime = T0) -> None:
        self._now = start

    def __call__(self) -> datetime:
        return self._now

    def advance(self, seconds: float = 0, minutes: float = 0) -> None:
        self._now += timedelta(seconds=seconds, minutes=minutes)


@pytest.fixture()
def clock() -> MockClock:
    return MockClock()
