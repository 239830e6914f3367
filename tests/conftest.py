"""Shared test fixtures."""

import pytest


class FakeClock:
    """Monotonic clock advanced only by its own sleep."""

    def __init__(self):
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def fake_clock():
    """Fake clock for polling without wall-clock waits."""
    return FakeClock()
