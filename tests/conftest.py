from unittest.mock import Mock

import pytest

# 2024-03-10 12:00:00 UTC
START_TS = 1710072000.0


class FakeClock:
    """Manually advanced wall clock for time-dependent services."""

    def __init__(self, start: float = START_TS):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def alert_func():
    """Stand-in for the Telegram alert sender."""
    return Mock(return_value=True)
