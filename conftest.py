"""
Shared pytest fixtures.
"""

import pytest

# Aligned to a minute boundary so fixed windows start at the clock's origin
START_MS = 1_700_000_040_000


class FakeClock:
    """Manually advanced epoch-millisecond clock."""

    def __init__(self, now: float = START_MS):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float):
        self.now += ms


@pytest.fixture
def clock():
    return FakeClock()
