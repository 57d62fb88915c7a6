"""
Wall-clock helpers shared by the rate limiter and circuit breakers.

All governance timestamps are epoch milliseconds.
"""

import time
from typing import Callable

Clock = Callable[[], float]


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)
