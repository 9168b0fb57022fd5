"""
clock.py
========
Wall-clock timestamps in epoch milliseconds, shared by heartbeat writers and
staleness checks. Components take a `clock` callable so tests can drive time.
"""

import time
from typing import Callable

Clock = Callable[[], int]


def now_ms() -> int:
    return int(time.time() * 1000)
