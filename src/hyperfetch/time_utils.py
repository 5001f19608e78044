"""Shared millisecond clock helpers."""

from __future__ import annotations

import time
from collections.abc import Callable

Clock = Callable[[], float]

SECOND_MS = 1000
MINUTE_MS = 60 * SECOND_MS


def now_ms() -> float:
    """Return current wall-clock time in milliseconds."""
    return time.time() * 1000


def ms_to_seconds(value: float | int | None) -> float | None:
    """Convert a millisecond duration to seconds, keeping ``None``."""
    if value is None:
        return None
    return max(0.0, float(value) / 1000)


def is_stale(cache_time: float, timestamp: float | None, *, now: float | None = None) -> bool:
    """Return True when ``timestamp`` is older than ``cache_time`` milliseconds."""
    if timestamp is None:
        return True
    current = now_ms() if now is None else now
    return current - timestamp > cache_time
