"""Event-loop timers used by the fetch watcher."""

from __future__ import annotations

import asyncio
from collections.abc import Callable

from hyperfetch.time_utils import ms_to_seconds


class Debounce:
    """Run only the last scheduled callback once ``delay_ms`` passes quietly."""

    def __init__(self, delay_ms: int) -> None:
        self.delay_ms = delay_ms
        self._handle: asyncio.TimerHandle | None = None

    @property
    def active(self) -> bool:
        return self._handle is not None

    def schedule(self, callback: Callable[[], None]) -> None:
        self.cancel()

        def _fire() -> None:
            self._handle = None
            callback()

        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(ms_to_seconds(self.delay_ms) or 0.0, _fire)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None


class Interval:
    """Call ``callback`` every ``period_ms`` until stopped."""

    def __init__(self, period_ms: int, callback: Callable[[], None]) -> None:
        self.period_ms = period_ms
        self.callback = callback
        self._handle: asyncio.TimerHandle | None = None

    @property
    def active(self) -> bool:
        return self._handle is not None

    def start(self) -> None:
        self.stop()
        self._schedule()

    def _schedule(self) -> None:
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(ms_to_seconds(self.period_ms) or 0.0, self._tick)

    def _tick(self) -> None:
        self._schedule()
        self.callback()

    def stop(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
