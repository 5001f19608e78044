"""Abort registry grouping in-flight operations by abort key."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress

logger = logging.getLogger(__name__)


class AbortHandle:
    """Abort signal for one operation."""

    def __init__(self, abort_key: str, request_id: str) -> None:
        self.abort_key = abort_key
        self.request_id = request_id
        self._signal = asyncio.Event()

    @property
    def aborted(self) -> bool:
        return self._signal.is_set()

    def abort(self) -> bool:
        """Set the signal; returns False when it was already set."""
        if self._signal.is_set():
            return False
        self._signal.set()
        return True

    async def wait(self) -> None:
        await self._signal.wait()

    async def sleep(self, seconds: float) -> None:
        """Sleep for ``seconds`` or until aborted, whichever comes first."""
        if seconds <= 0 or self.aborted:
            return
        with suppress(TimeoutError):
            await asyncio.wait_for(self._signal.wait(), timeout=seconds)


class AbortRegistry:
    """Map of abort key to the handles of its in-flight operations."""

    def __init__(self) -> None:
        self._handles: dict[str, dict[str, AbortHandle]] = {}

    def register(self, abort_key: str, request_id: str) -> AbortHandle:
        handle = AbortHandle(abort_key, request_id)
        self._handles.setdefault(abort_key, {})[request_id] = handle
        return handle

    def release(self, abort_key: str, request_id: str) -> None:
        handles = self._handles.get(abort_key)
        if handles is None:
            return
        handles.pop(request_id, None)
        if not handles:
            del self._handles[abort_key]

    def get(self, abort_key: str, request_id: str) -> AbortHandle | None:
        return self._handles.get(abort_key, {}).get(request_id)

    def request_ids(self, abort_key: str) -> list[str]:
        return list(self._handles.get(abort_key, {}))

    def abort(self, abort_key: str) -> int:
        """Abort every operation registered under ``abort_key``."""
        handles = list(self._handles.get(abort_key, {}).values())
        aborted = sum(1 for handle in handles if handle.abort())
        if aborted:
            logger.debug("aborted %d operation(s) abort_key=%s", aborted, abort_key)
        return aborted

    def abort_request(self, abort_key: str, request_id: str) -> bool:
        handle = self.get(abort_key, request_id)
        return handle.abort() if handle is not None else False

    def abort_all(self) -> int:
        return sum(self.abort(abort_key) for abort_key in list(self._handles))
