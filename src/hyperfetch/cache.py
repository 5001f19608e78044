"""Key-addressed store of the latest settled response per cache key."""

from __future__ import annotations

import logging
from collections.abc import MutableMapping
from dataclasses import dataclass, field, replace
from typing import Any, Protocol

from hyperfetch.adapter import Response
from hyperfetch.errors import error_signature
from hyperfetch.events import CacheEvents, EventBus, ResponseDetails
from hyperfetch.keys import InvalidatePattern, matching_keys
from hyperfetch.time_utils import Clock, is_stale, now_ms

logger = logging.getLogger(__name__)


class Cacheable(Protocol):
    """Anything that can settle into the cache: commands and listeners."""

    @property
    def cache_key(self) -> str: ...

    @property
    def cache(self) -> bool: ...

    @property
    def cache_time(self) -> float: ...

    @property
    def deep_equal(self) -> bool: ...


@dataclass(frozen=True)
class CacheEntry:
    """Latest settled result for one cache key plus bookkeeping."""

    data: Any
    error: BaseException | None
    status: int | str | None
    retries: int
    timestamp: float
    is_refreshed: bool
    cache_time: float
    additional_data: dict[str, Any] = field(default_factory=dict)
    invalidated: bool = False

    @property
    def response(self) -> Response:
        return Response(
            data=self.data,
            error=self.error,
            status=self.status,
            additional_data=self.additional_data,
        )

    def is_stale(self, *, cache_time: float | None = None, now: float | None = None) -> bool:
        if self.invalidated:
            return True
        window = self.cache_time if cache_time is None else cache_time
        return is_stale(window, self.timestamp, now=now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "data": self.data,
            "error": None if self.error is None else str(self.error),
            "status": self.status,
            "retries": self.retries,
            "timestamp": self.timestamp,
            "is_refreshed": self.is_refreshed,
            "cache_time": self.cache_time,
            "invalidated": self.invalidated,
        }


def _same_payload(entry: CacheEntry, response: Response) -> bool:
    return (
        entry.data == response.data
        and entry.status == response.status
        and error_signature(entry.error) == error_signature(response.error)
    )


class Cache:
    """Cache store shared by fetch/submit queues and realtime listeners.

    ``set`` is the only ingestion path. Consumers observe changes through
    ``events``; entries are never handed out for mutation.
    """

    def __init__(
        self,
        bus: EventBus,
        *,
        clock: Clock = now_ms,
        storage: MutableMapping[str, CacheEntry] | None = None,
    ) -> None:
        self.events = CacheEvents(bus)
        self._clock = clock
        self._storage: MutableMapping[str, CacheEntry] = {} if storage is None else storage

    def get(self, cache_key: str) -> CacheEntry | None:
        return self._storage.get(cache_key)

    def keys(self) -> list[str]:
        return list(self._storage)

    def __len__(self) -> int:
        return len(self._storage)

    def __contains__(self, cache_key: object) -> bool:
        return cache_key in self._storage

    def set(
        self,
        source: Cacheable,
        response: Response,
        *,
        retries: int = 0,
        request_id: str | None = None,
    ) -> CacheEntry:
        key = source.cache_key
        previous = self._storage.get(key)
        timestamp = self._clock()
        if previous is not None:
            timestamp = max(timestamp, previous.timestamp)
        is_refreshed = previous is not None and response.is_success
        equal = source.deep_equal and previous is not None and _same_payload(previous, response)

        if equal:
            entry = replace(
                previous,
                retries=retries,
                timestamp=timestamp,
                is_refreshed=is_refreshed,
                cache_time=source.cache_time,
                invalidated=False,
            )
        else:
            entry = CacheEntry(
                data=response.data,
                error=response.error,
                status=response.status,
                retries=retries,
                timestamp=timestamp,
                is_refreshed=is_refreshed,
                cache_time=source.cache_time,
                additional_data=dict(response.additional_data),
            )

        if source.cache:
            self._storage[key] = entry
        logger.debug(
            "cache set key=%s equal=%s stored=%s retries=%d",
            key,
            equal,
            source.cache,
            retries,
        )

        if equal:
            self.events.emit_get_equal_data(key, entry)
        else:
            self.events.emit_get(key, entry)
        details = ResponseDetails(
            response=response,
            request_id=request_id,
            retries=retries,
            timestamp=timestamp,
            is_refreshed=is_refreshed,
        )
        self.events.emit_response(key, details)
        return entry

    def revalidate(self, *patterns: InvalidatePattern) -> list[str]:
        """Mark matching entries stale and emit one revalidate event per key."""
        keys = matching_keys(patterns, self._storage)
        for key in keys:
            self._storage[key] = replace(self._storage[key], invalidated=True)
        for key in keys:
            self.events.emit_revalidate(key)
        if keys:
            logger.debug("revalidated %d cache key(s)", len(keys))
        return keys

    def is_stale(self, cache_key: str, cache_time: float | None = None) -> bool:
        entry = self._storage.get(cache_key)
        if entry is None:
            return True
        return entry.is_stale(cache_time=cache_time, now=self._clock())

    def delete(self, cache_key: str) -> bool:
        return self._storage.pop(cache_key, None) is not None

    def clear(self) -> None:
        self._storage.clear()

    def evict_stale(self) -> list[str]:
        """Remove entries whose own cache window has elapsed."""
        now = self._clock()
        stale = [key for key, entry in self._storage.items() if entry.is_stale(now=now)]
        for key in stale:
            del self._storage[key]
        return stale
