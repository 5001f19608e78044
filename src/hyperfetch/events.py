"""Synchronous keyed publish/subscribe used between cache, queues and consumers."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from hyperfetch.adapter import Response

logger = logging.getLogger(__name__)

Callback = Callable[[Any], None]

CACHE_GET = "cache:get"
CACHE_GET_EQUAL_DATA = "cache:get_equal_data"
CACHE_REVALIDATE = "cache:revalidate"
CACHE_RESPONSE = "cache:response"


@dataclass(frozen=True)
class ResponseDetails:
    """Terminal settlement of one operation, published per cache key."""

    response: Response
    request_id: str | None
    retries: int
    timestamp: float
    is_refreshed: bool


@dataclass(frozen=True)
class QueueLoadingEvent:
    """Loading transition of one queue entry."""

    queue_key: str
    request_id: str
    is_loading: bool
    is_retry: bool


class Subscription:
    """Handle returned by :meth:`EventBus.on`; closing it is idempotent."""

    def __init__(self, bus: EventBus, event: str, key: str, callback: Callback) -> None:
        self._bus = bus
        self.event = event
        self.key = key
        self.callback = callback
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def close(self) -> None:
        if not self._active:
            return
        self._active = False
        self._bus._remove(self)

    def __call__(self) -> None:
        self.close()

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


class EventBus:
    """In-process event bus with per-(event, key) channels.

    Delivery is synchronous and ordered by subscription time. Callbacks
    subscribed or closed during an emit do not affect that emit.
    """

    def __init__(self) -> None:
        self._channels: dict[tuple[str, str], list[Subscription]] = {}

    def on(self, event: str, key: str, callback: Callback) -> Subscription:
        subscription = Subscription(self, event, key, callback)
        self._channels.setdefault((event, key), []).append(subscription)
        return subscription

    def emit(self, event: str, key: str, payload: Any = None) -> int:
        subscribers = list(self._channels.get((event, key), ()))
        delivered = 0
        for subscription in subscribers:
            if not subscription.active:
                continue
            try:
                subscription.callback(payload)
            except Exception:
                logger.exception("event subscriber failed event=%s key=%s", event, key)
            delivered += 1
        return delivered

    def listener_count(self, event: str, key: str) -> int:
        return len(self._channels.get((event, key), ()))

    def _remove(self, subscription: Subscription) -> None:
        channel_key = (subscription.event, subscription.key)
        subscribers = self._channels.get(channel_key)
        if not subscribers:
            return
        try:
            subscribers.remove(subscription)
        except ValueError:
            return
        if not subscribers:
            del self._channels[channel_key]


class CacheEvents:
    """Cache channel: settlement, equal-data, revalidation and response events."""

    def __init__(self, bus: EventBus) -> None:
        self.bus = bus

    def on_get(self, cache_key: str, callback: Callback) -> Subscription:
        return self.bus.on(CACHE_GET, cache_key, callback)

    def on_get_equal_data(self, cache_key: str, callback: Callback) -> Subscription:
        return self.bus.on(CACHE_GET_EQUAL_DATA, cache_key, callback)

    def on_revalidate(self, cache_key: str, callback: Callback) -> Subscription:
        return self.bus.on(CACHE_REVALIDATE, cache_key, callback)

    def on_response(self, cache_key: str, callback: Callback) -> Subscription:
        return self.bus.on(CACHE_RESPONSE, cache_key, callback)

    def emit_get(self, cache_key: str, entry: Any) -> int:
        return self.bus.emit(CACHE_GET, cache_key, entry)

    def emit_get_equal_data(self, cache_key: str, entry: Any) -> int:
        return self.bus.emit(CACHE_GET_EQUAL_DATA, cache_key, entry)

    def emit_revalidate(self, cache_key: str) -> int:
        return self.bus.emit(CACHE_REVALIDATE, cache_key, cache_key)

    def emit_response(self, cache_key: str, details: ResponseDetails) -> int:
        return self.bus.emit(CACHE_RESPONSE, cache_key, details)


class QueueEvents:
    """Queue channel namespaced by queue kind (``fetch`` or ``submit``)."""

    def __init__(self, bus: EventBus, kind: str) -> None:
        self.bus = bus
        self.kind = kind

    def _event(self, name: str) -> str:
        return f"{self.kind}:{name}"

    def on_loading(self, queue_key: str, callback: Callback) -> Subscription:
        return self.bus.on(self._event("loading"), queue_key, callback)

    def on_request_start(self, queue_key: str, callback: Callback) -> Subscription:
        return self.bus.on(self._event("request_start"), queue_key, callback)

    def on_queue_change(self, queue_key: str, callback: Callback) -> Subscription:
        return self.bus.on(self._event("queue_change"), queue_key, callback)

    def emit_loading(self, queue_key: str, event: QueueLoadingEvent) -> int:
        return self.bus.emit(self._event("loading"), queue_key, event)

    def emit_request_start(self, queue_key: str, payload: Any) -> int:
        return self.bus.emit(self._event("request_start"), queue_key, payload)

    def emit_queue_change(self, queue_key: str, payload: Any) -> int:
        return self.bus.emit(self._event("queue_change"), queue_key, payload)
