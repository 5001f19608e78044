"""Bridge from push-based realtime sources into the cache."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Protocol

from hyperfetch.adapter import Response
from hyperfetch.keys import get_request_key, join_url
from hyperfetch.time_utils import MINUTE_MS

if TYPE_CHECKING:
    from hyperfetch.client import Client

logger = logging.getLogger(__name__)

SUCCESS = "success"
EMPTY_RESOURCE = "emptyResource"


@dataclass(frozen=True)
class ListenerOptions:
    only_once: bool = False
    order_by: str | None = None
    filter_by: Mapping[str, Any] | None = None


@dataclass(frozen=True)
class RealtimeExtra:
    status: str
    snapshot: Any = None
    ref: str | None = None


@dataclass(frozen=True)
class RealtimeEvent:
    data: Any
    extra: RealtimeExtra


Unsubscribe = Callable[[], None]
RealtimeCallback = Callable[[RealtimeEvent], None]


class RealtimeSource(Protocol):
    """Push source; may emit synchronously from inside ``subscribe``."""

    def subscribe(
        self,
        name: str,
        options: ListenerOptions,
        callback: RealtimeCallback,
    ) -> Unsubscribe: ...


def status_for(data: Any) -> str:
    return EMPTY_RESOURCE if data is None else SUCCESS


@dataclass(frozen=True)
class Listener:
    """Cache-addressable description of one realtime subscription."""

    bridge: RealtimeBridge = field(repr=False, compare=False)
    name: str
    options: ListenerOptions = field(default_factory=ListenerOptions)
    cache: bool = True
    cache_time: int = 5 * MINUTE_MS
    deep_equal: bool = True
    pinned_cache_key: str | None = None

    @property
    def path(self) -> str:
        return join_url(self.bridge.client.url, self.name)

    @property
    def cache_key(self) -> str:
        if self.pinned_cache_key is not None:
            return self.pinned_cache_key
        return get_request_key("GET", self.bridge.client.url, self.name)

    def set_cache_key(self, cache_key: str) -> Listener:
        return replace(self, pinned_cache_key=cache_key)

    def set_options(self, **options: Any) -> Listener:
        return replace(self, options=replace(self.options, **options))

    def listen(self, callback: RealtimeCallback | None = None) -> ListenerSubscription:
        return self.bridge.listen(self, callback)


class ListenerSubscription:
    """Live subscription; ``close`` is idempotent and also callable directly."""

    def __init__(
        self,
        bridge: RealtimeBridge,
        listener: Listener,
        callback: RealtimeCallback | None,
    ) -> None:
        self.bridge = bridge
        self.listener = listener
        self.callback = callback
        self.emissions = 0
        self._unsubscribe: Unsubscribe | None = None
        self._closed = False

    @property
    def active(self) -> bool:
        return not self._closed

    def _attach(self, unsubscribe: Unsubscribe) -> None:
        # The source may already have emitted and closed us during subscribe.
        if self._closed:
            unsubscribe()
            return
        self._unsubscribe = unsubscribe

    def _deliver(self, event: RealtimeEvent) -> None:
        if self._closed:
            return
        self.emissions += 1
        status = status_for(event.data)
        extra = replace(event.extra, status=status)
        response = Response(
            data=event.data,
            status=status,
            additional_data={"snapshot": extra.snapshot, "ref": extra.ref},
        )
        self.bridge.client.cache.set(self.listener, response)
        if self.listener.options.only_once:
            self.close()
        if self.callback is None:
            return
        try:
            self.callback(RealtimeEvent(data=event.data, extra=extra))
        except Exception:
            logger.exception("listener callback failed name=%s", self.listener.name)

    def close(self) -> bool:
        if self._closed:
            return False
        self._closed = True
        self.bridge._discard(self)
        unsubscribe, self._unsubscribe = self._unsubscribe, None
        if unsubscribe is not None:
            unsubscribe()
        logger.debug("listener closed name=%s emissions=%d", self.listener.name, self.emissions)
        return True

    def __call__(self) -> bool:
        return self.close()

    def __enter__(self) -> ListenerSubscription:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


class RealtimeBridge:
    """Registry of listener subscriptions for one client and source."""

    def __init__(self, client: Client, source: RealtimeSource) -> None:
        self.client = client
        self.source = source
        self._subscriptions: dict[str, list[ListenerSubscription]] = {}

    def create_listener(
        self,
        name: str,
        *,
        only_once: bool = False,
        order_by: str | None = None,
        filter_by: Mapping[str, Any] | None = None,
        cache: bool | None = None,
        cache_time: int | None = None,
        deep_equal: bool | None = None,
        cache_key: str | None = None,
    ) -> Listener:
        settings = self.client.settings
        return Listener(
            bridge=self,
            name=name,
            options=ListenerOptions(only_once=only_once, order_by=order_by, filter_by=filter_by),
            cache=settings.cache if cache is None else cache,
            cache_time=settings.cache_time_ms if cache_time is None else cache_time,
            deep_equal=settings.deep_equal if deep_equal is None else deep_equal,
            pinned_cache_key=cache_key,
        )

    def listen(
        self,
        listener: Listener,
        callback: RealtimeCallback | None = None,
    ) -> ListenerSubscription:
        subscription = ListenerSubscription(self, listener, callback)
        self._subscriptions.setdefault(listener.name, []).append(subscription)
        logger.debug("listener subscribed name=%s path=%s", listener.name, listener.path)
        unsubscribe = self.source.subscribe(listener.path, listener.options, subscription._deliver)
        subscription._attach(unsubscribe)
        return subscription

    def listener_count(self, name: str) -> int:
        return len(self._subscriptions.get(name, ()))

    def close_all(self) -> int:
        subscriptions = [sub for subs in self._subscriptions.values() for sub in subs]
        return sum(1 for subscription in subscriptions if subscription.close())

    def _discard(self, subscription: ListenerSubscription) -> None:
        name = subscription.listener.name
        subscriptions = self._subscriptions.get(name)
        if not subscriptions or subscription not in subscriptions:
            return
        subscriptions.remove(subscription)
        if not subscriptions:
            del self._subscriptions[name]
