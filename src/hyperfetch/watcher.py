"""Headless fetch watcher: keeps a local view of one command's cache entry."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, replace
from typing import Any

from hyperfetch.adapter import Response
from hyperfetch.cache import CacheEntry
from hyperfetch.command import Command
from hyperfetch.events import QueueLoadingEvent, Subscription
from hyperfetch.keys import InvalidatePattern
from hyperfetch.time_utils import SECOND_MS, is_stale
from hyperfetch.timers import Debounce, Interval

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WatcherState:
    data: Any = None
    error: BaseException | None = None
    status: int | str | None = None
    loading: bool = False
    retries: int = 0
    timestamp: float | None = None
    is_refreshed: bool = False
    is_stale: bool = True


class FetchWatcher:
    """Fetch a command through the fetch queue and follow its cache key.

    The first fetch after ``start`` is immediate; later ``fetch`` calls are
    debounced when ``debounce`` is set. With ``refresh`` the command is
    re-queued every ``refresh_time`` ms, skipped while the queue still holds
    work for its key.
    """

    def __init__(
        self,
        command: Command,
        *,
        revalidate_on_start: bool = True,
        refresh: bool = False,
        refresh_time: int = 30 * SECOND_MS,
        debounce: bool = False,
        debounce_time: int = 400,
        disabled: bool = False,
    ) -> None:
        self.command = command
        self.revalidate_on_start = revalidate_on_start
        self.refresh_enabled = refresh
        self.debounce_enabled = debounce
        self.disabled = disabled or command.disabled
        self._state = WatcherState()
        self._subscriptions: list[Subscription] = []
        self._debounce = Debounce(debounce_time)
        self._interval = Interval(refresh_time, self._on_refresh_tick)
        self._fetched = False
        self._on_success: Callable[[Any], None] | None = None
        self._on_error: Callable[[BaseException], None] | None = None
        self._on_finished: Callable[[Response], None] | None = None
        self._on_request: Callable[[bool], None] | None = None

    @property
    def client(self):
        return self.command.client

    @property
    def state(self) -> WatcherState:
        cache = self.client.cache
        if self.command.cache_key in cache:
            stale = cache.is_stale(self.command.cache_key, self.command.cache_time)
        else:
            stale = is_stale(self.command.cache_time, self._state.timestamp, now=self.client.clock())
        return replace(self._state, is_stale=stale)

    @property
    def started(self) -> bool:
        return bool(self._subscriptions)

    # Callback registration

    def on_success(self, callback: Callable[[Any], None]) -> FetchWatcher:
        self._on_success = callback
        return self

    def on_error(self, callback: Callable[[BaseException], None]) -> FetchWatcher:
        self._on_error = callback
        return self

    def on_finished(self, callback: Callable[[Response], None]) -> FetchWatcher:
        self._on_finished = callback
        return self

    def on_request(self, callback: Callable[[bool], None]) -> FetchWatcher:
        """``callback(is_retry)`` runs whenever an attempt starts loading."""
        self._on_request = callback
        return self

    # Lifecycle

    def start(self) -> FetchWatcher:
        """Subscribe and fetch if needed; must run inside an event loop."""
        if self.started:
            return self
        command = self.command
        cache = self.client.cache
        self._subscriptions = [
            self.client.fetch_queue.events.on_loading(command.queue_key, self._on_loading),
            cache.events.on_get(command.cache_key, self._on_get),
            cache.events.on_get_equal_data(command.cache_key, self._on_get_equal_data),
            cache.events.on_revalidate(command.cache_key, self._on_revalidate),
        ]

        entry = cache.get(command.cache_key)
        if entry is not None:
            self._state = self._state_from(entry)
            self._run_callbacks(entry.response)

        if self.revalidate_on_start or cache.is_stale(command.cache_key, command.cache_time):
            self._fetch_now()
        self._restart_refresh()
        return self

    def stop(self) -> None:
        for subscription in self._subscriptions:
            subscription.close()
        self._subscriptions = []
        self._debounce.cancel()
        self._interval.stop()

    def fetch(self) -> None:
        if self.debounce_enabled and self._fetched:
            self._debounce.schedule(self._fetch_now)
            return
        self._fetch_now()

    def refresh(self, invalidate_key: InvalidatePattern | Command | None = None) -> None:
        """Re-fetch now, or revalidate another key/command so its watchers re-fetch."""
        if invalidate_key is None:
            self._fetch_now()
        elif isinstance(invalidate_key, Command):
            self.client.cache.revalidate(invalidate_key.cache_key)
        else:
            self.client.cache.revalidate(invalidate_key)

    def _fetch_now(self) -> None:
        self._fetched = True
        if self.disabled:
            logger.debug("watcher disabled, skipping fetch cache_key=%s", self.command.cache_key)
            return
        self.client.fetch_queue.add(self.command)

    # Event handlers

    def _state_from(self, entry: CacheEntry) -> WatcherState:
        return replace(
            self._state,
            data=entry.data,
            error=entry.error,
            status=entry.status,
            retries=entry.retries,
            timestamp=entry.timestamp,
            is_refreshed=entry.is_refreshed,
        )

    def _run_callbacks(self, response: Response) -> None:
        if response.is_success:
            if self._on_success is not None:
                self._on_success(response.data)
        elif self._on_error is not None:
            self._on_error(response.error)
        if self._on_finished is not None:
            self._on_finished(response)

    def _on_get(self, entry: CacheEntry) -> None:
        self._run_callbacks(entry.response)
        self._state = replace(self._state_from(entry), loading=False)
        self._restart_refresh()

    def _on_get_equal_data(self, entry: CacheEntry) -> None:
        self._run_callbacks(entry.response)
        self._state = replace(
            self._state,
            retries=entry.retries,
            timestamp=entry.timestamp,
            is_refreshed=entry.is_refreshed,
            loading=False,
        )
        self._restart_refresh()

    def _on_loading(self, event: QueueLoadingEvent) -> None:
        self._state = replace(self._state, loading=event.is_loading)
        if event.is_loading and self._on_request is not None:
            self._on_request(event.is_retry)

    def _on_revalidate(self, _key: str) -> None:
        self._fetch_now()

    def _on_refresh_tick(self) -> None:
        if self.client.fetch_queue.get_request_count(self.command.queue_key):
            logger.debug("refresh skipped, queue busy queue_key=%s", self.command.queue_key)
            return
        self._fetch_now()

    def _restart_refresh(self) -> None:
        if self.refresh_enabled and self.started:
            self._interval.start()
