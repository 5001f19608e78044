"""Client: wires the bus, cache, abort registry, queues and executor together."""

from __future__ import annotations

import logging
from typing import Any

from hyperfetch.abort import AbortRegistry
from hyperfetch.adapter import Executor, HttpxAdapter
from hyperfetch.cache import Cache
from hyperfetch.command import Command
from hyperfetch.events import EventBus
from hyperfetch.queue import FETCH, SUBMIT, Dispatcher, FetchQueue, SubmitQueue
from hyperfetch.settings import Settings
from hyperfetch.storage import DumpStore
from hyperfetch.time_utils import Clock, now_ms

logger = logging.getLogger(__name__)

FETCH_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "ONVALUE"})


class Client:
    """Per-client services; nothing here is process-global."""

    def __init__(
        self,
        url: str = "",
        *,
        adapter: Executor | None = None,
        settings: Settings | None = None,
        clock: Clock | None = None,
        dump_store: DumpStore | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self.url = url or self.settings.base_url
        self.clock: Clock = clock or now_ms
        if dump_store is None and self.settings.persist_dir:
            dump_store = DumpStore(self.settings.persist_dir)
        self.dump_store = dump_store

        self.events = EventBus()
        self.cache = Cache(self.events, clock=self.clock)
        self.abort_registry = AbortRegistry()
        self.fetch_queue = FetchQueue(self, store=dump_store)
        self.submit_queue = SubmitQueue(self, store=dump_store)

        self._adapter = adapter
        self._owns_adapter = False

    @property
    def adapter(self) -> Executor:
        if self._adapter is None:
            self._adapter = HttpxAdapter(timeout_s=self.settings.http_timeout_s)
            self._owns_adapter = True
        return self._adapter

    def set_adapter(self, adapter: Executor) -> Client:
        self._adapter = adapter
        self._owns_adapter = False
        return self

    def create_request(self, endpoint: str, **policy: Any) -> Command:
        """Build a command with settings defaults; ``policy`` wins."""
        values = {**self.settings.command_defaults(), **policy}
        return Command.create(self, endpoint, **values)

    def queue_for(self, command: Command, queue_type: str = "auto") -> Dispatcher:
        if queue_type == FETCH:
            return self.fetch_queue
        if queue_type == SUBMIT:
            return self.submit_queue
        if queue_type != "auto":
            raise ValueError(f"unknown queue type: {queue_type}")
        if command.method.upper() in FETCH_METHODS:
            return self.fetch_queue
        return self.submit_queue

    def restore_pending(self) -> list[str]:
        """Re-admit commands persisted by a previous client; needs a running loop."""
        if self.dump_store is None:
            return []
        request_ids: list[str] = []
        for stored_id, queue, dump in self.dump_store.load():
            self.dump_store.delete(stored_id)
            command = Command.from_dump(self, dump)
            dispatcher = self.submit_queue if queue == SUBMIT else self.fetch_queue
            request_ids.append(dispatcher.add(command))
        if request_ids:
            logger.info("restored %d queued request(s)", len(request_ids))
        return request_ids

    async def close(self) -> None:
        """Abort in-flight work and release the executor.

        Persisted queue entries stay on disk for ``restore_pending``.
        """
        for queue in (self.fetch_queue, self.submit_queue):
            queue.store = None
        self.abort_registry.abort_all()
        for queue in (self.fetch_queue, self.submit_queue):
            queue.clear()
        for queue in (self.fetch_queue, self.submit_queue):
            await queue.join()
        if self._owns_adapter and isinstance(self._adapter, HttpxAdapter):
            await self._adapter.aclose()

    async def __aenter__(self) -> Client:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
