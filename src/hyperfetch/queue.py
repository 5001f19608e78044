"""Fetch and submit dispatchers: per-key FIFO admission, concurrency and retry."""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from hyperfetch.abort import AbortHandle
from hyperfetch.adapter import Response, failure
from hyperfetch.errors import (
    AbortError,
    AdapterError,
    HyperFetchError,
    RequestTimeoutError,
    RetryExhaustedError,
)
from hyperfetch.events import QueueEvents, QueueLoadingEvent, ResponseDetails
from hyperfetch.time_utils import ms_to_seconds

if TYPE_CHECKING:
    from hyperfetch.client import Client
    from hyperfetch.command import Command
    from hyperfetch.storage import DumpStore

logger = logging.getLogger(__name__)

FETCH = "fetch"
SUBMIT = "submit"


class RetryableFailure(Exception):
    """Raised inside a retry attempt to hand a failed response to tenacity."""

    def __init__(self, response: Response) -> None:
        super().__init__(str(response.error))
        self.response = response


async def _call_adapter(client: Client, command: Command, request_id: str) -> Response:
    try:
        return await client.adapter(command, request_id)
    except HyperFetchError as exc:
        return failure(exc)
    except Exception as exc:
        logger.exception("executor failed request_id=%s url=%s", request_id, command.url)
        return failure(AdapterError(f"executor failed: {exc}"))


async def run_adapter(
    client: Client,
    command: Command,
    request_id: str,
    handle: AbortHandle,
) -> Response:
    """Run one attempt, racing the executor against abort and timeout."""
    if handle.aborted:
        return failure(AbortError())
    executor = asyncio.ensure_future(_call_adapter(client, command, request_id))
    signal = asyncio.ensure_future(handle.wait())
    try:
        done, _ = await asyncio.wait(
            {executor, signal},
            timeout=ms_to_seconds(command.timeout),
            return_when=asyncio.FIRST_COMPLETED,
        )
        if handle.aborted:
            return failure(AbortError())
        if executor in done:
            return executor.result()
        return failure(RequestTimeoutError(f"request exceeded {command.timeout} ms"))
    finally:
        for task in (executor, signal):
            if not task.done():
                task.cancel()


def _should_retry(response: Response, handle: AbortHandle) -> bool:
    if response.is_success or handle.aborted:
        return False
    return not isinstance(response.error, AbortError)


@dataclass
class QueueEntry:
    """One admitted command; mutable only by its dispatcher."""

    command: Command
    request_id: str
    timestamp: float
    running: bool = False
    retries: int = 0
    handle: AbortHandle | None = field(default=None, repr=False, compare=False)


@dataclass(frozen=True)
class QueueState:
    queue_key: str
    requests: tuple[QueueEntry, ...] = ()

    @property
    def running(self) -> tuple[QueueEntry, ...]:
        return tuple(entry for entry in self.requests if entry.running)

    @property
    def pending(self) -> tuple[QueueEntry, ...]:
        return tuple(entry for entry in self.requests if not entry.running)


class Dispatcher:
    """Queue of commands grouped by ``queue_key``.

    Entries start in admission order. Concurrent entries start as soon as
    they reach the head of the line; a non-concurrent entry waits until
    nothing runs for its key and blocks everything behind it while it runs.
    """

    kind = ""
    deduplicate = False

    def __init__(self, client: Client, *, store: DumpStore | None = None) -> None:
        self.client = client
        self.store = store
        self.events = QueueEvents(client.events, self.kind)
        self._queues: dict[str, list[QueueEntry]] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}

    def add(self, command: Command) -> str:
        """Admit ``command`` and return the request id that will settle it."""
        queue_key = command.queue_key
        entries = self._queues.setdefault(queue_key, [])
        if self.deduplicate:
            for existing in entries:
                if existing.command.cache_key == command.cache_key:
                    logger.debug(
                        "%s queue reused request_id=%s cache_key=%s",
                        self.kind,
                        existing.request_id,
                        command.cache_key,
                    )
                    return existing.request_id

        entry = QueueEntry(
            command=command,
            request_id=uuid.uuid4().hex,
            timestamp=self.client.clock(),
        )
        if self.store is not None:
            try:
                self.store.save(entry.request_id, self.kind, command)
            except (OSError, TypeError, ValueError) as exc:
                logger.warning(
                    "%s queue could not persist request_id=%s: %s",
                    self.kind,
                    entry.request_id,
                    exc,
                )
        entries.append(entry)
        logger.debug(
            "%s queue admitted request_id=%s queue_key=%s",
            self.kind,
            entry.request_id,
            queue_key,
        )
        self.events.emit_queue_change(queue_key, self.get(queue_key))
        self._flush(queue_key)
        return entry.request_id

    def get(self, queue_key: str) -> QueueState:
        entries = self._queues.get(queue_key, [])
        return QueueState(queue_key=queue_key, requests=tuple(replace(e) for e in entries))

    def get_request_count(self, queue_key: str) -> int:
        return len(self._queues.get(queue_key, ()))

    def queue_keys(self) -> list[str]:
        return list(self._queues)

    def delete(self, queue_key: str, request_id: str) -> bool:
        """Drop a pending entry or abort a running one."""
        for entry in self._queues.get(queue_key, ()):
            if entry.request_id != request_id:
                continue
            if entry.running:
                return self.client.abort_registry.abort_request(
                    entry.command.abort_key, request_id
                )
            self._remove(entry)
            self._publish_abort(entry, failure(AbortError("request removed from queue")))
            self._flush(queue_key)
            return True
        return False

    def clear(self) -> None:
        """Drop every pending entry, then abort the running ones."""
        entries = [entry for queued in self._queues.values() for entry in queued]
        for entry in entries:
            if not entry.running:
                self._remove(entry)
                self._publish_abort(entry, failure(AbortError("request removed from queue")))
        for entry in entries:
            if entry.running:
                self.client.abort_registry.abort_request(
                    entry.command.abort_key, entry.request_id
                )

    async def join(self) -> None:
        """Wait until every started entry, including ones started meanwhile, settles."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    # Dispatch

    def _flush(self, queue_key: str) -> None:
        entries = self._queues.get(queue_key)
        if not entries:
            self._queues.pop(queue_key, None)
            return
        for entry in list(entries):
            if entry.running:
                if not entry.command.concurrent:
                    return
                continue
            if not entry.command.concurrent:
                if not any(other.running for other in entries):
                    self._start(entry)
                return
            self._start(entry)

    def _start(self, entry: QueueEntry) -> None:
        command = entry.command
        entry.running = True
        handle = self.client.abort_registry.register(command.abort_key, entry.request_id)
        entry.handle = handle
        logger.debug(
            "%s queue dispatch request_id=%s method=%s url=%s",
            self.kind,
            entry.request_id,
            command.method,
            command.url,
        )
        self.events.emit_request_start(command.queue_key, entry.request_id)
        self.events.emit_queue_change(command.queue_key, self.get(command.queue_key))
        task = asyncio.get_running_loop().create_task(self._perform(entry, handle))
        self._tasks[entry.request_id] = task

    async def _perform(self, entry: QueueEntry, handle: AbortHandle) -> None:
        command = entry.command
        try:
            response = await self._execute(entry, handle)
        except Exception as exc:
            logger.exception("%s queue failed request_id=%s", self.kind, entry.request_id)
            response = failure(AdapterError(f"dispatch failed: {exc}"))
        finally:
            self.client.abort_registry.release(command.abort_key, entry.request_id)
            self._tasks.pop(entry.request_id, None)
        self._settle(entry, response)

    async def _execute(self, entry: QueueEntry, handle: AbortHandle) -> Response:
        command = entry.command
        response = failure(AbortError())
        retrying = AsyncRetrying(
            stop=stop_after_attempt(command.max_retries + 1),
            wait=wait_fixed(ms_to_seconds(command.retry_time) or 0),
            retry=retry_if_exception_type(RetryableFailure),
            sleep=handle.sleep,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                if handle.aborted:
                    # Aborted during the back-off; no further attempt starts.
                    response = failure(AbortError())
                    break
                with attempt:
                    entry.retries = attempt.retry_state.attempt_number - 1
                    self._emit_loading(entry, is_loading=True)
                    response = await run_adapter(self.client, command, entry.request_id, handle)
                    if _should_retry(response, handle):
                        logger.debug(
                            "%s queue attempt %d failed request_id=%s error=%s",
                            self.kind,
                            entry.retries + 1,
                            entry.request_id,
                            response.error,
                        )
                        raise RetryableFailure(response)
        except RetryableFailure as exc:
            response = exc.response
            if command.max_retries > 0:
                response = replace(
                    response,
                    error=RetryExhaustedError(entry.retries + 1, response.error),
                )
        return response

    # Settlement

    def _settle(self, entry: QueueEntry, response: Response) -> None:
        command = entry.command
        self._remove(entry)
        if isinstance(response.error, AbortError):
            self._publish_abort(entry, response)
        else:
            self.client.cache.set(
                command,
                response,
                retries=entry.retries,
                request_id=entry.request_id,
            )
            self._on_settled(command, response)
        logger.debug(
            "%s queue settled request_id=%s success=%s retries=%d",
            self.kind,
            entry.request_id,
            response.is_success,
            entry.retries,
        )
        self._emit_loading(entry, is_loading=False)
        self._flush(command.queue_key)

    def _on_settled(self, command: Command, response: Response) -> None:
        """Hook for queue-specific follow-up after a cache settlement."""

    def _publish_abort(self, entry: QueueEntry, response: Response) -> None:
        details = ResponseDetails(
            response=response,
            request_id=entry.request_id,
            retries=entry.retries,
            timestamp=self.client.clock(),
            is_refreshed=False,
        )
        self.client.cache.events.emit_response(entry.command.cache_key, details)

    def _remove(self, entry: QueueEntry) -> None:
        queue_key = entry.command.queue_key
        entries = self._queues.get(queue_key)
        if entries is None or entry not in entries:
            return
        entries.remove(entry)
        if not entries:
            del self._queues[queue_key]
        if self.store is not None:
            self.store.delete(entry.request_id)
        self.events.emit_queue_change(queue_key, self.get(queue_key))

    def _emit_loading(self, entry: QueueEntry, *, is_loading: bool) -> None:
        event = QueueLoadingEvent(
            queue_key=entry.command.queue_key,
            request_id=entry.request_id,
            is_loading=is_loading,
            is_retry=entry.retries > 0,
        )
        self.events.emit_loading(entry.command.queue_key, event)


class FetchQueue(Dispatcher):
    """Read queue; an identical request already queued is shared, not repeated."""

    kind = FETCH
    deduplicate = True


class SubmitQueue(Dispatcher):
    """Write queue; successful settlements revalidate the command's patterns."""

    kind = SUBMIT

    def _on_settled(self, command: Command, response: Response) -> None:
        if response.is_success and command.invalidate:
            self.client.cache.revalidate(*command.invalidate)
