"""Request descriptor: an immutable, dumpable description of one logical request.

Commands never call back into the cache or queues. ``send`` hands the
command to a queue and waits for the cache to publish a settlement for
the command's cache key, so many waiters can share one execution.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import re
import uuid
from collections.abc import Iterable, Mapping
from dataclasses import asdict, dataclass, field, replace
from typing import TYPE_CHECKING, Any

from hyperfetch.adapter import Response
from hyperfetch.errors import ValidationError
from hyperfetch.events import ResponseDetails
from hyperfetch.keys import (
    InvalidatePattern,
    encode_query,
    fill_params,
    get_abort_key,
    get_request_key,
    join_url,
    missing_params,
    pattern_to_str,
)
from hyperfetch.queue import run_adapter
from hyperfetch.time_utils import MINUTE_MS

if TYPE_CHECKING:
    from hyperfetch.client import Client

logger = logging.getLogger(__name__)

_VALUE_FIELDS: tuple[str, ...] = (
    "endpoint_template",
    "method",
    "headers",
    "auth",
    "params",
    "data",
    "query_params",
    "options",
    "cancelable",
    "retry",
    "retry_time",
    "cache",
    "cache_time",
    "concurrent",
    "deep_equal",
    "timeout",
    "invalidate",
    "disabled",
    "used",
    "actions",
)


@dataclass(frozen=True)
class KeyOverrides:
    """Keys pinned by an explicit setter; they survive every later clone."""

    abort_key: str | None = None
    cache_key: str | None = None
    queue_key: str | None = None


def _action_name(action: Any) -> str:
    if isinstance(action, str):
        return action
    return str(action.name)


def _as_patterns(values: Iterable[InvalidatePattern] | InvalidatePattern | None) -> tuple:
    if values is None:
        return ()
    if isinstance(values, (str, re.Pattern)):
        return (values,)
    return tuple(values)


@dataclass(frozen=True)
class Command:
    """Describes one logical request and its cache/queue/retry policy."""

    client: Client = field(repr=False, compare=False)
    endpoint_template: str
    method: str = "GET"
    headers: dict[str, str] | None = None
    auth: bool = True
    params: dict[str, Any] | None = None
    data: Any = None
    query_params: dict[str, Any] | str | None = None
    options: dict[str, Any] | None = None
    cancelable: bool = False
    retry: bool | int = False
    retry_time: int = 500
    cache: bool = True
    cache_time: int = 5 * MINUTE_MS
    concurrent: bool = True
    deep_equal: bool = True
    timeout: int | None = None
    invalidate: tuple[InvalidatePattern, ...] = ()
    disabled: bool = False
    used: bool = False
    actions: tuple[str, ...] = ()
    overrides: KeyOverrides = field(default_factory=KeyOverrides)

    @classmethod
    def create(
        cls,
        client: Client,
        endpoint: str,
        *,
        abort_key: str | None = None,
        cache_key: str | None = None,
        queue_key: str | None = None,
        **values: Any,
    ) -> Command:
        values["invalidate"] = _as_patterns(values.get("invalidate"))
        values["actions"] = tuple(dict.fromkeys(values.get("actions") or ()))
        overrides = KeyOverrides(abort_key=abort_key, cache_key=cache_key, queue_key=queue_key)
        return cls(client=client, endpoint_template=endpoint, overrides=overrides, **values)

    @classmethod
    def from_dump(cls, client: Client, dump: Mapping[str, Any]) -> Command:
        """Rebuild a command from :meth:`dump` output."""
        values = {name: copy.deepcopy(dump[name]) for name in _VALUE_FIELDS if name in dump}
        values["invalidate"] = _as_patterns(values.get("invalidate"))
        values["actions"] = tuple(values.get("actions") or ())
        overrides = KeyOverrides(**dict(dump.get("overrides") or {}))
        return cls(client=client, overrides=overrides, **values)

    # Derived values

    @property
    def endpoint(self) -> str:
        return fill_params(self.endpoint_template, self.params)

    @property
    def url(self) -> str:
        return join_url(self.client.url, self.endpoint, encode_query(self.query_params))

    @property
    def abort_key(self) -> str:
        if self.overrides.abort_key is not None:
            return self.overrides.abort_key
        return get_abort_key(self.method.upper(), self.client.url, self.endpoint, self.cancelable)

    @property
    def cache_key(self) -> str:
        if self.overrides.cache_key is not None:
            return self.overrides.cache_key
        return self._request_key()

    @property
    def queue_key(self) -> str:
        if self.overrides.queue_key is not None:
            return self.overrides.queue_key
        return self._request_key()

    @property
    def max_retries(self) -> int:
        """Number of retries after the first attempt; ``True`` means one."""
        if isinstance(self.retry, bool):
            return 1 if self.retry else 0
        return max(0, int(self.retry))

    def _request_key(self) -> str:
        return get_request_key(
            self.method.upper(),
            self.client.url,
            self.endpoint,
            encode_query(self.query_params),
        )

    def missing_params(self) -> list[str]:
        return missing_params(self.endpoint)

    def validate_params(self) -> Command:
        missing = self.missing_params()
        if missing:
            raise ValidationError(self.endpoint_template, missing)
        return self

    # Copy-on-write setters

    def clone(self, **changes: Any) -> Command:
        if "invalidate" in changes:
            changes["invalidate"] = _as_patterns(changes["invalidate"])
        if "actions" in changes:
            changes["actions"] = tuple(dict.fromkeys(changes["actions"]))
        return replace(self, **changes)

    def set_headers(self, headers: dict[str, str]) -> Command:
        return self.clone(headers=headers)

    def set_auth(self, auth: bool) -> Command:
        return self.clone(auth=auth)

    def set_params(self, params: dict[str, Any]) -> Command:
        return self.clone(params=params)

    def set_data(self, data: Any) -> Command:
        return self.clone(data=data)

    def set_query_params(self, query_params: dict[str, Any] | str) -> Command:
        return self.clone(query_params=query_params)

    def set_options(self, options: dict[str, Any]) -> Command:
        return self.clone(options=options)

    def set_cancelable(self, cancelable: bool) -> Command:
        return self.clone(cancelable=cancelable)

    def set_retry(self, retry: bool | int) -> Command:
        return self.clone(retry=retry)

    def set_retry_time(self, retry_time: int) -> Command:
        return self.clone(retry_time=retry_time)

    def set_cache(self, cache: bool) -> Command:
        return self.clone(cache=cache)

    def set_cache_time(self, cache_time: int) -> Command:
        return self.clone(cache_time=cache_time)

    def set_concurrent(self, concurrent: bool) -> Command:
        return self.clone(concurrent=concurrent)

    def set_deep_equal(self, deep_equal: bool) -> Command:
        return self.clone(deep_equal=deep_equal)

    def set_timeout(self, timeout: int | None) -> Command:
        return self.clone(timeout=timeout)

    def set_invalidate(self, invalidate: Iterable[InvalidatePattern] | InvalidatePattern) -> Command:
        return self.clone(invalidate=invalidate)

    def set_abort_key(self, abort_key: str) -> Command:
        return self.clone(overrides=replace(self.overrides, abort_key=abort_key))

    def set_cache_key(self, cache_key: str) -> Command:
        return self.clone(overrides=replace(self.overrides, cache_key=cache_key))

    def set_queue_key(self, queue_key: str) -> Command:
        return self.clone(overrides=replace(self.overrides, queue_key=queue_key))

    def set_disabled(self, disabled: bool) -> Command:
        return self.clone(disabled=disabled)

    def set_used(self, used: bool) -> Command:
        return self.clone(used=used)

    def add_action(self, action: Any) -> Command:
        return self.clone(actions=(*self.actions, _action_name(action)))

    def remove_action(self, action: Any) -> Command:
        name = _action_name(action)
        return self.clone(actions=tuple(item for item in self.actions if item != name))

    def dump(self) -> dict[str, Any]:
        """Serializable record of every value and policy field."""
        return {
            "endpoint_template": self.endpoint_template,
            "endpoint": self.endpoint,
            "method": self.method,
            "headers": copy.deepcopy(self.headers),
            "auth": self.auth,
            "params": copy.deepcopy(self.params),
            "data": copy.deepcopy(self.data),
            "query_params": copy.deepcopy(self.query_params),
            "options": copy.deepcopy(self.options),
            "cancelable": self.cancelable,
            "retry": self.retry,
            "retry_time": self.retry_time,
            "cache": self.cache,
            "cache_time": self.cache_time,
            "concurrent": self.concurrent,
            "deep_equal": self.deep_equal,
            "timeout": self.timeout,
            "invalidate": [pattern_to_str(pattern) for pattern in self.invalidate],
            "disabled": self.disabled,
            "used": self.used,
            "actions": list(self.actions),
            "abort_key": self.abort_key,
            "cache_key": self.cache_key,
            "queue_key": self.queue_key,
            "overrides": asdict(self.overrides),
        }

    # Execution

    def _with_request_options(self, options: Mapping[str, Any]) -> Command:
        changes = {name: value for name, value in options.items() if value is not None}
        return self.clone(**changes) if changes else self

    async def exec(self, **options: Any) -> Response:
        """Run once against the executor, bypassing queues and cache."""
        command = self._with_request_options(options)
        registry = command.client.abort_registry
        request_id = uuid.uuid4().hex
        handle = registry.register(command.abort_key, request_id)
        try:
            return await run_adapter(command.client, command, request_id, handle)
        finally:
            registry.release(command.abort_key, request_id)

    async def send(
        self,
        *,
        queue_type: str = "auto",
        raise_on_error: bool = False,
        **options: Any,
    ) -> Response:
        """Queue the command and wait for the settlement of its cache key."""
        command = self._with_request_options(options)
        queue = command.client.queue_for(command, queue_type)
        settled: asyncio.Future[Response] = asyncio.get_running_loop().create_future()

        def _on_response(details: ResponseDetails) -> None:
            if not settled.done():
                settled.set_result(details.response)

        with command.client.cache.events.on_response(command.cache_key, _on_response):
            request_id = queue.add(command)
            logger.debug(
                "send queued request_id=%s queue=%s cache_key=%s",
                request_id,
                queue.kind,
                command.cache_key,
            )
            response = await settled

        if raise_on_error:
            response.raise_for_error()
        return response

    def abort(self) -> Command:
        """Abort every in-flight operation sharing this command's abort key."""
        self.client.abort_registry.abort(self.abort_key)
        return self
