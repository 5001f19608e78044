"""In-process realtime database: tree store, realtime source and executor."""

from __future__ import annotations

import copy
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from hyperfetch.adapter import Response, failure
from hyperfetch.errors import AdapterError
from hyperfetch.keys import join_url
from hyperfetch.realtime import (
    ListenerOptions,
    RealtimeCallback,
    RealtimeEvent,
    RealtimeExtra,
    Unsubscribe,
    status_for,
)

if TYPE_CHECKING:
    from hyperfetch.command import Command

logger = logging.getLogger(__name__)

FILTERS = ("limit_to_first", "limit_to_last", "start_at", "end_at", "equal_to")


def split_path(path: str) -> list[str]:
    return [part for part in path.split("/") if part]


def normalize_path(path: str) -> str:
    return "/".join(split_path(path))


def _related(watched: str, changed: str) -> bool:
    """True when ``changed`` is ``watched`` or one of its ancestors or descendants."""
    if not watched or not changed or watched == changed:
        return True
    return changed.startswith(f"{watched}/") or watched.startswith(f"{changed}/")


def _rank(value: Any) -> tuple[int, Any]:
    if value is None:
        return (0, 0)
    if isinstance(value, bool):
        return (1, value)
    if isinstance(value, (int, float)):
        return (2, value)
    if isinstance(value, str):
        return (3, value)
    return (4, "")


def _order_value(order_by: str | None, key: str, value: Any) -> Any:
    if order_by in (None, "key"):
        return key
    if order_by == "value":
        return value
    if order_by.startswith("child:"):
        child = order_by.removeprefix("child:")
        return value.get(child) if isinstance(value, Mapping) else None
    raise AdapterError(f"unsupported order_by: {order_by}", status="error")


def apply_query(
    value: Any,
    *,
    order_by: str | None = None,
    filter_by: Mapping[str, Any] | None = None,
) -> Any:
    """Order and filter the children of ``value``; returns their values as a list.

    Without ``order_by`` or ``filter_by`` the node is returned unchanged.
    """
    if order_by is None and not filter_by:
        return value
    if not isinstance(value, Mapping):
        return value
    filters = dict(filter_by or {})
    unknown = sorted(set(filters) - set(FILTERS))
    if unknown:
        raise AdapterError(f"unsupported filter_by: {', '.join(unknown)}", status="error")

    rows = [(_order_value(order_by, key, child), key, child) for key, child in value.items()]
    rows.sort(key=lambda row: (_rank(row[0]), row[1]))
    if "start_at" in filters:
        rows = [row for row in rows if _rank(row[0]) >= _rank(filters["start_at"])]
    if "end_at" in filters:
        rows = [row for row in rows if _rank(row[0]) <= _rank(filters["end_at"])]
    if "equal_to" in filters:
        rows = [row for row in rows if row[0] == filters["equal_to"]]
    if filters.get("limit_to_first") is not None:
        rows = rows[: int(filters["limit_to_first"])]
    if filters.get("limit_to_last") is not None:
        count = int(filters["limit_to_last"])
        rows = rows[-count:] if count > 0 else []
    return [child for _, _, child in rows]


@dataclass(frozen=True)
class MemorySnapshot:
    ref: str
    value: Any

    @property
    def key(self) -> str | None:
        parts = split_path(self.ref)
        return parts[-1] if parts else None

    def exists(self) -> bool:
        return self.value is not None

    def val(self) -> Any:
        return copy.deepcopy(self.value)


class MemoryDatabase:
    """Nested-dict tree addressed by slash paths. Writing ``None`` removes a node."""

    def __init__(self, data: Mapping[str, Any] | None = None) -> None:
        self._root: dict[str, Any] = copy.deepcopy(dict(data or {}))
        self._push_counter = 0
        self._watchers: list[Callable[[str], None]] = []

    def get(self, path: str) -> Any:
        node: Any = self._root
        for part in split_path(path):
            if not isinstance(node, dict) or part not in node:
                return None
            node = node[part]
        if node == {}:
            return None
        return copy.deepcopy(node)

    def set(self, path: str, value: Any) -> None:
        self._write(path, value)
        self._notify(path)

    def push(self, path: str, value: Any) -> str:
        base = normalize_path(path)
        key = self.next_key()
        while self.get(f"{base}/{key}") is not None:
            key = self.next_key()
        self.set(f"{base}/{key}", value)
        return key

    def update(self, path: str, values: Mapping[str, Any]) -> None:
        base = normalize_path(path)
        for key, value in values.items():
            self._write(f"{base}/{key}", value)
        self._notify(base)

    def remove(self, path: str) -> None:
        self.set(path, None)

    def next_key(self) -> str:
        self._push_counter += 1
        return f"-{self._push_counter:012d}"

    def watch(self, callback: Callable[[str], None]) -> Unsubscribe:
        self._watchers.append(callback)

        def _unwatch() -> None:
            if callback in self._watchers:
                self._watchers.remove(callback)

        return _unwatch

    def _write(self, path: str, value: Any) -> None:
        parts = split_path(path)
        if not parts:
            self._root = {} if value is None else copy.deepcopy(dict(value))
            return
        parents: list[tuple[dict[str, Any], str]] = []
        node = self._root
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                if value is None:
                    return
                child = {}
                node[part] = child
            parents.append((node, part))
            node = child
        if value is None:
            node.pop(parts[-1], None)
            for parent, part in reversed(parents):
                if parent[part]:
                    break
                del parent[part]
        else:
            node[parts[-1]] = copy.deepcopy(value)

    def _notify(self, path: str) -> None:
        changed = normalize_path(path)
        for callback in list(self._watchers):
            callback(changed)


@dataclass
class _Watch:
    path: str
    options: ListenerOptions
    callback: RealtimeCallback


class MemoryRealtimeSource:
    """``onValue`` source: emits on subscribe and after every related change."""

    def __init__(self, db: MemoryDatabase) -> None:
        self.db = db
        self._watches: list[_Watch] = []
        self._unwatch = db.watch(self._on_change)

    def subscribe(
        self,
        name: str,
        options: ListenerOptions,
        callback: RealtimeCallback,
    ) -> Unsubscribe:
        watch = _Watch(path=normalize_path(name), options=options, callback=callback)
        self._watches.append(watch)

        def _unsubscribe() -> None:
            if watch in self._watches:
                self._watches.remove(watch)

        self._emit(watch)
        return _unsubscribe

    def listener_count(self, name: str) -> int:
        path = normalize_path(name)
        return sum(1 for watch in self._watches if watch.path == path)

    def close(self) -> None:
        self._watches.clear()
        self._unwatch()

    def _on_change(self, changed: str) -> None:
        for watch in list(self._watches):
            if watch in self._watches and _related(watch.path, changed):
                self._emit(watch)

    def _emit(self, watch: _Watch) -> None:
        snapshot = MemorySnapshot(ref=watch.path, value=self.db.get(watch.path))
        data = apply_query(
            snapshot.val(),
            order_by=watch.options.order_by,
            filter_by=watch.options.filter_by,
        )
        extra = RealtimeExtra(status=status_for(data), snapshot=snapshot, ref=watch.path)
        watch.callback(RealtimeEvent(data=data, extra=extra))


class MemoryDatabaseAdapter:
    """Executor running ``get``/``set``/``push``/``update``/``remove``/``onValue``."""

    def __init__(self, db: MemoryDatabase, *, source: MemoryRealtimeSource | None = None) -> None:
        self.db = db
        self.source = source or MemoryRealtimeSource(db)

    async def __call__(self, command: Command, request_id: str) -> Response:
        method = command.method.lower()
        path = normalize_path(join_url(command.client.url, command.endpoint))
        options = command.options or {}
        if method == "get":
            data = apply_query(
                self.db.get(path),
                order_by=options.get("order_by"),
                filter_by=options.get("filter_by"),
            )
            snapshot = MemorySnapshot(ref=path, value=self.db.get(path))
            return Response(
                data=data,
                status=status_for(data),
                additional_data={"snapshot": snapshot, "ref": path},
            )
        if method == "set":
            self.db.set(path, command.data)
            return Response(data=command.data, status="success", additional_data={"ref": path})
        if method == "push":
            key = self.db.push(path, command.data)
            return Response(
                data=command.data,
                status="success",
                additional_data={"key": key, "ref": f"{path}/{key}"},
            )
        if method == "update":
            if not isinstance(command.data, Mapping):
                return failure(AdapterError("update requires mapping data", status="error"))
            self.db.update(path, command.data)
            return Response(data=command.data, status="success", additional_data={"ref": path})
        if method == "remove":
            self.db.remove(path)
            return Response(data=None, status="success", additional_data={"ref": path})
        if method == "onvalue":
            return self._on_value(command, path, options)
        return failure(AdapterError(f"unsupported method: {command.method}", status="error"))

    def _on_value(self, command: Command, path: str, options: Mapping[str, Any]) -> Response:
        """Return the current value and keep the command's cache entry live."""
        first: list[RealtimeEvent] = []

        def _callback(event: RealtimeEvent) -> None:
            if not first:
                first.append(event)
                return
            response = Response(
                data=event.data,
                status=event.extra.status,
                additional_data={"snapshot": event.extra.snapshot, "ref": event.extra.ref},
            )
            command.client.cache.set(command, response)

        listener_options = ListenerOptions(
            order_by=options.get("order_by"),
            filter_by=options.get("filter_by"),
        )
        unsubscribe = self.source.subscribe(path, listener_options, _callback)
        event = first[0]
        logger.debug("onValue subscribed path=%s", path)
        return Response(
            data=event.data,
            status=event.extra.status,
            additional_data={
                "snapshot": event.extra.snapshot,
                "ref": event.extra.ref,
                "unsubscribe": unsubscribe,
            },
        )
