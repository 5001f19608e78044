from dataclasses import dataclass

from hyperfetch.adapter import Response
from hyperfetch.cache import Cache
from hyperfetch.errors import AdapterError
from hyperfetch.events import EventBus


@dataclass(frozen=True)
class _Source:
    cache_key: str = "GET_/users_"
    cache: bool = True
    cache_time: float = 1000
    deep_equal: bool = True


class _Clock:
    def __init__(self, now: float = 10_000) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _cache(clock: _Clock) -> tuple[Cache, dict[str, list[object]]]:
    cache = Cache(EventBus(), clock=clock)
    seen: dict[str, list[object]] = {"get": [], "equal": [], "response": [], "revalidate": []}
    key = _Source().cache_key
    cache.events.on_get(key, seen["get"].append)
    cache.events.on_get_equal_data(key, seen["equal"].append)
    cache.events.on_response(key, seen["response"].append)
    cache.events.on_revalidate(key, seen["revalidate"].append)
    return cache, seen


def test_set_stores_entry_and_emits_get_and_response() -> None:
    clock = _Clock()
    cache, seen = _cache(clock)

    entry = cache.set(_Source(), Response(data=[1], status=200), retries=1, request_id="r1")

    assert cache.get("GET_/users_") == entry
    assert entry.data == [1]
    assert entry.retries == 1
    assert entry.is_refreshed is False
    assert len(seen["get"]) == 1
    assert seen["equal"] == []
    assert seen["response"][0].request_id == "r1"


def test_timestamps_never_decrease() -> None:
    clock = _Clock(10_000)
    cache, _ = _cache(clock)

    first = cache.set(_Source(), Response(data=1, status=200))
    clock.now = 5_000
    second = cache.set(_Source(), Response(data=2, status=200))

    assert second.timestamp >= first.timestamp


def test_equal_data_updates_bookkeeping_only() -> None:
    clock = _Clock(10_000)
    cache, seen = _cache(clock)
    cache.set(_Source(), Response(data={"a": 1}, status=200))

    clock.now = 10_500
    entry = cache.set(_Source(), Response(data={"a": 1}, status=200), retries=2)

    assert len(seen["get"]) == 1
    assert len(seen["equal"]) == 1
    assert len(seen["response"]) == 2
    assert entry.retries == 2
    assert entry.timestamp == 10_500
    assert entry.is_refreshed is True


def test_deep_equal_disabled_always_emits_get() -> None:
    cache, seen = _cache(_Clock())
    source = _Source(deep_equal=False)

    cache.set(source, Response(data=1, status=200))
    cache.set(source, Response(data=1, status=200))

    assert len(seen["get"]) == 2
    assert seen["equal"] == []


def test_errors_compare_structurally() -> None:
    cache, seen = _cache(_Clock())

    cache.set(_Source(), Response(error=AdapterError("boom", status=500, body="x"), status=500))
    cache.set(_Source(), Response(error=AdapterError("boom", status=500, body="x"), status=500))
    cache.set(_Source(), Response(error=AdapterError("boom", status=502, body="x"), status=502))

    assert len(seen["equal"]) == 1
    assert len(seen["get"]) == 2


def test_failure_overwrites_previous_data() -> None:
    cache, _ = _cache(_Clock())
    cache.set(_Source(), Response(data=[1, 2], status=200))

    entry = cache.set(_Source(), Response(error=AdapterError("down", status=503), status=503))

    assert entry.data is None
    assert isinstance(entry.error, AdapterError)
    assert entry.is_refreshed is False


def test_cache_disabled_stores_nothing_but_emits() -> None:
    cache, seen = _cache(_Clock())

    cache.set(_Source(cache=False), Response(data=1, status=200))

    assert cache.get("GET_/users_") is None
    assert len(seen["get"]) == 1
    assert len(seen["response"]) == 1


def test_revalidate_marks_matches_and_emits_once_per_key() -> None:
    cache, seen = _cache(_Clock())
    cache.set(_Source(), Response(data=1, status=200))
    cache.set(_Source(cache_key="GET_/users/2_"), Response(data=2, status=200))
    cache.set(_Source(cache_key="GET_/posts_"), Response(data=3, status=200))

    keys = cache.revalidate("/users/", "GET_/users_")

    assert keys == ["GET_/users_", "GET_/users/2_"]
    assert seen["revalidate"] == ["GET_/users_"]
    assert cache.get("GET_/users_").invalidated is True
    assert cache.get("GET_/posts_").invalidated is False
    assert cache.is_stale("GET_/users_") is True
    assert cache.is_stale("GET_/posts_") is False


def test_set_after_revalidate_clears_invalidated_flag() -> None:
    cache, _ = _cache(_Clock())
    cache.set(_Source(), Response(data=1, status=200))
    cache.revalidate("GET_/users_")

    entry = cache.set(_Source(), Response(data=1, status=200))

    assert entry.invalidated is False


def test_staleness_and_eviction_follow_cache_time() -> None:
    clock = _Clock(10_000)
    cache, _ = _cache(clock)
    cache.set(_Source(), Response(data=1, status=200))
    cache.set(_Source(cache_key="long", cache_time=60_000), Response(data=2, status=200))

    assert cache.is_stale("missing") is True
    clock.now = 11_500

    assert cache.is_stale("GET_/users_") is True
    assert cache.is_stale("GET_/users_", cache_time=5_000) is False
    assert cache.evict_stale() == ["GET_/users_"]
    assert cache.keys() == ["long"]
