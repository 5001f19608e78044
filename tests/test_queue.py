import asyncio
import logging
from collections.abc import Callable

import pytest

from hyperfetch.adapter import Response
from hyperfetch.client import Client
from hyperfetch.command import Command
from hyperfetch.errors import AbortError, AdapterError, RequestTimeoutError, RetryExhaustedError
from hyperfetch.events import QueueLoadingEvent
from hyperfetch.settings import Settings

BASE_URL = "http://api.test"


class _Executor:
    """Records calls and overlap; replays queued responses, then succeeds."""

    def __init__(self, responses: list[Response] | None = None, *, delay: float = 0.0) -> None:
        self.responses = list(responses or [])
        self.delay = delay
        self.calls: list[Command] = []
        self.active = 0
        self.max_active = 0

    async def __call__(self, command: Command, request_id: str) -> Response:
        self.calls.append(command)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.active -= 1
        if self.responses:
            return self.responses.pop(0)
        return Response(data={"call": len(self.calls)}, status=200)


def _failure(status: int = 500) -> Response:
    return Response(error=AdapterError("server error", status=status), status=status)


def _client(executor: object) -> Client:
    return Client(BASE_URL, adapter=executor, settings=Settings(_env_file=None))


async def _until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.001)

    await asyncio.wait_for(_poll(), timeout)


@pytest.mark.asyncio
async def test_send_settles_into_cache() -> None:
    executor = _Executor()
    client = _client(executor)
    command = client.create_request("/users")

    response = await command.send()

    assert response.data == {"call": 1}
    assert response.status == 200
    entry = client.cache.get(command.cache_key)
    assert entry is not None
    assert entry.data == {"call": 1}
    assert entry.retries == 0
    assert client.fetch_queue.get_request_count(command.queue_key) == 0


@pytest.mark.asyncio
async def test_loading_events_bracket_each_request() -> None:
    client = _client(_Executor())
    command = client.create_request("/users")
    events: list[QueueLoadingEvent] = []
    client.fetch_queue.events.on_loading(command.queue_key, events.append)

    await command.send()

    assert [(event.is_loading, event.is_retry) for event in events] == [
        (True, False),
        (False, False),
    ]


@pytest.mark.asyncio
async def test_non_concurrent_commands_run_one_at_a_time_in_order() -> None:
    executor = _Executor(delay=0.01)
    client = _client(executor)
    commands = [
        client.create_request("/users", concurrent=False)
        .set_query_params({"page": page})
        .set_queue_key("users")
        for page in range(1, 4)
    ]

    responses = await asyncio.gather(*(command.send() for command in commands))

    assert executor.max_active == 1
    assert [call.query_params["page"] for call in executor.calls] == [1, 2, 3]
    assert all(response.is_success for response in responses)


@pytest.mark.asyncio
async def test_concurrent_commands_overlap() -> None:
    executor = _Executor(delay=0.01)
    client = _client(executor)
    commands = [
        client.create_request("/users").set_query_params({"page": page}).set_queue_key("users")
        for page in range(1, 4)
    ]

    await asyncio.gather(*(command.send() for command in commands))

    assert executor.max_active == 3


@pytest.mark.asyncio
async def test_fetch_queue_shares_one_execution_per_cache_key() -> None:
    executor = _Executor(delay=0.01)
    client = _client(executor)
    command = client.create_request("/users")

    request_ids = {client.fetch_queue.add(command) for _ in range(3)}
    first, second = await asyncio.gather(command.send(), command.send())

    assert len(request_ids) == 1
    assert len(executor.calls) == 1
    assert first == second


@pytest.mark.asyncio
async def test_submit_queue_runs_every_command() -> None:
    executor = _Executor(delay=0.01)
    client = _client(executor)
    command = client.create_request("/users", method="POST").set_data({"name": "Ada"})

    await asyncio.gather(command.send(), command.send())
    await client.submit_queue.join()

    assert len(executor.calls) == 2


@pytest.mark.asyncio
async def test_retry_until_success_records_retries() -> None:
    executor = _Executor([_failure(), _failure()])
    client = _client(executor)
    command = client.create_request("/users", retry=2, retry_time=50)
    loading: list[QueueLoadingEvent] = []
    client.fetch_queue.events.on_loading(command.queue_key, loading.append)

    response = await command.send()

    assert response.is_success
    assert len(executor.calls) == 3
    assert client.cache.get(command.cache_key).retries == 2
    assert [event.is_retry for event in loading if event.is_loading] == [False, True, True]


@pytest.mark.asyncio
async def test_exhausted_retries_wrap_last_error() -> None:
    executor = _Executor([_failure(500), _failure(503)])
    client = _client(executor)
    command = client.create_request("/users", retry=1, retry_time=0)

    response = await command.send()

    assert isinstance(response.error, RetryExhaustedError)
    assert response.error.attempts == 2
    assert response.error.last_error.status == 503
    assert response.status == 503
    assert client.cache.get(command.cache_key).retries == 1


@pytest.mark.asyncio
async def test_failures_are_returned_unless_raise_on_error() -> None:
    executor = _Executor([_failure(), _failure()])
    client = _client(executor)
    command = client.create_request("/users")

    response = await command.send()
    assert isinstance(response.error, AdapterError)
    assert len(executor.calls) == 1

    with pytest.raises(AdapterError, match="server error"):
        await command.send(raise_on_error=True)


@pytest.mark.asyncio
async def test_abort_settles_every_in_flight_operation() -> None:
    executor = _Executor(delay=10)
    client = _client(executor)
    commands = [
        client.create_request("/users", cancelable=True).set_query_params({"page": page})
        for page in range(3)
    ]
    settled: dict[str, list[object]] = {command.cache_key: [] for command in commands}
    cache_updates: list[object] = []
    for command in commands:
        client.cache.events.on_response(command.cache_key, settled[command.cache_key].append)
        client.cache.events.on_get(command.cache_key, cache_updates.append)

    tasks = [asyncio.create_task(command.send()) for command in commands]
    await _until(lambda: executor.active == 3)

    assert client.abort_registry.abort(commands[0].abort_key) == 3
    responses = await asyncio.wait_for(asyncio.gather(*tasks), timeout=1)

    assert all(isinstance(response.error, AbortError) for response in responses)
    assert [len(events) for events in settled.values()] == [1, 1, 1]
    assert cache_updates == []
    assert all(client.cache.get(command.cache_key) is None for command in commands)


@pytest.mark.asyncio
async def test_abort_after_settlement_is_a_noop() -> None:
    client = _client(_Executor())
    command = client.create_request("/users")
    await command.send()

    command.abort()

    assert client.abort_registry.abort(command.abort_key) == 0
    assert client.cache.get(command.cache_key).data == {"call": 1}


@pytest.mark.asyncio
async def test_timeout_fails_independently_of_executor() -> None:
    client = _client(_Executor(delay=10))
    command = client.create_request("/users", timeout=50)

    response = await asyncio.wait_for(command.send(), timeout=2)

    assert isinstance(response.error, RequestTimeoutError)
    assert response.status == 0


@pytest.mark.asyncio
async def test_submit_invalidates_matching_fetch_entries_once() -> None:
    client = _client(_Executor())
    users = client.create_request("/users")
    user = client.create_request("/users/:id").set_params({"id": 1})
    posts = client.create_request("/posts")
    for command in (users, user, posts):
        await command.send()
    revalidated: dict[str, list[str]] = {c.cache_key: [] for c in (users, user, posts)}
    for key, seen in revalidated.items():
        client.cache.events.on_revalidate(key, seen.append)

    create = client.create_request("/users", method="POST", invalidate=["/users/"])
    response = await create.set_data({"name": "Ada"}).send()

    assert response.is_success
    assert revalidated[users.cache_key] == [users.cache_key]
    assert revalidated[user.cache_key] == [user.cache_key]
    assert revalidated[posts.cache_key] == []
    assert client.cache.get(users.cache_key).invalidated is True


@pytest.mark.asyncio
async def test_exec_bypasses_queue_and_cache() -> None:
    client = _client(_Executor())
    command = client.create_request("/users")

    response = await command.exec()

    assert response.data == {"call": 1}
    assert client.cache.get(command.cache_key) is None
    assert client.abort_registry.request_ids(command.abort_key) == []


@pytest.mark.asyncio
async def test_exec_honours_timeout_option() -> None:
    client = _client(_Executor(delay=10))

    response = await client.create_request("/users").exec(timeout=50)

    assert isinstance(response.error, RequestTimeoutError)


@pytest.mark.asyncio
async def test_executor_exception_becomes_adapter_error(caplog: pytest.LogCaptureFixture) -> None:
    async def _broken(command: Command, request_id: str) -> Response:
        raise ValueError("kaput")

    client = _client(_broken)

    with caplog.at_level(logging.ERROR, logger="hyperfetch.queue"):
        response = await client.create_request("/users").send()

    assert isinstance(response.error, AdapterError)
    assert "kaput" in str(response.error)
    assert "executor failed" in caplog.text


@pytest.mark.asyncio
async def test_delete_pending_entry_settles_it_as_aborted() -> None:
    executor = _Executor(delay=0.05)
    client = _client(executor)
    first = client.create_request("/users", concurrent=False).set_queue_key("users")
    second = first.set_query_params({"page": 2})

    first_task = asyncio.create_task(first.send())
    second_task = asyncio.create_task(second.send())
    await _until(lambda: client.fetch_queue.get_request_count("users") == 2)
    state = client.fetch_queue.get("users")

    assert [entry.running for entry in state.requests] == [True, False]
    assert client.fetch_queue.delete("users", state.pending[0].request_id) is True
    second_response = await asyncio.wait_for(second_task, timeout=1)
    first_response = await asyncio.wait_for(first_task, timeout=1)

    assert isinstance(second_response.error, AbortError)
    assert first_response.is_success
    assert len(executor.calls) == 1


@pytest.mark.asyncio
async def test_close_aborts_running_work() -> None:
    executor = _Executor(delay=10)
    client = _client(executor)
    task = asyncio.create_task(client.create_request("/users").send())
    await _until(lambda: executor.active == 1)

    await client.close()
    response = await asyncio.wait_for(task, timeout=1)

    assert isinstance(response.error, AbortError)


def test_queue_selection_by_method() -> None:
    client = _client(_Executor())

    assert client.queue_for(client.create_request("/a")) is client.fetch_queue
    assert client.queue_for(client.create_request("/a", method="head")) is client.fetch_queue
    assert client.queue_for(client.create_request("/a", method="onValue")) is client.fetch_queue
    assert client.queue_for(client.create_request("/a", method="POST")) is client.submit_queue
    assert client.queue_for(client.create_request("/a"), "submit") is client.submit_queue
    with pytest.raises(ValueError, match="unknown queue type"):
        client.queue_for(client.create_request("/a"), "bogus")


@pytest.mark.asyncio
async def test_abort_during_retry_wait_starts_no_new_attempt() -> None:
    executor = _Executor([_failure() for _ in range(4)])
    client = _client(executor)
    command = client.create_request("/users", retry=3, retry_time=5000)
    loading: list[QueueLoadingEvent] = []
    client.fetch_queue.events.on_loading(command.queue_key, loading.append)

    task = asyncio.create_task(command.send())
    await _until(lambda: len(executor.calls) == 1 and executor.active == 0)
    await asyncio.sleep(0.01)
    command.abort()
    response = await asyncio.wait_for(task, timeout=1)

    assert isinstance(response.error, AbortError)
    assert len(executor.calls) == 1
    assert [event.is_retry for event in loading if event.is_loading] == [False]
    assert client.cache.get(command.cache_key) is None


@pytest.mark.asyncio
async def test_clear_drops_pending_without_starting_them() -> None:
    executor = _Executor(delay=10)
    client = _client(executor)
    commands = [
        client.create_request("/users", concurrent=False)
        .set_query_params({"page": page})
        .set_queue_key("users")
        for page in range(3)
    ]
    tasks = [asyncio.create_task(command.send()) for command in commands]
    await _until(lambda: executor.active == 1)

    client.fetch_queue.clear()
    responses = await asyncio.wait_for(asyncio.gather(*tasks), timeout=1)

    assert all(isinstance(response.error, AbortError) for response in responses)
    assert len(executor.calls) == 1
    assert client.fetch_queue.get_request_count("users") == 0
