import json

import httpx
import pytest

from hyperfetch.adapter import HttpxAdapter, Response
from hyperfetch.client import Client
from hyperfetch.errors import AdapterError, RequestTimeoutError
from hyperfetch.settings import Settings


def _client(handler) -> tuple[Client, HttpxAdapter]:
    adapter = HttpxAdapter(transport=httpx.MockTransport(handler))
    client = Client("http://api.test", adapter=adapter, settings=Settings(_env_file=None))
    return client, adapter


@pytest.mark.asyncio
async def test_json_success_with_query_and_body() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201, json={"id": 7})

    client, adapter = _client(handler)
    command = (
        client.create_request("/teas/:id", method="POST")
        .set_params({"id": 7})
        .set_query_params({"lang": "en"})
        .set_headers({"x-trace": "abc"})
        .set_data({"name": "Sencha"})
    )

    async with adapter:
        response = await command.send()

    assert response.is_success
    assert response.data == {"id": 7}
    assert response.status == 201
    assert seen[0].method == "POST"
    assert str(seen[0].url) == "http://api.test/teas/7?lang=en"
    assert seen[0].headers["x-trace"] == "abc"
    assert json.loads(seen[0].content) == {"name": "Sencha"}


@pytest.mark.asyncio
async def test_error_status_becomes_adapter_error_with_body() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"detail": "boom"})

    client, adapter = _client(handler)

    async with adapter:
        response = await client.create_request("/teas").send()

    assert isinstance(response.error, AdapterError)
    assert response.error.status == 500
    assert response.error.body == {"detail": "boom"}
    assert response.status == 500
    assert response.data is None


@pytest.mark.asyncio
async def test_transport_error_has_status_zero() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    client, adapter = _client(handler)

    async with adapter:
        response = await client.create_request("/teas").exec()

    assert isinstance(response.error, AdapterError)
    assert response.status == 0
    assert "transport error" in str(response.error)


@pytest.mark.asyncio
async def test_httpx_timeout_becomes_request_timeout() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    client, adapter = _client(handler)

    async with adapter:
        response = await client.create_request("/teas").exec()

    assert isinstance(response.error, RequestTimeoutError)


@pytest.mark.asyncio
async def test_text_body_is_returned_as_string() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="pong")

    client, adapter = _client(handler)

    async with adapter:
        response = await client.create_request("/ping").exec()

    assert response.data == "pong"


def test_response_as_dict_renders_errors() -> None:
    response = Response(error=AdapterError("bad", status=400), status=400)

    assert response.as_dict() == {
        "data": None,
        "error": "bad",
        "status": 400,
        "is_success": False,
    }
    with pytest.raises(AdapterError):
        response.raise_for_error()
