"""Executor contract and the default httpx executor."""

from __future__ import annotations

import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import httpx

from hyperfetch.errors import AdapterError, HyperFetchError, RequestTimeoutError
from hyperfetch.keys import encode_query, join_url

if TYPE_CHECKING:
    from hyperfetch.command import Command


@dataclass(frozen=True)
class Response:
    """Normalized executor result."""

    data: Any = None
    error: BaseException | None = None
    status: int | str | None = None
    additional_data: dict[str, Any] = field(default_factory=dict)

    @property
    def is_success(self) -> bool:
        return self.error is None

    def raise_for_error(self) -> Response:
        if self.error is not None:
            raise self.error
        return self

    def as_dict(self) -> dict[str, Any]:
        """JSON-friendly projection; errors are rendered as strings."""
        return {
            "data": self.data,
            "error": None if self.error is None else str(self.error),
            "status": self.status,
            "is_success": self.is_success,
        }


Executor = Callable[["Command", str], Awaitable[Response]]


def failure(error: HyperFetchError, *, status: int | str | None = 0) -> Response:
    return Response(data=None, error=error, status=status)


def _decode_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    content_type = response.headers.get("content-type", "")
    if "json" in content_type:
        try:
            return response.json()
        except json.JSONDecodeError:
            return response.text
    return response.text


class HttpxAdapter:
    """Execute commands over HTTP with ``httpx.AsyncClient``."""

    def __init__(
        self,
        *,
        timeout_s: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
        http: httpx.AsyncClient | None = None,
    ) -> None:
        self._owns_http = http is None
        if http is None:
            limits = httpx.Limits(max_connections=8, max_keepalive_connections=4)
            http = httpx.AsyncClient(timeout=timeout_s, limits=limits, transport=transport)
        self._http = http

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def __aenter__(self) -> HttpxAdapter:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    async def __call__(self, command: Command, request_id: str) -> Response:
        method = command.method.upper()
        url = join_url(command.client.url, command.endpoint, encode_query(command.query_params))
        kwargs: dict[str, Any] = {"headers": dict(command.headers or {})}
        payload = command.data
        if isinstance(payload, (str, bytes)):
            kwargs["content"] = payload
        elif payload is not None:
            kwargs["json"] = payload
        options = command.options or {}
        if "timeout_s" in options:
            kwargs["timeout"] = options["timeout_s"]

        try:
            response = await self._http.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            return failure(RequestTimeoutError(f"{method} {url} timed out: {exc}"))
        except httpx.HTTPError as exc:
            return failure(AdapterError(f"{method} {url} failed with transport error: {exc}", status=0))

        body = _decode_body(response)
        additional = {"headers": dict(response.headers), "request_id": request_id}
        if response.is_success:
            return Response(data=body, status=response.status_code, additional_data=additional)
        error = AdapterError(
            f"{method} {url} failed with status {response.status_code}",
            status=response.status_code,
            body=body,
        )
        return Response(
            data=None,
            error=error,
            status=response.status_code,
            additional_data=additional,
        )
