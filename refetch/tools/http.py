"""Async HTTP query functions backed by httpx.

A ready-made ``query_fn`` source for JSON endpoints. Requests honour the
query's AbortSignal: ``Query.cancel()`` makes the in-flight request raise
:class:`QueryAbortedError`, and non-2xx responses raise
:class:`QueryHTTPError` so they flow through the retry policy.

    http = HTTPQueryClient(base_url="https://api.example.com")
    todos = client.query("todos", lambda page: query_executor(
        http.fetcher("/todos", param="page"), (page,)))
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

import httpx
import structlog

from refetch.engine.abort import AbortSignal, abortable
from refetch.errors import QueryHTTPError

logger = structlog.get_logger().bind(component="http")


class HTTPQueryClient:
    """One lazily created ``httpx.AsyncClient`` shared by every fetcher it builds."""

    def __init__(
        self,
        base_url: str = "",
        headers: dict[str, str] | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.headers = headers or {}
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self.headers,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def get_json(
        self,
        url: str,
        params: dict[str, Any] | None = None,
        signal: AbortSignal | None = None,
    ) -> Any:
        """GET *url* and decode the JSON body.

        Raises QueryHTTPError on a non-2xx status and QueryAbortedError if
        *signal* fires before the response arrives. Transport errors from
        httpx propagate unchanged.
        """
        client = await self._get_client()
        response = await abortable(client.get(url, params=params), signal)
        if not response.is_success:
            logger.warning("http_query_failed", url=str(response.url), status=response.status_code)
            raise QueryHTTPError(response.status_code, str(response.url))
        logger.debug("http_query_ok", url=str(response.url), status=response.status_code)
        return response.json()

    def fetcher(
        self,
        url: str,
        param: str | None = None,
        extra_params: dict[str, Any] | None = None,
    ) -> Callable[..., Awaitable[Any]]:
        """Build a fetcher for :func:`~refetch.models.query.query_executor`.

        With *param* set, the first positional query param is sent as that
        query-string parameter (``?page=2``); further positional params are
        ignored. Without it, the fetcher takes no positional params.
        """
        async def fetch(*args: Any, signal: AbortSignal | None = None) -> Any:
            query = dict(extra_params or {})
            if param is not None and args:
                query[param] = args[0]
            return await self.get_json(url, params=query or None, signal=signal)

        return fetch


async def fetch_json(
    url: str,
    *,
    signal: AbortSignal | None = None,
    params: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> Any:
    """One-shot JSON GET with its own short-lived client."""
    http = HTTPQueryClient(headers=headers, transport=transport)
    try:
        return await http.get_json(url, params=params, signal=signal)
    finally:
        await http.close()
