"""HTTP transport used by the request executor.

The executor only depends on the ``HttpClient`` protocol; ``HttpxClient``
is the default implementation.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from bq_stream.errors import MalformedResponseError

logger = logging.getLogger(__name__)


class HttpClient(Protocol):
    """One JSON request/response exchange."""

    async def exchange(
        self,
        method: str,
        url: str,
        headers: dict[str, str],
        params: dict[str, Any] | None = None,
        json: Any = None,
    ) -> dict[str, Any]: ...


def _error_body(response: httpx.Response) -> dict[str, Any]:
    return {
        "error": {
            "code": response.status_code,
            "message": response.reason_phrase or f"HTTP {response.status_code}",
            "errors": [],
        }
    }


class HttpxClient:
    """``HttpClient`` backed by ``httpx.AsyncClient``.

    Error statuses are folded into the BigQuery ``{"error": {...}}`` body
    shape so the executor sees one error format regardless of whether the
    service produced a JSON error document.

    Args:
        client: Client to use.  When omitted one is created and owned,
            and closed by ``aclose``.
        timeout: Request timeout in seconds for an owned client.
    """

    def __init__(
        self, client: httpx.AsyncClient | None = None, *, timeout: float = 120.0
    ) -> None:
        self._owned = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def exchange(
        self,
        method: str,
        url: str,
        headers: dict[str, str],
        params: dict[str, Any] | None = None,
        json: Any = None,
    ) -> dict[str, Any]:
        response = await self._client.request(
            method, url, headers=headers, params=params, json=json
        )
        logger.debug("%s %s -> %d", method, url, response.status_code)

        if not response.content:
            return _error_body(response) if response.is_error else {}

        try:
            body = response.json()
        except ValueError as exc:
            if response.is_error:
                return _error_body(response)
            msg = f"Non-JSON response from {method} {url}"
            raise MalformedResponseError(msg) from exc

        if not isinstance(body, dict):
            msg = f"Expected a JSON object from {method} {url}, got {type(body).__name__}"
            raise MalformedResponseError(msg)
        if response.is_error and "error" not in body:
            return _error_body(response)
        return body

    async def aclose(self) -> None:
        if self._owned:
            await self._client.aclose()
