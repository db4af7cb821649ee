"""Scripted collaborators shared by the test modules."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any

BASE_URL = "https://bq.test/bigquery/v2"


def error_body(code: int, message: str = "error") -> dict[str, Any]:
    """A BigQuery error document."""
    return {"error": {"code": code, "message": message, "errors": [{"reason": "r"}]}}


@dataclass
class Exchange:
    method: str
    path: str
    headers: dict[str, str]
    params: dict[str, Any] | None
    json: Any


class FakeHttpClient:
    """``HttpClient`` answering ``(method, path)`` with queued responses.

    Paths are URLs with ``BASE_URL`` stripped.  Each queued response is
    used once; an exception instance is raised instead of returned.
    """

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], list[Any]] = {}
        self.exchanges: list[Exchange] = []
        self.in_flight = 0
        self.max_in_flight = 0

    def add(self, method: str, path: str, *responses: Any) -> None:
        self.routes.setdefault((method, path), []).extend(responses)

    def calls(self) -> list[tuple[str, str]]:
        return [(e.method, e.path) for e in self.exchanges]

    async def exchange(
        self,
        method: str,
        url: str,
        headers: dict[str, str],
        params: dict[str, Any] | None = None,
        json: Any = None,
    ) -> dict[str, Any]:
        path = url.removeprefix(BASE_URL)
        self.exchanges.append(Exchange(method, path, dict(headers), params, json))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            queue = self.routes.get((method, path))
            if not queue:
                raise AssertionError(f"Unexpected {method} {path}")
            response = queue.pop(0)
        finally:
            self.in_flight -= 1
        if isinstance(response, BaseException):
            raise response
        return response


class CountingMinter:
    """``TokenMinter`` returning ``token-<n>`` and counting mints."""

    def __init__(self, *failures: BaseException) -> None:
        self.mints = 0
        self.failures = list(failures)
        self.calls: list[tuple[bytes, str, str]] = []

    async def mint(self, key: bytes, issuer: str, scope: str) -> str:
        self.calls.append((key, issuer, scope))
        await asyncio.sleep(0)
        if self.failures:
            raise self.failures.pop(0)
        self.mints += 1
        return f"token-{self.mints}"
