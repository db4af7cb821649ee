"""Shared fixtures."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any
from unittest.mock import AsyncMock

import pytest
from fakes import BASE_URL, CountingMinter, FakeHttpClient

from bq_stream.bq_client import BigQueryClient
from bq_stream.credentials import CredentialCache, KeyProvider


@pytest.fixture
def http() -> FakeHttpClient:
    return FakeHttpClient()


@pytest.fixture
def minter() -> CountingMinter:
    return CountingMinter()


@pytest.fixture
def sleep() -> AsyncMock:
    """Stand-in for ``asyncio.sleep`` that records requested delays."""
    return AsyncMock()


@pytest.fixture
def make_client(
    http: FakeHttpClient, minter: CountingMinter, sleep: AsyncMock
) -> Callable[..., BigQueryClient]:
    def factory(table: str | None = "events", **kwargs: Any) -> BigQueryClient:
        credentials = CredentialCache(KeyProvider(b"pem"), minter, "svc@proj.iam")
        kwargs.setdefault("max_results", 100)
        return BigQueryClient(
            "proj",
            "ds",
            table,
            credentials=credentials,
            http=http,
            base_url=BASE_URL,
            sleep=sleep,
            **kwargs,
        )

    return factory
