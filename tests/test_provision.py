"""Tests for ``bq_stream.provision`` through the gated client."""

from __future__ import annotations

import asyncio
from collections.abc import Callable

import pytest
from fakes import FakeHttpClient, error_body
from google.api_core import exceptions

from bq_stream.bq_client import BigQueryClient

DATASET = "/projects/proj/datasets/ds"
TABLE = "/projects/proj/datasets/ds/tables/events"
SCHEMA = {"name": "STRING", "seen": "TIMESTAMP"}


class TestEnsureTable:
    """Tests for ``DatasetProvisioner.ensure_table``."""

    def test_existing_dataset_and_table(
        self, http: FakeHttpClient, make_client: Callable[..., BigQueryClient]
    ) -> None:
        """Nothing is created when both already exist."""
        http.add("GET", DATASET, {"id": "proj:ds"})
        http.add("GET", TABLE, {"id": "proj:ds.events"})

        created = asyncio.run(make_client().ensure_table(SCHEMA))

        assert created is False
        assert http.calls() == [("GET", DATASET), ("GET", TABLE)]

    def test_creates_missing_dataset_and_table(
        self, http: FakeHttpClient, make_client: Callable[..., BigQueryClient]
    ) -> None:
        """404s on both checks create the dataset, then the table."""
        http.add("GET", DATASET, error_body(404))
        http.add("POST", "/projects/proj/datasets", {"id": "proj:ds"})
        http.add("GET", TABLE, error_body(404))
        http.add("POST", f"{DATASET}/tables", {"id": "proj:ds.events"})

        created = asyncio.run(make_client().ensure_table(SCHEMA))

        assert created is True
        assert http.calls() == [
            ("GET", DATASET),
            ("POST", "/projects/proj/datasets"),
            ("GET", TABLE),
            ("POST", f"{DATASET}/tables"),
        ]
        assert http.exchanges[1].json == {
            "datasetReference": {"projectId": "proj", "datasetId": "ds"}
        }
        body = http.exchanges[3].json
        assert body["tableReference"] == {
            "projectId": "proj",
            "datasetId": "ds",
            "tableId": "events",
        }
        assert body["schema"]["fields"] == [
            {"name": "name", "type": "STRING"},
            {"name": "seen", "type": "TIMESTAMP"},
        ]

    def test_dataset_error_propagates(
        self, http: FakeHttpClient, make_client: Callable[..., BigQueryClient]
    ) -> None:
        """A non-404 dataset check error is not a creation signal."""
        http.add("GET", DATASET, error_body(500))

        with pytest.raises(exceptions.InternalServerError):
            asyncio.run(make_client().ensure_table(SCHEMA))

        assert http.calls() == [("GET", DATASET)]

    def test_table_error_propagates(
        self, http: FakeHttpClient, make_client: Callable[..., BigQueryClient]
    ) -> None:
        """A non-404 table check error propagates unchanged."""
        http.add("GET", DATASET, {"id": "proj:ds"})
        http.add("GET", TABLE, error_body(400, "bad table name"))

        with pytest.raises(exceptions.BadRequest):
            asyncio.run(make_client().ensure_table(SCHEMA))

        assert ("POST", f"{DATASET}/tables") not in http.calls()

    def test_ensure_dataset_only(
        self, http: FakeHttpClient, make_client: Callable[..., BigQueryClient]
    ) -> None:
        """``ensure_dataset`` creates just the dataset."""
        http.add("GET", DATASET, error_body(404))
        http.add("POST", "/projects/proj/datasets", {})

        assert asyncio.run(make_client().ensure_dataset()) is True

    def test_requires_table(self, make_client: Callable[..., BigQueryClient]) -> None:
        """Provisioning needs a configured table."""
        with pytest.raises(ValueError):
            asyncio.run(make_client(table=None).ensure_table(SCHEMA))
