"""BigQuery REST client: streaming inserts, provisioning and queries.

Every request made by this module, and by the query sessions it creates,
is admitted through one ``RequestGate`` so exchanges with the service are
serialized in submission order.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable, Mapping
from pathlib import Path
from typing import Any

from google.cloud import bigquery

from bq_stream.config import DEFAULT_BASE_URL, ClientConfig, resolve_key_path
from bq_stream.credentials import (
    CredentialCache,
    KeyProvider,
    ServiceAccountTokenMinter,
)
from bq_stream.executor import DEFAULT_BASE_DELAY, DEFAULT_MAX_ATTEMPTS, RetryingExecutor
from bq_stream.gate import RequestGate
from bq_stream.insert import RowInserter
from bq_stream.provision import DatasetProvisioner
from bq_stream.query import QueryJob
from bq_stream.resources import RequestDescriptor
from bq_stream.transport import HttpClient, HttpxClient


class BigQueryClient:
    """Client bound to one project, default dataset and optional table.

    Args:
        project: GCP project ID.
        dataset: Default dataset for queries, inserts and provisioning.
        table: Table targeted by ``insert``/``write``/``ensure_table``.
        credentials: Token cache attached to every request.
        http: Transport; an ``HttpxClient`` is created (and owned) when
            omitted.
        base_url: REST root.
        max_results: Default page size for queries.
        stop_on_error: Do not retry authorization failures.
        max_attempts: Attempts per request for authorization failures.
        base_delay: Retry backoff base in seconds.
        max_insert_attempts: Submissions per insert batch; ``None`` keeps
            resubmitting rejected rows.
        sleep: Awaitable delay for retries and polling.
    """

    def __init__(
        self,
        project: str,
        dataset: str,
        table: str | None = None,
        *,
        credentials: CredentialCache,
        http: HttpClient | None = None,
        base_url: str = DEFAULT_BASE_URL,
        max_results: int | None = 100,
        stop_on_error: bool = False,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_delay: float = DEFAULT_BASE_DELAY,
        max_insert_attempts: int | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.project = project
        self.default_dataset = bigquery.DatasetReference(project, dataset)
        self.table = bigquery.TableReference(self.default_dataset, table) if table else None
        self.base_url = base_url.rstrip("/")
        self.max_results = max_results
        self.max_insert_attempts = max_insert_attempts
        self.credentials = credentials
        self._sleep = sleep

        self._owns_http = http is None
        self._http: HttpClient = http or HttpxClient()
        self.executor = RetryingExecutor(
            self._http,
            credentials,
            max_attempts=max_attempts,
            base_delay=base_delay,
            stop_on_error=stop_on_error,
            sleep=sleep,
        )
        self.gate = RequestGate(self.executor)

    @classmethod
    def from_config(
        cls, config: ClientConfig, config_path: Path, **kwargs: Any
    ) -> BigQueryClient:
        """Build a client from a loaded ``bq_stream.toml``.

        Args:
            config: Parsed configuration.
            config_path: Location of the file; the key path is relative
                to it.
            **kwargs: Overrides forwarded to the constructor.
        """
        credentials = CredentialCache(
            KeyProvider(resolve_key_path(config, config_path)),
            ServiceAccountTokenMinter(),
            config.credentials.issuer,
            expiry=config.credentials.expiry_seconds,
        )
        options: dict[str, Any] = {
            "credentials": credentials,
            "base_url": config.request.base_url,
            "max_results": config.request.max_results,
            "stop_on_error": config.request.stop_on_error,
            "max_attempts": config.request.max_attempts,
            "base_delay": config.request.base_delay_ms / 1000,
            "max_insert_attempts": config.request.max_insert_attempts,
        }
        options.update(kwargs)
        return cls(config.project.id, config.project.dataset, config.project.table, **options)

    @property
    def stop_on_error(self) -> bool:
        return self.executor.stop_on_error

    @stop_on_error.setter
    def stop_on_error(self, value: bool) -> None:
        self.executor.stop_on_error = value

    # -- gated requests ---------------------------------------------------

    async def request(self, descriptor: RequestDescriptor) -> dict[str, Any]:
        return await self.gate.submit(descriptor)

    async def get(self, url: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        return await self.request(RequestDescriptor("GET", url, params=params))

    async def post(self, url: str, body: Any) -> dict[str, Any]:
        return await self.request(RequestDescriptor("POST", url, body=body))

    # -- inserts ----------------------------------------------------------

    def _require_table(self) -> bigquery.TableReference:
        if self.table is None:
            raise ValueError("No table configured for this client")
        return self.table

    def inserter(self) -> RowInserter:
        table = self._require_table()
        return RowInserter(
            self.post,
            f"{self.base_url}{table.path}/insertAll",
            max_attempts=self.max_insert_attempts,
        )

    async def insert(self, records: Iterable[Any]) -> bool:
        """Stream *records* into the configured table.

        Returns:
            ``True`` when every row was accepted.
        """
        return await self.inserter().insert(records)

    async def write(self, data: Any) -> bool:
        """Stream one record, or a list of records."""
        if not isinstance(data, list):
            data = [data]
        return await self.insert(data)

    # -- provisioning -----------------------------------------------------

    def provisioner(self) -> DatasetProvisioner:
        return DatasetProvisioner(self.get, self.post, self.base_url, self._require_table())

    async def ensure_dataset(self) -> bool:
        return await self.provisioner().ensure_dataset()

    async def ensure_table(self, schema: Mapping[str, str]) -> bool:
        """Create the configured dataset and table if they do not exist.

        Args:
            schema: Field name -> BigQuery type, in column order.
        """
        return await self.provisioner().ensure_table(schema)

    # -- queries ----------------------------------------------------------

    def query(self, sql: str, **options: Any) -> QueryJob:
        """Open a query session.

        Args:
            sql: Query text.
            **options: ``QueryJob`` keyword options (``job_id``,
                ``destination``, ``destination_table``,
                ``create_destination``, ``max_results``, ``observer``).
        """
        options.setdefault("max_results", self.max_results)
        options.setdefault("sleep", self._sleep)
        return QueryJob(self, sql, **options)

    async def rows(self, sql: str, **options: Any) -> AsyncIterator[dict[str, Any]]:
        async for row in self.query(sql, **options):
            yield row

    # -- lifecycle --------------------------------------------------------

    async def aclose(self) -> None:
        self.credentials.invalidate()
        if self._owns_http and isinstance(self._http, HttpxClient):
            await self._http.aclose()

    async def __aenter__(self) -> BigQueryClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()
