"""Query job lifecycle: submit, poll, resolve the destination, page rows.

A ``QueryJob`` is a pull-based cursor.  Each ``fetch_page`` call performs
exactly one unit of I/O (a job submission, a status poll, a table
resolution or a page GET) and returns the rows that unit produced, which
may be none.  Results are read from the job's destination table; jobs
that have no destination table (scripts, DDL) are read through the
``queries/<jobId>`` endpoint instead.

Job and table references that have expired are recovered by resetting the
cursor rather than failing the query:

* an externally supplied job id the service no longer knows is dropped
  and the query resubmitted;
* a permanent destination table that does not exist yet is created by the
  next job submission.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any, Protocol

from google.cloud import bigquery

from bq_stream.codec import decode_rows, parse_schema
from bq_stream.errors import (
    MalformedResponseError,
    QueryFailedError,
    is_expired_reference,
    is_not_found,
)

logger = logging.getLogger(__name__)

# (attempts below threshold, delay in seconds)
POLL_BACKOFF: tuple[tuple[int, float], ...] = ((4, 0.05), (8, 0.2))
POLL_BACKOFF_CEILING = 2.0


def poll_delay(attempt: int) -> float:
    """Delay before status poll number *attempt* + 1 (0-based)."""
    for limit, delay in POLL_BACKOFF:
        if attempt < limit:
            return delay
    return POLL_BACKOFF_CEILING


class CursorState(enum.Enum):
    NOT_STARTED = "not_started"
    POLLING_JOB = "polling_job"
    RESOLVING_TABLE = "resolving_table"
    PAGING_TABLE_DATA = "paging_table_data"
    PAGING_QUERY_URL = "paging_query_url"
    EXHAUSTED = "exhausted"


class QueryObserver:
    """Side-channel notifications from a query session.

    Subclass and override what you need; every hook is a no-op here.
    """

    def on_job_id(self, job_id: str) -> None:
        pass

    def on_job(self, job: dict[str, Any]) -> None:
        pass

    def on_destination(self, table: bigquery.TableReference) -> None:
        pass

    def on_table(self, table: dict[str, Any]) -> None:
        pass

    def on_done(self) -> None:
        pass


class QueryTransport(Protocol):
    """What a query session needs from the client."""

    base_url: str
    project: str
    default_dataset: bigquery.DatasetReference

    async def get(
        self, url: str, params: dict[str, Any] | None = None
    ) -> dict[str, Any]: ...

    async def post(self, url: str, body: Any) -> dict[str, Any]: ...


def table_reference(
    table: str | bigquery.TableReference, default_dataset: bigquery.DatasetReference
) -> bigquery.TableReference:
    """Resolve ``table``, ``dataset.table`` or ``project.dataset.table``."""
    if isinstance(table, bigquery.TableReference):
        return table
    parts = table.split(".")
    if len(parts) == 1:
        return bigquery.TableReference(default_dataset, table)
    if len(parts) == 2:
        return bigquery.TableReference(
            bigquery.DatasetReference(default_dataset.project, parts[0]), parts[1]
        )
    return bigquery.TableReference.from_string(table)


class QueryJob:
    """One query invocation and its result cursor.

    Args:
        client: Gated transport (normally a ``BigQueryClient``).
        sql: Query text; needed whenever a job has to be submitted.
        job_id: Resume an existing job instead of submitting one.
        destination: Read results straight from this table.
        destination_table: Permanent table to materialize results into.
            It is read directly when it exists and created by the query
            job when it does not.
        create_destination: Allow creating ``destination_table``.
        max_results: Page size sent as ``maxResults``.
        observer: Receives job/table metadata events.
        sleep: Awaitable delay used between status polls.
    """

    def __init__(
        self,
        client: QueryTransport,
        sql: str,
        *,
        job_id: str | None = None,
        destination: str | bigquery.TableReference | None = None,
        destination_table: str | bigquery.TableReference | None = None,
        create_destination: bool = True,
        max_results: int | None = None,
        observer: QueryObserver | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._client = client
        self.sql = sql
        self.job_id = job_id
        self.max_results = max_results
        self.observer = observer or QueryObserver()
        self._sleep = sleep

        self.permanent_table = (
            table_reference(destination_table, client.default_dataset)
            if destination_table is not None
            else None
        )
        self.create_destination = create_destination
        if destination is not None:
            self.destination: bigquery.TableReference | None = table_reference(
                destination, client.default_dataset
            )
        else:
            self.destination = self.permanent_table

        self.state = CursorState.NOT_STARTED
        self.schema: list[bigquery.SchemaField] | None = None
        self.page_token: str | None = None
        self.poll_attempts = 0
        self.total_rows: int | None = None

        self._external_job = job_id is not None
        self._create_directive: bigquery.TableReference | None = None
        self._page_url: str | None = None

    @property
    def exhausted(self) -> bool:
        return self.state is CursorState.EXHAUSTED

    async def fetch_page(self) -> list[dict[str, Any]]:
        """Advance the cursor by one unit of I/O.

        Returns:
            The rows decoded by this step; empty while the job is being
            submitted or polled, and once the cursor is exhausted.

        Raises:
            QueryFailedError: The job finished with an error.
            google.api_core.exceptions.GoogleAPICallError: A service error
                that is not an expired reference.
            MalformedResponseError: A response lacks required fields.
        """
        if self.state is CursorState.NOT_STARTED:
            self._start()
            if self.state is CursorState.NOT_STARTED:
                await self._submit()
                return []

        if self.state is CursorState.POLLING_JOB:
            return await self._poll()
        if self.state is CursorState.RESOLVING_TABLE:
            return await self._resolve_table()
        if self.state in (CursorState.PAGING_TABLE_DATA, CursorState.PAGING_QUERY_URL):
            return await self._next_page()
        return []

    async def fetch_all(self) -> list[dict[str, Any]]:
        rows: list[dict[str, Any]] = []
        while not self.exhausted:
            rows.extend(await self.fetch_page())
        return rows

    async def rows(self) -> AsyncIterator[dict[str, Any]]:
        while not self.exhausted:
            for row in await self.fetch_page():
                yield row

    def __aiter__(self) -> AsyncIterator[dict[str, Any]]:
        return self.rows()

    # -- state transitions ------------------------------------------------

    def _start(self) -> None:
        if self.job_id is not None:
            self._enter(CursorState.POLLING_JOB)
        elif self._create_directive is None and self.destination is not None:
            self._enter(CursorState.RESOLVING_TABLE)

    def _enter(self, state: CursorState) -> None:
        logger.debug("Query %s: %s -> %s", self.job_id, self.state.name, state.name)
        self.state = state

    def _finish(self) -> None:
        self._enter(CursorState.EXHAUSTED)
        self.observer.on_done()

    def _restart(self) -> None:
        self.schema = None
        self.page_token = None
        self.poll_attempts = 0
        self._page_url = None
        self._enter(CursorState.NOT_STARTED)

    # -- I/O steps --------------------------------------------------------

    def _project_url(self, suffix: str) -> str:
        return f"{self._client.base_url.rstrip('/')}/projects/{self._client.project}/{suffix}"

    async def _submit(self) -> None:
        query: dict[str, Any] = {
            "defaultDataset": self._client.default_dataset.to_api_repr(),
            "query": self.sql,
            "useQueryCache": True,
        }
        if self._create_directive is not None:
            query["destinationTable"] = self._create_directive.to_api_repr()
            self._create_directive = None

        job = await self._client.post(
            self._project_url("jobs"), {"configuration": {"query": query}}
        )
        try:
            self.job_id = job["jobReference"]["jobId"]
        except (KeyError, TypeError) as exc:
            raise MalformedResponseError("Job submission returned no jobId") from exc
        self.observer.on_job_id(self.job_id)
        self.poll_attempts = 0
        self._enter(CursorState.POLLING_JOB)

    async def _poll(self) -> list[dict[str, Any]]:
        try:
            job = await self._client.get(self._project_url(f"jobs/{self.job_id}"))
        except Exception as exc:
            if not (self._external_job and is_expired_reference(exc)):
                raise
            logger.warning(
                "Job %s is no longer available (%s), restarting query", self.job_id, exc
            )
            self.job_id = None
            self._external_job = False
            self._restart()
            return []

        status = job.get("status") or {}
        if status.get("state") != "DONE":
            await self._sleep(poll_delay(self.poll_attempts))
            self.poll_attempts += 1
            return []

        self.observer.on_job(job)
        if status.get("errorResult"):
            self._finish()
            raise QueryFailedError(self.job_id, status["errorResult"])

        destination = ((job.get("configuration") or {}).get("query") or {}).get(
            "destinationTable"
        )
        if not destination:
            self._page_url = self._project_url(f"queries/{self.job_id}")
            self._enter(CursorState.PAGING_QUERY_URL)
            return []

        self.destination = bigquery.TableReference.from_api_repr(destination)
        self.observer.on_destination(self.destination)
        self._enter(CursorState.RESOLVING_TABLE)
        return []

    async def _resolve_table(self) -> list[dict[str, Any]]:
        assert self.destination is not None
        table_url = self._client.base_url.rstrip("/") + self.destination.path
        data_url = table_url + "/data"
        # The gate runs both in order; a 404 on the table still sends the data GET.
        try:
            table, page = await asyncio.gather(
                self._client.get(table_url),
                self._client.get(data_url, self._page_params()),
            )
        except Exception as exc:
            if not is_not_found(exc):
                raise
            return self._recover_missing_table(exc)

        self.schema = parse_schema(table)
        self.observer.on_table(table)
        self._page_url = data_url
        self._enter(CursorState.PAGING_TABLE_DATA)
        return self._consume(page)

    def _recover_missing_table(self, exc: Exception) -> list[dict[str, Any]]:
        if self._external_job:
            logger.warning(
                "Destination %s of job %s is gone, restarting query",
                self.destination,
                self.job_id,
            )
            self.job_id = None
            self.destination = self.permanent_table
            self._external_job = False
            self._restart()
            return []

        if (
            self.permanent_table is not None
            and self.create_destination
            and self.destination == self.permanent_table
            and self.job_id is None
        ):
            logger.info("Destination %s does not exist, creating it", self.permanent_table)
            self._create_directive = self.permanent_table
            self.destination = None
            self._restart()
            return []

        raise exc

    async def _next_page(self) -> list[dict[str, Any]]:
        assert self._page_url is not None
        page = await self._client.get(self._page_url, self._page_params())
        if self.state is CursorState.PAGING_QUERY_URL:
            if page.get("jobComplete") is False:
                await self._sleep(poll_delay(self.poll_attempts))
                self.poll_attempts += 1
                return []
            # Scripts and DDL complete with no rows and no schema.
            if self.schema is None and page.get("rows"):
                self.schema = parse_schema(page)
        return self._consume(page)

    def _page_params(self) -> dict[str, Any]:
        return {"maxResults": self.max_results, "pageToken": self.page_token}

    def _consume(self, page: dict[str, Any]) -> list[dict[str, Any]]:
        self.page_token = page.get("pageToken")
        if page.get("totalRows") is not None:
            self.total_rows = int(page["totalRows"])

        rows = page.get("rows")
        if not rows:
            self._finish()
            return []
        if self.schema is None:
            raise MalformedResponseError("Rows received before a schema")

        decoded = decode_rows(self.schema, rows)
        if not self.page_token:
            self._finish()
        return decoded
