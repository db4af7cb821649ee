"""Create the target dataset and table when they do not exist yet."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from google.cloud import bigquery

from bq_stream.errors import is_not_found

logger = logging.getLogger(__name__)

Get = Callable[..., Awaitable[dict[str, Any]]]
Post = Callable[[str, Any], Awaitable[dict[str, Any]]]


def table_resource(
    table: bigquery.TableReference, schema: Mapping[str, str]
) -> dict[str, Any]:
    """Build a ``tables.insert`` body from a field-name -> type mapping."""
    return {
        "schema": {
            "fields": [{"name": name, "type": type_} for name, type_ in schema.items()]
        },
        "tableReference": table.to_api_repr(),
    }


class DatasetProvisioner:
    """Idempotent "create if absent" helpers for one table.

    A 404 from an existence check means "create it"; any other error
    propagates unchanged.

    Args:
        get: Coroutine performing a gated GET.
        post: Coroutine performing a gated POST.
        base_url: REST root, e.g. ``https://www.googleapis.com/bigquery/v2``.
        table: Table to provision; its dataset is provisioned too.
    """

    def __init__(
        self, get: Get, post: Post, base_url: str, table: bigquery.TableReference
    ) -> None:
        self._get = get
        self._post = post
        self._base_url = base_url.rstrip("/")
        self.table = table

    @property
    def dataset(self) -> bigquery.DatasetReference:
        return bigquery.DatasetReference(self.table.project, self.table.dataset_id)

    async def ensure_dataset(self) -> bool:
        """Create the dataset if missing.

        Returns:
            ``True`` if the dataset was created.
        """
        try:
            await self._get(self._base_url + self.dataset.path)
        except Exception as exc:
            if not is_not_found(exc):
                raise
        else:
            return False

        logger.info("Creating dataset %s.%s", self.table.project, self.table.dataset_id)
        await self._post(
            f"{self._base_url}/projects/{self.table.project}/datasets",
            {"datasetReference": self.dataset.to_api_repr()},
        )
        return True

    async def ensure_table(self, schema: Mapping[str, str]) -> bool:
        """Create the dataset and the table if missing.

        Args:
            schema: Field name -> BigQuery type, in column order.

        Returns:
            ``True`` if the table was created.
        """
        await self.ensure_dataset()
        try:
            await self._get(self._base_url + self.table.path)
        except Exception as exc:
            if not is_not_found(exc):
                raise
        else:
            return False

        await self.create_table(schema)
        return True

    async def create_table(self, schema: Mapping[str, str]) -> dict[str, Any]:
        logger.info("Creating table %s", self.table)
        return await self._post(
            f"{self._base_url}{self.dataset.path}/tables",
            table_resource(self.table, schema),
        )
