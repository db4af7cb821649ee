"""Decode ``{"f": [{"v": ...}]}`` wire rows into dicts keyed by field name."""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from datetime import datetime, timezone
from typing import Any

from google.cloud import bigquery

from bq_stream.errors import MalformedResponseError


def parse_schema(resource: Mapping[str, Any]) -> list[bigquery.SchemaField]:
    """Read ``schema.fields`` from a table or query-results resource.

    Raises:
        MalformedResponseError: If the resource carries no schema.
    """
    fields = (resource.get("schema") or {}).get("fields")
    if fields is None:
        raise MalformedResponseError("Response has no schema")
    return [bigquery.SchemaField.from_api_repr(field) for field in fields]


def _decode_cell(field: bigquery.SchemaField, value: Any) -> Any:
    if value is None:
        return None
    if (field.field_type or "").upper() == "TIMESTAMP":
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    return value


def decode_rows(
    schema: Sequence[bigquery.SchemaField],
    rows: Iterable[Mapping[str, Any]],
) -> list[dict[str, Any]]:
    """Zip each row's cells positionally against *schema*.

    Args:
        schema: Fields in column order.
        rows: Wire rows as returned by ``tabledata.list`` or
            ``jobs.getQueryResults``.

    Returns:
        One dict per row.  TIMESTAMP cells become UTC datetimes; every
        other cell is passed through as received.

    Raises:
        MalformedResponseError: If a row's cell count differs from the
            schema length.
    """
    decoded: list[dict[str, Any]] = []
    for position, row in enumerate(rows):
        cells = row.get("f")
        if cells is None or len(cells) != len(schema):
            msg = (
                f"Row {position} has {0 if cells is None else len(cells)} cells, "
                f"schema has {len(schema)} fields"
            )
            raise MalformedResponseError(msg)
        decoded.append(
            {
                field.name: _decode_cell(field, cell.get("v"))
                for field, cell in zip(schema, cells)
            }
        )
    return decoded
