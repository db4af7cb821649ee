"""Shared dataclasses for BigQuery wire payloads."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any

INSERT_ALL_KIND = "bigquery#tableDataInsertAllRequest"


@dataclass(frozen=True)
class Credential:
    """A bearer token and the time it was minted."""

    token: str
    minted_at: datetime


@dataclass(frozen=True)
class InsertRow:
    """A streamed row and the idempotency token it keeps across resubmissions."""

    insert_id: str
    json: Any

    @classmethod
    def new(cls, record: Any) -> InsertRow:
        return cls(insert_id=str(uuid.uuid4()), json=record)

    def to_api_repr(self) -> dict[str, Any]:
        return {"insertId": self.insert_id, "json": self.json}


@dataclass(frozen=True)
class RequestDescriptor:
    """One outbound REST exchange, as queued by the request gate."""

    method: str
    url: str
    params: dict[str, Any] | None = None
    body: Any = None

    def query_params(self) -> dict[str, Any] | None:
        """Return ``params`` without ``None`` values, or ``None`` if empty."""
        if not self.params:
            return None
        cleaned = {k: v for k, v in self.params.items() if v is not None}
        return cleaned or None
