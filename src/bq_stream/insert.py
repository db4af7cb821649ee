"""Streaming inserts with targeted resubmission of rejected rows."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterable, Sequence
from typing import Any

from bq_stream.resources import INSERT_ALL_KIND, InsertRow

logger = logging.getLogger(__name__)

Post = Callable[[str, Any], Awaitable[dict[str, Any]]]


def rejected_rows(
    batch: Sequence[InsertRow], insert_errors: Sequence[dict[str, Any]]
) -> list[InsertRow]:
    """Pick the rows named by ``insertErrors``.

    An error without an ``index`` refers to the row at its own position.
    """
    rejected: list[InsertRow] = []
    seen: set[int] = set()
    for position, error in enumerate(insert_errors):
        index = error.get("index")
        index = position if index is None else int(index)
        if index not in seen:
            seen.add(index)
            rejected.append(batch[index])
    return rejected


class RowInserter:
    """POST rows to ``insertAll`` until every row is accepted.

    Args:
        post: Coroutine performing a gated POST.
        url: The table's ``insertAll`` URL.
        max_attempts: Submissions allowed per batch; ``None`` retries
            rejected rows until they are accepted.
    """

    def __init__(self, post: Post, url: str, *, max_attempts: int | None = None) -> None:
        self._post = post
        self.url = url
        self.max_attempts = max_attempts

    async def insert(self, records: Iterable[Any]) -> bool:
        """Assign fresh insert ids to *records* and stream them."""
        return await self.insert_rows([InsertRow.new(record) for record in records])

    async def insert_rows(self, rows: Sequence[InsertRow]) -> bool:
        """Stream already-identified rows, resubmitting only rejections.

        Returns:
            ``True`` once a submission reports no insert errors, ``False``
            if ``max_attempts`` ran out first.
        """
        batch = list(rows)
        attempt = 0
        while batch:
            attempt += 1
            response = await self._post(
                self.url,
                {"kind": INSERT_ALL_KIND, "rows": [row.to_api_repr() for row in batch]},
            )
            insert_errors = response.get("insertErrors") or []
            if not insert_errors:
                return True

            batch = rejected_rows(batch, insert_errors)
            if self.max_attempts is not None and attempt >= self.max_attempts:
                logger.warning(
                    "Giving up on %d rejected rows after %d attempts: %s",
                    len(batch),
                    attempt,
                    [row.insert_id for row in batch],
                )
                return False
            logger.debug("Resubmitting %d rejected rows", len(batch))
        return True
