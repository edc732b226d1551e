"""Batch fetching from the source.

A batch is the next ordered slice of source rows strictly after the
watermark::

    SELECT TOP <limit> * FROM <table>
    WHERE <column> > <watermark>
    ORDER BY <column> ASC

The query is built as an Ibis expression, so each backend compiles it to
its own dialect (``TOP n`` on SQL Server, ``LIMIT n`` elsewhere).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import ibis
import pandas as pd

from batchload.lib.errors import BatchFetchError
from batchload.lib.watermark import Watermark, format_watermark

logger = logging.getLogger(__name__)

__all__ = ["Batch", "count_pending", "fetch_batch", "source_relation"]


@dataclass
class Batch:
    """One ordered, bounded slice of source rows.

    Rows are sorted ascending by ``column`` and all satisfy
    ``column > watermark``.
    """

    rows: pd.DataFrame
    column: str
    watermark: Watermark
    limit: int

    @property
    def row_count(self) -> int:
        return len(self.rows)

    @property
    def is_empty(self) -> bool:
        return self.rows.empty

    @property
    def is_final(self) -> bool:
        """Fewer rows than the limit: the source is exhausted."""
        return self.row_count < self.limit

    def __repr__(self) -> str:
        return (
            f"Batch(rows={self.row_count}, limit={self.limit}, "
            f"after={format_watermark(self.watermark)})"
        )


def source_relation(
    con: ibis.BaseBackend,
    *,
    table: Optional[str] = None,
    query: Optional[str] = None,
    schema: Optional[str] = None,
) -> ibis.Table:
    """Return the base relation: a named table or a SQL query."""
    if query:
        return con.sql(query)
    if not table:
        raise ValueError("either table or query is required")
    return con.table(table, database=schema) if schema else con.table(table)


def _pending(
    t: ibis.Table, column: str, watermark: Watermark, table: Optional[str] = None
) -> ibis.Table:
    if column not in t.columns:
        raise BatchFetchError(
            f"Ordering column '{column}' not found in source",
            watermark=watermark,
            source_table=table,
            details={"columns": ", ".join(t.columns)},
        )
    return t.filter(t[column] > watermark)


def fetch_batch(
    con: ibis.BaseBackend,
    column: str,
    watermark: Watermark,
    limit: int,
    *,
    table: Optional[str] = None,
    query: Optional[str] = None,
    schema: Optional[str] = None,
) -> Batch:
    """Fetch up to ``limit`` source rows with ``column > watermark``.

    A result with fewer than ``limit`` rows (including zero) means the
    source is exhausted relative to ``watermark``.

    Rows are only ordered by ``column``, so when the limit cuts through a
    run of equal values the rows left behind share the next watermark and
    the following strict ``>`` fetch skips them. ``column`` should be
    unique for new rows.

    Raises:
        BatchFetchError: If the source query fails
    """
    if limit < 1:
        raise ValueError(f"limit must be >= 1, got {limit}")

    try:
        t = source_relation(con, table=table, query=query, schema=schema)
        pending = _pending(t, column, watermark, table)
        expr = pending.order_by(pending[column].asc()).limit(limit)
        rows = expr.execute()
    except BatchFetchError:
        raise
    except Exception as exc:
        raise BatchFetchError(
            "Source query failed",
            watermark=watermark,
            source_table=table,
            cause=exc,
        ) from exc

    logger.debug(
        "Fetched %d rows from %s after %s (limit %d)",
        len(rows),
        table or "query",
        format_watermark(watermark),
        limit,
    )
    return Batch(rows=rows.reset_index(drop=True), column=column, watermark=watermark, limit=limit)


def count_pending(
    con: ibis.BaseBackend,
    column: str,
    watermark: Watermark,
    *,
    table: Optional[str] = None,
    query: Optional[str] = None,
    schema: Optional[str] = None,
) -> int:
    """Count source rows not yet loaded (``column > watermark``)."""
    try:
        t = source_relation(con, table=table, query=query, schema=schema)
        return int(_pending(t, column, watermark, table).count().execute())
    except BatchFetchError:
        raise
    except Exception as exc:
        raise BatchFetchError(
            "Could not count pending source rows",
            watermark=watermark,
            source_table=table,
            cause=exc,
        ) from exc
