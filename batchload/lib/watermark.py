"""Watermark derivation for incremental loads.

The watermark is the highest value of the ordering column already
written to the target table. It is always computed from the target
itself with ``MAX(column)``; there is no separate state file or
checkpoint table that could drift out of sync with the data.

A target table that does not exist yet is treated as empty: the
resolver returns the floor value instead of raising.
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any, Optional

import ibis
import pandas as pd

from batchload.lib.config import FLOOR_WATERMARK
from batchload.lib.errors import WatermarkError

logger = logging.getLogger(__name__)

__all__ = [
    "FLOOR_WATERMARK",
    "Watermark",
    "advance_watermark",
    "format_watermark",
    "resolve_watermark",
    "table_exists",
    "watermark_lt",
]

# A comparable scalar: datetime / pandas Timestamp for timestamp columns
Watermark = Any


def format_watermark(value: Watermark) -> str:
    """Render a watermark for logs and results."""
    if value is None:
        return "None"
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def _as_comparable(value: Watermark) -> Watermark:
    if isinstance(value, (datetime, pd.Timestamp)):
        ts = pd.Timestamp(value)
        return ts.tz_convert("UTC") if ts.tzinfo is not None else ts.tz_localize("UTC")
    return value


def watermark_lt(left: Watermark, right: Watermark) -> bool:
    """``left < right`` tolerant of naive vs tz-aware timestamps.

    Naive timestamps are taken as UTC.
    """
    return _as_comparable(left) < _as_comparable(right)


def table_exists(con: ibis.BaseBackend, table: str, *, schema: Optional[str] = None) -> bool:
    """Return True if ``table`` exists on ``con``.

    Connectivity errors propagate; only absence maps to False.
    """
    if schema:
        return table in con.list_tables(database=schema)
    return table in con.list_tables()


def _max_value(
    con: ibis.BaseBackend,
    table: str,
    column: str,
    schema: Optional[str],
) -> Optional[Watermark]:
    t = con.table(table, database=schema) if schema else con.table(table)
    if column not in t.columns:
        raise WatermarkError(
            f"Column '{column}' not found in target table",
            column=column,
            target_table=table,
            details={"columns": ", ".join(t.columns)},
        )

    value = t[column].max().execute()
    if value is None or pd.isna(value):
        return None
    return value


def resolve_watermark(
    con: ibis.BaseBackend,
    table: str,
    column: str,
    *,
    floor: Watermark = FLOOR_WATERMARK,
    schema: Optional[str] = None,
) -> Watermark:
    """Derive the resume point from the target table.

    Args:
        con: Sink connection
        table: Target table name
        column: Ordering/watermark column
        floor: Value returned when the target is missing or empty
        schema: Optional schema/database qualifier

    Returns:
        ``MAX(column)`` over the target, or ``floor``

    Raises:
        WatermarkError: If the aggregate query fails
    """
    if not table_exists(con, table, schema=schema):
        logger.info(
            "Target table %s does not exist yet; starting from floor watermark %s",
            table,
            format_watermark(floor),
        )
        return floor

    try:
        value = _max_value(con, table, column, schema)
    except WatermarkError:
        raise
    except Exception as exc:
        raise WatermarkError(
            "Could not read watermark from target table",
            column=column,
            target_table=table,
            cause=exc,
        ) from exc

    if value is None:
        logger.info(
            "Target table %s is empty; starting from floor watermark %s",
            table,
            format_watermark(floor),
        )
        return floor

    logger.info("Resolved watermark for %s.%s: %s", table, column, format_watermark(value))
    return value


def advance_watermark(
    con: ibis.BaseBackend,
    table: str,
    column: str,
    *,
    previous: Optional[Watermark] = None,
    schema: Optional[str] = None,
) -> Watermark:
    """Recompute the watermark from the target after a write.

    Reading back from the target (instead of taking the batch maximum in
    memory) means the returned value always reflects durable state.

    Args:
        previous: Watermark before the write; the new value must not be lower

    Raises:
        WatermarkError: If the target is missing or empty after a write, the
            aggregate fails, or the watermark moved backwards (another writer
            or an external reset touched the target mid-run)
    """
    try:
        exists = table_exists(con, table, schema=schema)
        value = _max_value(con, table, column, schema) if exists else None
    except WatermarkError:
        raise
    except Exception as exc:
        raise WatermarkError(
            "Could not read watermark from target table",
            column=column,
            previous=previous,
            target_table=table,
            cause=exc,
        ) from exc

    if value is None:
        raise WatermarkError(
            "Target table holds no rows after a write",
            column=column,
            previous=previous,
            target_table=table,
            suggestion="The sink must provide read-after-write consistency.",
        )

    if previous is not None and watermark_lt(value, previous):
        raise WatermarkError(
            "Watermark moved backwards",
            column=column,
            previous=previous,
            current=value,
            target_table=table,
            suggestion=(
                "Another process may be writing to or resetting the target "
                "table. Only one load may run against a target at a time."
            ),
        )

    logger.debug("Advanced watermark for %s.%s to %s", table, column, format_watermark(value))
    return value
