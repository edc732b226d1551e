"""Writing batches to the append-only target table.

Two modes:

- ``INITIALIZE`` drops and recreates the target from the batch. Used only
  for the first batch of a target's first-ever population.
- ``APPEND`` inserts the batch without touching existing rows. Appending
  to a target that does not exist yet creates it.

The writer does not deduplicate; the loop controller writes each batch
exactly once.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Union

import ibis
import pandas as pd

from batchload.lib.errors import SinkWriteError
from batchload.lib.fetch import Batch
from batchload.lib.watermark import table_exists

logger = logging.getLogger(__name__)

__all__ = ["WriteMode", "WriteResult", "choose_write_mode", "write_batch"]


class WriteMode(Enum):
    """How a batch lands in the target."""

    INITIALIZE = "initialize"  # drop and recreate
    APPEND = "append"  # insert only


@dataclass
class WriteResult:
    """Outcome of one write."""

    table: str
    mode: WriteMode
    rows_written: int
    created: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "table": self.table,
            "mode": self.mode.value,
            "rows_written": self.rows_written,
            "created": self.created,
        }


def choose_write_mode(iteration: int, recreate_target: bool) -> WriteMode:
    """INITIALIZE only for the first iteration of a recreate run."""
    if iteration == 0 and recreate_target:
        return WriteMode.INITIALIZE
    return WriteMode.APPEND


def write_batch(
    con: ibis.BaseBackend,
    table: str,
    rows: Union[Batch, pd.DataFrame],
    mode: WriteMode,
    *,
    schema: Optional[str] = None,
) -> WriteResult:
    """Persist ``rows`` to ``table``.

    The write is complete when this returns: a following watermark read
    must see the rows.

    Raises:
        SinkWriteError: If the backend rejects the write
    """
    frame = rows.rows if isinstance(rows, Batch) else rows
    row_count = len(frame)

    if row_count == 0:
        logger.warning("No rows to write to %s", table)
        return WriteResult(table=table, mode=mode, rows_written=0)

    location: Dict[str, Any] = {"database": schema} if schema else {}
    created = False

    try:
        if mode is WriteMode.INITIALIZE:
            if table_exists(con, table, schema=schema):
                logger.warning("Recreating target table %s; existing rows are discarded", table)
            con.create_table(table, frame, overwrite=True, **location)
            created = True
        elif table_exists(con, table, schema=schema):
            con.insert(table, frame, **location)
        else:
            logger.info("Target table %s does not exist; creating it", table)
            con.create_table(table, frame, **location)
            created = True
    except Exception as exc:
        raise SinkWriteError(
            "Write to target table failed",
            mode=mode.value,
            row_count=row_count,
            target_table=table,
            cause=exc,
        ) from exc

    logger.info("Wrote %d rows to %s (%s)", row_count, table, mode.value)
    return WriteResult(table=table, mode=mode, rows_written=row_count, created=created)
