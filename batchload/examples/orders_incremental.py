"""
Example Load: Orders Incremental
================================
Demonstrates a Python-defined incremental load between two DuckDB files.

This example shows:
- Building a LoadConfig in Python instead of YAML
- Whole-run retry with @with_retry (safe: each attempt resumes from the target)
- Job-level logging and timing with @load_job
- Re-running after a capped run to drain the rest of the source

Setup:
    python -c "from batchload.examples.orders_incremental import create_sample_data; create_sample_data()"

Run:
    python -m batchload.examples.orders_incremental
"""

from datetime import datetime, timedelta
from pathlib import Path

import ibis
import pandas as pd

from batchload.lib.config import ConnectionConfig, LoadConfig
from batchload.lib.controller import LoadResult, StopReason
from batchload.lib.observability import setup_logging
from batchload.lib.resilience import with_retry
from batchload.lib.runner import load_job, run_incremental_load

OUTPUT_DIR = Path("./output")
SOURCE_DB = OUTPUT_DIR / "orders_source.duckdb"
WAREHOUSE_DB = OUTPUT_DIR / "warehouse.duckdb"

# ============================================
# LOAD: orders -> orders_copy, 10k rows per batch
# ============================================

config = LoadConfig(
    name="orders_incremental",
    source_table="orders",
    target_table="orders_copy",
    timestamp_column="updated_at",
    batch_size=10_000,
    max_iterations=3,
    source=ConnectionConfig(backend="duckdb", path=str(SOURCE_DB)),
    sink=ConnectionConfig(backend="duckdb", path=str(WAREHOUSE_DB)),
)


def create_sample_data(rows: int = 45_000) -> Path:
    """Write ``rows`` orders with strictly increasing updated_at."""
    OUTPUT_DIR.mkdir(parents=True, exist_ok=True)
    start = datetime(2025, 1, 1)
    orders = pd.DataFrame(
        {
            "order_id": range(1, rows + 1),
            "customer_id": [i % 500 for i in range(rows)],
            "amount": [round(10 + (i % 97) * 1.5, 2) for i in range(rows)],
            "updated_at": [start + timedelta(seconds=i) for i in range(rows)],
        }
    )
    con = ibis.duckdb.connect(str(SOURCE_DB))
    con.create_table("orders", orders, overwrite=True)
    con.disconnect()
    return SOURCE_DB


@with_retry(max_attempts=3, backoff_seconds=2.0)
def load_once() -> LoadResult:
    """One run; a failed run raises so the decorator retries it."""
    return run_incremental_load(config).raise_for_failure()


@load_job("examples.orders_incremental")
def run() -> LoadResult:
    """Run until the source is exhausted, one capped run at a time."""
    result = load_once()
    while result.stop_reason is StopReason.CAPPED:
        result = load_once()
    return result


if __name__ == "__main__":
    setup_logging()
    if not SOURCE_DB.exists():
        create_sample_data()
    print(run())
