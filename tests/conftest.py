"""Pytest configuration and fixtures."""

import logging
from typing import Any, Callable, Dict

import ibis
import pandas as pd
import pytest

from batchload.lib.config import LoadConfig
from batchload.lib.connections import close_all_connections
from tests.load_helpers import make_orders


def pytest_configure(config):
    config.addinivalue_line("markers", "slow: full-volume scenarios (deselect with -m 'not slow')")


@pytest.fixture(autouse=True)
def clean_connections():
    """Ensure connection registry is clean before and after each test."""
    close_all_connections()
    yield
    close_all_connections()


@pytest.fixture
def reset_logging():
    """Restore root logger handlers after tests that call setup_logging."""
    root = logging.getLogger()
    handlers = root.handlers[:]
    level = root.level
    yield
    for handler in root.handlers[:]:
        root.removeHandler(handler)
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


@pytest.fixture
def source_con():
    """In-memory DuckDB backend used as the source."""
    con = ibis.duckdb.connect()
    yield con
    con.disconnect()


@pytest.fixture
def sink_con():
    """Separate in-memory DuckDB backend used as the sink."""
    con = ibis.duckdb.connect()
    yield con
    con.disconnect()


@pytest.fixture
def load_orders(source_con) -> Callable[..., pd.DataFrame]:
    """Create (or replace) the ``orders`` source table with ``n`` rows."""

    def _load(n: int, **kwargs: Any) -> pd.DataFrame:
        frame = make_orders(n, **kwargs)
        source_con.create_table("orders", frame, overwrite=True)
        return frame

    return _load


@pytest.fixture
def make_config() -> Callable[..., LoadConfig]:
    """LoadConfig for orders -> orders_copy with small batches."""

    def _make(**overrides: Any) -> LoadConfig:
        values: Dict[str, Any] = {
            "source_table": "orders",
            "target_table": "orders_copy",
            "timestamp_column": "updated_at",
            "batch_size": 1000,
            "max_iterations": 50,
        }
        values.update(overrides)
        return LoadConfig(**values)

    return _make
