"""Incremental load library modules.

This package contains the building blocks of a batched, watermark-driven
incremental load over Ibis backends: watermark resolution, batch
fetching, sink writes and the loop controller that ties them together.
"""

from batchload.lib.config import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_MAX_ITERATIONS,
    FLOOR_WATERMARK,
    ConnectionConfig,
    LoadConfig,
    LoadSettings,
    build_config,
    load_config,
)
from batchload.lib.connections import (
    close_all_connections,
    close_connection,
    get_connection,
    list_connections,
    register_connection,
)
from batchload.lib.controller import (
    BatchOutcome,
    IncrementalLoad,
    LoadResult,
    LoadState,
    StopReason,
    load_step,
)
from batchload.lib.env import expand_env_vars, expand_options, load_env_file
from batchload.lib.errors import (
    BatchFetchError,
    ConfigurationError,
    ConnectionError,
    IncrementalLoadError,
    LoadError,
    SinkWriteError,
    ValidationError,
    WatermarkError,
)
from batchload.lib.fetch import Batch, count_pending, fetch_batch
from batchload.lib.observability import LoadMetrics, get_structlog_logger, setup_logging
from batchload.lib.resilience import RetryConfig, retry_operation, with_retry
from batchload.lib.runner import load_job, plan_load, run_incremental_load
from batchload.lib.sink import WriteMode, WriteResult, choose_write_mode, write_batch
from batchload.lib.validate import (
    ValidationIssue,
    ValidationSeverity,
    format_validation_report,
    validate_and_raise,
    validate_load,
)
from batchload.lib.watermark import advance_watermark, resolve_watermark, table_exists

__all__ = [
    # Config
    "DEFAULT_BATCH_SIZE",
    "DEFAULT_MAX_ITERATIONS",
    "FLOOR_WATERMARK",
    "ConnectionConfig",
    "LoadConfig",
    "LoadSettings",
    "build_config",
    "load_config",
    # Connections
    "close_all_connections",
    "close_connection",
    "get_connection",
    "list_connections",
    "register_connection",
    # Controller
    "BatchOutcome",
    "IncrementalLoad",
    "LoadResult",
    "LoadState",
    "StopReason",
    "load_step",
    # Env
    "expand_env_vars",
    "expand_options",
    "load_env_file",
    # Errors
    "BatchFetchError",
    "ConfigurationError",
    "ConnectionError",
    "IncrementalLoadError",
    "LoadError",
    "SinkWriteError",
    "ValidationError",
    "WatermarkError",
    # Fetch
    "Batch",
    "count_pending",
    "fetch_batch",
    # Observability
    "LoadMetrics",
    "get_structlog_logger",
    "setup_logging",
    # Resilience
    "RetryConfig",
    "retry_operation",
    "with_retry",
    # Runner
    "load_job",
    "plan_load",
    "run_incremental_load",
    # Sink
    "WriteMode",
    "WriteResult",
    "choose_write_mode",
    "write_batch",
    # Validate
    "ValidationIssue",
    "ValidationSeverity",
    "format_validation_report",
    "validate_and_raise",
    "validate_load",
    # Watermark
    "advance_watermark",
    "resolve_watermark",
    "table_exists",
]
