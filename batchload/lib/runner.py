"""Entry points for running an incremental load.

``run_incremental_load`` is the single invocation surface: it opens the
source and sink connections from config, drives one run of the loop
controller and closes the connections again.

The ``@load_job`` decorator adds logging and timing to user-defined load
functions, mirroring how scheduled jobs are usually wrapped.
"""

from __future__ import annotations

import logging
import math
import time
from functools import wraps
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar, Union

import ibis

from batchload.lib.config import LoadConfig
from batchload.lib.connections import close_connection, get_connection
from batchload.lib.controller import IncrementalLoad, LoadResult
from batchload.lib.errors import IncrementalLoadError
from batchload.lib.fetch import count_pending
from batchload.lib.observability import get_structlog_logger
from batchload.lib.resilience import RetryConfig, retry_operation
from batchload.lib.watermark import format_watermark, resolve_watermark, table_exists

logger = logging.getLogger(__name__)

__all__ = ["load_job", "plan_load", "run_incremental_load"]

F = TypeVar("F", bound=Callable[..., Any])


def _open(config: LoadConfig) -> Tuple[ibis.BaseBackend, ibis.BaseBackend]:
    source = get_connection(config.source)
    sink = get_connection(config.sink)
    return source, sink


def _close(config: LoadConfig) -> None:
    close_connection(config.source.connection_key)
    close_connection(config.sink.connection_key)


def _plan(config: LoadConfig, source: ibis.BaseBackend, sink: ibis.BaseBackend) -> Dict[str, Any]:
    if config.recreate_target:
        watermark = config.floor_watermark
    else:
        watermark = resolve_watermark(
            sink,
            config.target_table,
            config.timestamp_column,
            floor=config.floor_watermark,
            schema=config.sink.schema_name,
        )

    pending = count_pending(
        source,
        config.timestamp_column,
        watermark,
        table=config.source_table,
        query=config.query,
        schema=config.source.schema_name,
    )
    needed = math.ceil(pending / config.batch_size)
    run_capacity = config.batch_size * config.max_iterations

    return {
        "load": config.name,
        "source": config.source_label,
        "target": config.target_table,
        "target_exists": table_exists(sink, config.target_table, schema=config.sink.schema_name),
        "watermark": format_watermark(watermark),
        "pending_rows": pending,
        "planned_iterations": min(needed, config.max_iterations),
        "rows_this_run": min(pending, run_capacity),
        "will_cap": pending >= run_capacity,
        "recreate_target": config.recreate_target,
    }


def plan_load(config: LoadConfig) -> Dict[str, Any]:
    """Describe what a run would do without writing anything.

    Reads the current watermark from the sink and counts pending source
    rows. ``will_cap`` is True when one run cannot drain the source; a
    source holding exactly ``batch_size * max_iterations`` pending rows
    also caps, since the run stops before the empty fetch that would confirm
    exhaustion.

    Connections are opened through the registry and left open.
    """
    source, sink = _open(config)
    plan = _plan(config, source, sink)
    logger.info(
        "Planned %s: %d pending rows after %s, %d iteration(s)%s",
        config.name,
        plan["pending_rows"],
        plan["watermark"],
        plan["planned_iterations"],
        " (will cap)" if plan["will_cap"] else "",
    )
    return plan


def _run_with_retry(
    config: LoadConfig,
    source: ibis.BaseBackend,
    sink: ibis.BaseBackend,
    retry: RetryConfig,
) -> LoadResult:
    attempts: List[LoadResult] = []
    # A retry must resume from the rows the failed attempt already wrote.
    resume = config.model_copy(update={"recreate_target": False})

    def attempt() -> LoadResult:
        result = IncrementalLoad(resume if attempts else config, source, sink).run()
        attempts.append(result)
        return result.raise_for_failure()

    try:
        return retry_operation(attempt, retry, f"load {config.name}")
    except IncrementalLoadError:
        return attempts[-1]


def run_incremental_load(
    config: LoadConfig,
    *,
    dry_run: bool = False,
    close_connections: bool = True,
    retry: Optional[RetryConfig] = None,
) -> Union[LoadResult, Dict[str, Any]]:
    """Run one incremental load described by ``config``.

    Args:
        config: Validated load configuration
        dry_run: Return the plan from ``plan_load`` instead of loading
        close_connections: Close the source and sink connections afterwards
        retry: Re-run the whole load on failure. Each attempt resumes from
            the watermark in the target, so rows are never loaded twice.
            Only the first attempt honours ``recreate_target``.

    Returns:
        LoadResult for a real run; the plan dict (with ``dry_run: True``)
        for a dry run. A failed run is returned, not raised; call
        ``result.raise_for_failure()`` to raise.

    Raises:
        ConfigurationError: A connection parameter is unusable
        ConnectionError: The source or sink could not be opened

    Example:
        config = load_config("orders.yaml")
        result = run_incremental_load(config)
        print(result.rows_loaded, result.stop_reason.value)
    """
    try:
        source, sink = _open(config)

        if dry_run:
            plan = _plan(config, source, sink)
            logger.info("Dry run for %s: nothing written", config.name)
            return {"dry_run": True, **plan}

        if retry is not None and retry.max_attempts > 1:
            return _run_with_retry(config, source, sink, retry)
        return IncrementalLoad(config, source, sink).run()
    finally:
        if close_connections:
            _close(config)


def load_job(
    name: str,
    *,
    log_level: int = logging.INFO,
) -> Callable[[F], F]:
    """Load job decorator with logging and timing.

    Wraps a function that runs one or more loads. When the function
    returns a LoadResult its outcome is logged; a dict result gets
    ``_elapsed_seconds`` and ``_job`` keys added.

    Args:
        name: Name of the job for logging
        log_level: Logging level for job lifecycle messages

    Example:
        @load_job("sales.orders")
        def run() -> LoadResult:
            return run_incremental_load(load_config("orders.yaml"))
    """

    def decorator(fn: F) -> F:
        @wraps(fn)
        def wrapper(*args: Any, dry_run: bool = False, **kwargs: Any) -> Any:
            job_logger = get_structlog_logger(f"batchload.jobs.{name}")

            if dry_run:
                job_logger.log(log_level, "load_job_dry_run", job=name)
                return {"dry_run": True, "job": name}

            start = time.time()
            job_logger.log(log_level, "load_job_started", job=name)

            try:
                result = fn(*args, **kwargs)
            except Exception as e:
                job_logger.error(
                    "load_job_failed",
                    job=name,
                    elapsed_seconds=round(time.time() - start, 2),
                    error=str(e).splitlines()[0],
                )
                raise

            elapsed = time.time() - start
            outcome: Dict[str, Any] = {}
            if isinstance(result, LoadResult):
                outcome = {
                    "stop_reason": result.stop_reason.value,
                    "rows_loaded": result.rows_loaded,
                }
            elif isinstance(result, dict):
                result["_elapsed_seconds"] = elapsed
                result["_job"] = name

            job_logger.log(
                log_level,
                "load_job_completed",
                job=name,
                elapsed_seconds=round(elapsed, 2),
                **outcome,
            )
            return result

        return wrapper  # type: ignore

    return decorator
