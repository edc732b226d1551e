"""Loop controller for batched, watermark-driven incremental loads.

One run moves through::

    INIT --> ITERATING -+-> DONE     (source exhausted)
                        +-> CAPPED   (max_iterations reached, more may remain)
                        +-> FAILED   (any error; nothing is rolled back)

Each iteration is Fetch -> Write -> Advance, strictly sequential. The
watermark is threaded through the loop as a plain value: every step takes
the previous watermark and returns the next one, re-derived from the
target table after the write.

Because the resume point always comes from the target's contents, a
failed or capped run needs no recovery step: running the load again
continues where the target left off.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional

import ibis

from batchload.lib.config import LoadConfig
from batchload.lib.errors import IncrementalLoadError
from batchload.lib.fetch import Batch, fetch_batch
from batchload.lib.observability import LoadMetrics, get_structlog_logger
from batchload.lib.sink import WriteMode, choose_write_mode, write_batch
from batchload.lib.watermark import (
    Watermark,
    advance_watermark,
    format_watermark,
    resolve_watermark,
)

logger = logging.getLogger(__name__)

__all__ = [
    "BatchOutcome",
    "IncrementalLoad",
    "LoadResult",
    "LoadState",
    "StepResult",
    "StopReason",
    "load_step",
]


class LoadState(Enum):
    """Where a run is in its lifecycle."""

    INIT = "init"
    ITERATING = "iterating"
    DONE = "done"
    CAPPED = "capped"
    FAILED = "failed"


class StopReason(Enum):
    """Why a run stopped."""

    EXHAUSTED = "exhausted"
    CAPPED = "capped"
    FAILED = "failed"


_TERMINAL_STATE = {
    StopReason.EXHAUSTED: LoadState.DONE,
    StopReason.CAPPED: LoadState.CAPPED,
    StopReason.FAILED: LoadState.FAILED,
}


@dataclass
class BatchOutcome:
    """Record of one completed iteration."""

    iteration: int
    rows: int
    mode: WriteMode
    watermark_before: Watermark
    watermark_after: Watermark
    elapsed_seconds: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "iteration": self.iteration,
            "rows": self.rows,
            "mode": self.mode.value,
            "watermark_before": format_watermark(self.watermark_before),
            "watermark_after": format_watermark(self.watermark_after),
            "elapsed_seconds": round(self.elapsed_seconds, 3),
        }


@dataclass
class StepResult:
    """Output of one Fetch -> Write -> Advance step.

    ``outcome`` is None when the fetch returned no rows; nothing was
    written and ``watermark`` is unchanged.
    """

    batch: Batch
    watermark: Watermark
    outcome: Optional[BatchOutcome] = None


@dataclass
class LoadResult:
    """Outcome of a run: rows loaded, final watermark and stop reason."""

    load_name: str
    stop_reason: StopReason
    rows_loaded: int
    final_watermark: Optional[Watermark]
    initial_watermark: Optional[Watermark] = None
    iterations: int = 0
    batches: List[BatchOutcome] = field(default_factory=list)
    error: Optional[IncrementalLoadError] = None
    timing: Dict[str, Any] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.stop_reason is not StopReason.FAILED

    @property
    def more_data_may_remain(self) -> bool:
        return self.stop_reason is not StopReason.EXHAUSTED

    def raise_for_failure(self) -> "LoadResult":
        """Raise the captured error if the run failed, else return self."""
        if self.error is not None:
            raise self.error
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "load": self.load_name,
            "stop_reason": self.stop_reason.value,
            "rows_loaded": self.rows_loaded,
            "iterations": self.iterations,
            "initial_watermark": format_watermark(self.initial_watermark),
            "final_watermark": format_watermark(self.final_watermark),
            "batches": [b.to_dict() for b in self.batches],
            "error": self.error.to_dict() if self.error else None,
            "timing": self.timing,
        }

    def __repr__(self) -> str:
        return (
            f"LoadResult({self.stop_reason.value}, rows={self.rows_loaded}, "
            f"iterations={self.iterations}, "
            f"watermark={format_watermark(self.final_watermark)})"
        )


def load_step(
    config: LoadConfig,
    source: ibis.BaseBackend,
    sink: ibis.BaseBackend,
    watermark: Watermark,
    iteration: int,
    *,
    metrics: Optional[LoadMetrics] = None,
) -> StepResult:
    """Run one Fetch -> Write -> Advance step.

    Args:
        watermark: Watermark after the previous step (or the resolved one)
        iteration: Number of iterations already completed in this run

    Raises:
        BatchFetchError, SinkWriteError, WatermarkError
    """
    metrics = metrics or LoadMetrics(config.name or "")
    started = time.perf_counter()

    with metrics.time_phase("fetch"):
        batch = fetch_batch(
            source,
            config.timestamp_column,
            watermark,
            config.batch_size,
            table=config.source_table,
            query=config.query,
            schema=config.source.schema_name,
        )

    if batch.is_empty:
        return StepResult(batch=batch, watermark=watermark)

    mode = choose_write_mode(iteration, config.recreate_target)
    with metrics.time_phase("write"):
        written = write_batch(sink, config.target_table, batch, mode, schema=config.sink.schema_name)

    with metrics.time_phase("advance"):
        new_watermark = advance_watermark(
            sink,
            config.target_table,
            config.timestamp_column,
            previous=watermark,
            schema=config.sink.schema_name,
        )

    outcome = BatchOutcome(
        iteration=iteration + 1,
        rows=written.rows_written,
        mode=mode,
        watermark_before=watermark,
        watermark_after=new_watermark,
        elapsed_seconds=time.perf_counter() - started,
    )
    return StepResult(batch=batch, watermark=new_watermark, outcome=outcome)


class IncrementalLoad:
    """Drives one run of a batched incremental load.

    Example:
        load = IncrementalLoad(config, source_con, sink_con)
        result = load.run()
        if result.stop_reason is StopReason.CAPPED:
            ...  # schedule another run

    An instance runs once. Create a new one for the next run; it will
    resume from the target's current watermark.
    """

    def __init__(
        self,
        config: LoadConfig,
        source: ibis.BaseBackend,
        sink: ibis.BaseBackend,
    ):
        self.config = config
        self.source = source
        self.sink = sink
        self.state = LoadState.INIT
        self.metrics = LoadMetrics(config.name or "")
        self.result: Optional[LoadResult] = None

        self._log = get_structlog_logger(__name__).bind(
            load=config.name,
            source_table=config.source_label,
            target_table=config.target_table,
        )
        self._initial: Optional[Watermark] = None
        self._watermark: Optional[Watermark] = None
        self._batches: List[BatchOutcome] = []
        self._rows_loaded = 0

    @property
    def iterations(self) -> int:
        return len(self._batches)

    def _starting_watermark(self) -> Watermark:
        if self.config.recreate_target:
            logger.info(
                "recreate_target is set; %s will be rebuilt from floor watermark %s",
                self.config.target_table,
                format_watermark(self.config.floor_watermark),
            )
            return self.config.floor_watermark
        return resolve_watermark(
            self.sink,
            self.config.target_table,
            self.config.timestamp_column,
            floor=self.config.floor_watermark,
            schema=self.config.sink.schema_name,
        )

    def _finish(self, reason: StopReason, cause: Optional[BaseException] = None) -> LoadResult:
        self.state = _TERMINAL_STATE[reason]
        self.metrics.increment("rows_loaded", self._rows_loaded)
        self.metrics.increment("iterations", self.iterations)
        self.metrics.finish()

        error = None
        if cause is not None:
            error = IncrementalLoadError(
                f"Incremental load stopped after {self.iterations} iteration(s)",
                last_watermark=format_watermark(self._watermark),
                iterations=self.iterations,
                rows_loaded=self._rows_loaded,
                cause=cause,
                source_table=self.config.source_label,
                target_table=self.config.target_table,
            )
            error.__cause__ = cause

        self.result = LoadResult(
            load_name=self.config.name or "",
            stop_reason=reason,
            rows_loaded=self._rows_loaded,
            final_watermark=self._watermark,
            initial_watermark=self._initial,
            iterations=self.iterations,
            batches=list(self._batches),
            error=error,
            timing=self.metrics.summary(),
        )
        return self.result

    def _fail(self, exc: Exception) -> None:
        result = self._finish(StopReason.FAILED, exc)
        logger.debug("Load %s failed", self.config.name, exc_info=exc)
        self._log.error(
            "load_failed",
            error=str(exc).splitlines()[0],
            error_type=type(exc).__name__,
            iterations=result.iterations,
            rows_loaded=result.rows_loaded,
            last_watermark=format_watermark(result.final_watermark),
        )

    def iter_batches(self) -> Iterator[BatchOutcome]:
        """Run the load, yielding after each completed iteration.

        The run's LoadResult is available on ``self.result`` once the
        iterator is exhausted.
        """
        if self.state is not LoadState.INIT:
            raise RuntimeError("IncrementalLoad instances run once; create a new one")

        config = self.config
        try:
            with self.metrics.time_phase("resolve"):
                self._watermark = self._starting_watermark()
        except Exception as exc:
            self._fail(exc)
            return

        self._initial = self._watermark
        self.state = LoadState.ITERATING
        self._log.info(
            "load_started",
            watermark=format_watermark(self._watermark),
            batch_size=config.batch_size,
            max_iterations=config.max_iterations,
            recreate_target=config.recreate_target,
        )

        while True:
            if self.iterations >= config.max_iterations:
                result = self._finish(StopReason.CAPPED)
                self._log.warning(
                    "load_capped",
                    iterations=result.iterations,
                    rows_loaded=result.rows_loaded,
                    final_watermark=format_watermark(result.final_watermark),
                    hint="more data may remain; run the load again",
                )
                return

            try:
                step = load_step(
                    config,
                    self.source,
                    self.sink,
                    self._watermark,
                    self.iterations,
                    metrics=self.metrics,
                )
            except Exception as exc:
                self._fail(exc)
                return

            if step.outcome is not None:
                self._watermark = step.watermark
                self._rows_loaded += step.outcome.rows
                self._batches.append(step.outcome)
                self._log.info(
                    "batch_loaded",
                    iteration=step.outcome.iteration,
                    rows=step.outcome.rows,
                    mode=step.outcome.mode.value,
                    watermark=format_watermark(step.watermark),
                )
                yield step.outcome

            if step.batch.is_final:
                result = self._finish(StopReason.EXHAUSTED)
                self._log.info(
                    "load_completed",
                    iterations=result.iterations,
                    rows_loaded=result.rows_loaded,
                    final_watermark=format_watermark(result.final_watermark),
                )
                return

    def run(self) -> LoadResult:
        """Run the load to a terminal state and return its result."""
        for _ in self.iter_batches():
            pass
        assert self.result is not None
        return self.result
