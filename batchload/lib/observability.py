"""Observability utilities for incremental loads.

Combines phase timing with structured logging helpers so a load run can
capture both operational metrics and JSON-friendly logs from the same
module.

Run lifecycle events go through structlog bound loggers that render into
stdlib logging, so one handler configuration (console or JSON) serves
library log lines and structured events alike.
"""

from __future__ import annotations

import json
import logging
import sys
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Generator, List, Optional, TextIO

import structlog

logger = logging.getLogger(__name__)

__all__ = [
    "ConsoleFormatter",
    "JSONFormatter",
    "LoadMetrics",
    "PhaseTimer",
    "configure_structlog",
    "get_structlog_logger",
    "setup_logging",
]

_RESERVED_ATTRS = frozenset(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {
    "message",
    "asctime",
}


def _extra_attrs(record: logging.LogRecord, exclude: Optional[List[str]] = None) -> Dict[str, Any]:
    """Attributes attached to a record via ``extra=``."""
    excluded = set(exclude or ())
    return {
        k: v
        for k, v in record.__dict__.items()
        if k not in _RESERVED_ATTRS and k not in excluded
    }


@dataclass
class PhaseTimer:
    """Timer tracking one execution of a named phase."""

    name: str
    start_time: float = field(default_factory=time.perf_counter)
    end_time: Optional[float] = None

    def stop(self) -> float:
        """Stop the timer and return the duration (seconds)."""
        self.end_time = time.perf_counter()
        return self.duration

    @property
    def duration(self) -> float:
        end = self.end_time if self.end_time is not None else time.perf_counter()
        return end - self.start_time


class LoadMetrics:
    """Timings and counters for a single load run.

    Phases (resolve, fetch, write, advance) repeat once per iteration;
    durations are accumulated per phase name.
    """

    def __init__(self, load_name: str):
        self.load_name = load_name
        self._start_time = time.perf_counter()
        self._end_time: Optional[float] = None
        self._phases: List[PhaseTimer] = []
        self._counters: Dict[str, int] = {}

    @contextmanager
    def time_phase(self, name: str) -> Generator[PhaseTimer, None, None]:
        """Context manager that tracks a phase duration."""
        timer = PhaseTimer(name=name)
        self._phases.append(timer)
        try:
            yield timer
        finally:
            timer.stop()

    def increment(self, name: str, value: int = 1) -> None:
        self._counters[name] = self._counters.get(name, 0) + value

    def finish(self) -> None:
        if self._end_time is None:
            self._end_time = time.perf_counter()

    @property
    def total_duration(self) -> float:
        end = self._end_time if self._end_time is not None else time.perf_counter()
        return end - self._start_time

    def phase_totals(self) -> Dict[str, float]:
        """Total seconds spent per phase across all iterations."""
        totals: Dict[str, float] = {}
        for phase in self._phases:
            totals[phase.name] = totals.get(phase.name, 0.0) + phase.duration
        return {name: round(seconds, 3) for name, seconds in totals.items()}

    def summary(self) -> Dict[str, Any]:
        """Return a summary dictionary of the tracked metrics."""
        return {
            "load": self.load_name,
            "total_seconds": round(self.total_duration, 3),
            "phases": self.phase_totals(),
            "counters": dict(self._counters),
        }


class JSONFormatter(logging.Formatter):
    """Formatter that renders log records as one JSON object per line.

    Useful for log aggregation systems like ELK, Splunk, or CloudWatch.
    """

    def __init__(
        self,
        include_fields: Optional[List[str]] = None,
        exclude_fields: Optional[List[str]] = None,
    ):
        super().__init__()
        self.include_fields = include_fields or []
        self.exclude_fields = exclude_fields or []

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.pathname:
            payload["source"] = {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            }

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        for field_name in self.include_fields:
            if hasattr(record, field_name):
                payload[field_name] = getattr(record, field_name)

        extra = _extra_attrs(record, self.exclude_fields)
        if extra:
            payload["extra"] = extra

        return json.dumps(payload, default=str)


class ConsoleFormatter(logging.Formatter):
    """Human-readable formatter that appends structured extras as key=value."""

    def __init__(self) -> None:
        super().__init__(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        extra = _extra_attrs(record)
        if not extra:
            return line
        pairs = " ".join(f"{k}={v}" for k, v in extra.items())
        head, sep, tail = line.partition("\n")
        return f"{head} {pairs}{sep}{tail}"


def configure_structlog() -> None:
    """Route structlog events into stdlib logging.

    Event keys become ``extra`` attributes on the LogRecord, which the
    console and JSON formatters render.
    """
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.stdlib.render_to_log_kwargs,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_structlog_logger(name: str) -> Any:
    """Return a structlog logger bound to the stdlib logger ``name``."""
    if not structlog.is_configured():
        configure_structlog()
    return structlog.get_logger(name)


def setup_logging(
    verbose: bool = False,
    json_format: bool = False,
    log_file: Optional[str] = None,
    level: Optional[str] = None,
    stream: Optional[TextIO] = None,
) -> None:
    """Configure the root logger with console or JSON output.

    Args:
        verbose: Enable debug-level logging (wins over ``level``)
        json_format: Use JSON output format (for log aggregation)
        log_file: Optional file path to write logs to
        level: Level name, e.g. "WARNING"; defaults to INFO
        stream: Console stream; defaults to stdout
    """
    if verbose:
        log_level = logging.DEBUG
    else:
        log_level = logging.getLevelName((level or "INFO").upper())
        if not isinstance(log_level, int):
            log_level = logging.INFO

    formatter: logging.Formatter = JSONFormatter() if json_format else ConsoleFormatter()

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(stream or sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(log_level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    configure_structlog()

    # ibis/duckdb/sqlglot are chatty at DEBUG
    for noisy in ("sqlglot", "urllib3", "fsspec"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
