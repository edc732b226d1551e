"""Structured exception hierarchy for incremental loads.

Provides specific exception types for the failure modes of a batched
load, with rich context (tables, watermark, iteration) for debugging.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

__all__ = [
    "LoadError",
    "BatchFetchError",
    "ConfigurationError",
    "ConnectionError",
    "IncrementalLoadError",
    "SinkWriteError",
    "ValidationError",
    "WatermarkError",
]


class LoadError(Exception):
    """Base exception for all load errors.

    Provides structured error information for debugging.
    """

    def __init__(
        self,
        message: str,
        *,
        source_table: Optional[str] = None,
        target_table: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        self.source_table = source_table
        self.target_table = target_table
        self.details = details or {}
        self.suggestion = suggestion

        parts = [message]

        if source_table or target_table:
            context = f"{source_table or '?'} -> {target_table or '?'}"
            parts.insert(0, f"[{context}]")

        if self.details:
            detail_lines = [f"  {k}: {v}" for k, v in self.details.items()]
            parts.append("\nDetails:")
            parts.extend(detail_lines)

        if suggestion:
            parts.append(f"\nSuggestion: {suggestion}")

        super().__init__("\n".join(parts) if len(parts) > 1 else message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for structured logging."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "source_table": self.source_table,
            "target_table": self.target_table,
            "details": self.details,
            "suggestion": self.suggestion,
        }


def _cause_details(details: Dict[str, Any], cause: Optional[BaseException]) -> None:
    if cause is not None:
        details["cause"] = str(cause)
        details["cause_type"] = type(cause).__name__


class ConfigurationError(LoadError):
    """Error in load configuration.

    Raised before any connection is opened, so no partial state exists.
    """

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        value: Any = None,
        **kwargs: Any,
    ) -> None:
        self.field = field
        self.value = value

        details = kwargs.pop("details", {})
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)

        super().__init__(message, details=details, **kwargs)


class ConnectionError(LoadError):
    """Error connecting to the source or sink backend."""

    def __init__(
        self,
        message: str,
        *,
        connection_name: Optional[str] = None,
        backend: Optional[str] = None,
        host: Optional[str] = None,
        cause: Optional[BaseException] = None,
        **kwargs: Any,
    ) -> None:
        self.connection_name = connection_name
        self.backend = backend
        self.host = host
        self.cause = cause

        details = kwargs.pop("details", {})
        if connection_name:
            details["connection_name"] = connection_name
        if backend:
            details["backend"] = backend
        if host:
            details["host"] = host
        _cause_details(details, cause)

        suggestion = kwargs.pop("suggestion", None)
        if not suggestion:
            suggestion = (
                "Check that the host is reachable and credentials are correct. "
                "Verify referenced environment variables are set."
            )

        super().__init__(message, details=details, suggestion=suggestion, **kwargs)


class BatchFetchError(LoadError):
    """Source query for the next batch failed."""

    def __init__(
        self,
        message: str,
        *,
        watermark: Any = None,
        iteration: Optional[int] = None,
        cause: Optional[BaseException] = None,
        **kwargs: Any,
    ) -> None:
        self.watermark = watermark
        self.iteration = iteration
        self.cause = cause

        details = kwargs.pop("details", {})
        if watermark is not None:
            details["watermark"] = str(watermark)
        if iteration is not None:
            details["iteration"] = iteration
        _cause_details(details, cause)

        super().__init__(message, details=details, **kwargs)


class SinkWriteError(LoadError):
    """Writing a batch to the sink failed.

    No part of the batch is assumed committed.
    """

    def __init__(
        self,
        message: str,
        *,
        mode: Optional[str] = None,
        row_count: Optional[int] = None,
        iteration: Optional[int] = None,
        cause: Optional[BaseException] = None,
        **kwargs: Any,
    ) -> None:
        self.mode = mode
        self.row_count = row_count
        self.iteration = iteration
        self.cause = cause

        details = kwargs.pop("details", {})
        if mode:
            details["mode"] = mode
        if row_count is not None:
            details["row_count"] = row_count
        if iteration is not None:
            details["iteration"] = iteration
        _cause_details(details, cause)

        super().__init__(message, details=details, **kwargs)


class WatermarkError(LoadError):
    """Watermark could not be derived, or moved backwards during a run."""

    def __init__(
        self,
        message: str,
        *,
        column: Optional[str] = None,
        previous: Any = None,
        current: Any = None,
        cause: Optional[BaseException] = None,
        **kwargs: Any,
    ) -> None:
        self.column = column
        self.previous = previous
        self.current = current
        self.cause = cause

        details = kwargs.pop("details", {})
        if column:
            details["column"] = column
        if previous is not None:
            details["previous_watermark"] = str(previous)
        if current is not None:
            details["current_watermark"] = str(current)
        _cause_details(details, cause)

        super().__init__(message, details=details, **kwargs)


class IncrementalLoadError(LoadError):
    """A load run stopped with a failure.

    Carries the last durably advanced watermark so operators know where
    the next run will resume.
    """

    def __init__(
        self,
        message: str,
        *,
        last_watermark: Any = None,
        iterations: int = 0,
        rows_loaded: int = 0,
        cause: Optional[BaseException] = None,
        **kwargs: Any,
    ) -> None:
        self.last_watermark = last_watermark
        self.iterations = iterations
        self.rows_loaded = rows_loaded
        self.cause = cause

        details = kwargs.pop("details", {})
        details["last_watermark"] = str(last_watermark)
        details["iterations"] = iterations
        details["rows_loaded"] = rows_loaded
        _cause_details(details, cause)

        suggestion = kwargs.pop("suggestion", None)
        if not suggestion:
            suggestion = (
                "Fix the underlying error and re-run the load. It resumes "
                "from the watermark derived from the target table."
            )

        super().__init__(message, details=details, suggestion=suggestion, **kwargs)


class ValidationError(LoadError):
    """Pre-flight validation found issues that prevent execution."""

    def __init__(
        self,
        message: str,
        *,
        issues: Optional[List[str]] = None,
        **kwargs: Any,
    ) -> None:
        self.issues = issues or []

        details = kwargs.pop("details", {})
        if issues:
            details["issue_count"] = len(issues)
            issue_lines = "\n".join(f"  - {issue}" for issue in issues)
            message = f"{message}\n\nIssues found:\n{issue_lines}"

        super().__init__(message, details=details, **kwargs)
