"""Pre-flight validation for incremental loads.

Catches configuration and connectivity problems before a run starts and
reports them with a suggested fix. Pydantic already rejects malformed
configuration in ``batchload.lib.config``; the checks here look at the
backends themselves: does the source table exist, is the ordering column
there and temporal, does the target agree with the source.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

import ibis

from batchload.lib.config import LoadConfig
from batchload.lib.connections import get_connection
from batchload.lib.errors import ValidationError
from batchload.lib.fetch import source_relation
from batchload.lib.watermark import table_exists

logger = logging.getLogger(__name__)

__all__ = [
    "ValidationIssue",
    "ValidationSeverity",
    "format_validation_report",
    "validate_and_raise",
    "validate_load",
]

# Above this, one batch may not fit comfortably in memory
LARGE_BATCH_SIZE = 5_000_000


class ValidationSeverity(Enum):
    """Severity of validation issues."""

    ERROR = "error"  # Will cause the load to fail
    WARNING = "warning"  # May cause issues, but the load can run
    INFO = "info"  # Worth knowing, nothing to fix


@dataclass
class ValidationIssue:
    """A validation issue found in configuration or on a backend."""

    severity: ValidationSeverity
    message: str
    field: str
    suggestion: Optional[str] = None

    def __str__(self) -> str:
        result = f"[{self.severity.name}] {self.field}: {self.message}"
        if self.suggestion:
            result += f"\n  Fix: {self.suggestion}"
        return result


def _static_issues(config: LoadConfig) -> List[ValidationIssue]:
    issues: List[ValidationIssue] = []

    same_location = config.source.connection_key == config.sink.connection_key
    if same_location and config.source_table == config.target_table:
        issues.append(
            ValidationIssue(
                severity=ValidationSeverity.ERROR,
                field="target_table",
                message="Source and target are the same table",
                suggestion="Point target_table at a different table",
            )
        )

    if config.recreate_target:
        issues.append(
            ValidationIssue(
                severity=ValidationSeverity.WARNING,
                field="recreate_target",
                message=f"Existing rows in {config.target_table} will be discarded",
                suggestion="Only set recreate_target for a target's first population",
            )
        )

    if config.batch_size > LARGE_BATCH_SIZE:
        issues.append(
            ValidationIssue(
                severity=ValidationSeverity.WARNING,
                field="batch_size",
                message=f"batch_size {config.batch_size:,} rows is held in memory per iteration",
                suggestion="Lower batch_size and raise max_iterations",
            )
        )

    return issues


def _connect(config: LoadConfig, side: str, issues: List[ValidationIssue]) -> Optional[ibis.BaseBackend]:
    conn_config = getattr(config, side)
    try:
        return get_connection(conn_config)
    except Exception as e:
        issues.append(
            ValidationIssue(
                severity=ValidationSeverity.ERROR,
                field=side,
                message=f"Cannot connect to {conn_config.display}: {str(e).splitlines()[0]}",
                suggestion="Check host, credentials and that the backend extra is installed",
            )
        )
        return None


def _source_issues(config: LoadConfig, con: ibis.BaseBackend) -> List[ValidationIssue]:
    issues: List[ValidationIssue] = []
    schema = config.source.schema_name

    if config.source_table and not table_exists(con, config.source_table, schema=schema):
        issues.append(
            ValidationIssue(
                severity=ValidationSeverity.ERROR,
                field="source_table",
                message=f"Source table '{config.source_table}' not found on {config.source.display}",
                suggestion="Check the table name and source.schema_name",
            )
        )
        return issues

    try:
        t = source_relation(con, table=config.source_table, query=config.query, schema=schema)
        columns = t.schema()
    except Exception as e:
        issues.append(
            ValidationIssue(
                severity=ValidationSeverity.ERROR,
                field="query" if config.query else "source_table",
                message=f"Source relation cannot be read: {str(e).splitlines()[0]}",
            )
        )
        return issues

    column = config.timestamp_column
    if column not in columns.names:
        issues.append(
            ValidationIssue(
                severity=ValidationSeverity.ERROR,
                field="timestamp_column",
                message=f"Column '{column}' not found in source",
                suggestion=f"Available columns: {', '.join(columns.names)}",
            )
        )
    elif not columns[column].is_temporal():
        issues.append(
            ValidationIssue(
                severity=ValidationSeverity.ERROR,
                field="timestamp_column",
                message=f"Column '{column}' is {columns[column]}, not a timestamp",
                suggestion="Use a timestamp column that only ever increases for new rows",
            )
        )
    elif columns[column].nullable:
        issues.append(
            ValidationIssue(
                severity=ValidationSeverity.INFO,
                field="timestamp_column",
                message=f"Column '{column}' is nullable; rows with NULL are never loaded",
            )
        )

    return issues


def _sink_issues(config: LoadConfig, con: ibis.BaseBackend) -> List[ValidationIssue]:
    issues: List[ValidationIssue] = []
    schema = config.sink.schema_name

    if not table_exists(con, config.target_table, schema=schema):
        issues.append(
            ValidationIssue(
                severity=ValidationSeverity.INFO,
                field="target_table",
                message=f"Target table '{config.target_table}' does not exist yet",
                suggestion="It is created from the first batch",
            )
        )
        return issues

    t = con.table(config.target_table, database=schema) if schema else con.table(config.target_table)
    if config.timestamp_column not in t.columns:
        issues.append(
            ValidationIssue(
                severity=ValidationSeverity.ERROR,
                field="target_table",
                message=f"Target table has no '{config.timestamp_column}' column",
                suggestion="Use recreate_target to rebuild it, or pick another target",
            )
        )

    return issues


def validate_load(config: LoadConfig, *, check_connectivity: bool = True) -> List[ValidationIssue]:
    """Validate a load configuration.

    Returns a list of validation issues. Empty list means valid.

    Args:
        config: LoadConfig to validate
        check_connectivity: Also open the source and sink and inspect
            their tables

    Example:
        >>> issues = validate_load(config)
        >>> if issues:
        ...     print(format_validation_report(issues))
    """
    issues = _static_issues(config)
    if not check_connectivity:
        return issues

    source = _connect(config, "source", issues)
    if source is not None:
        issues.extend(_source_issues(config, source))

    sink = _connect(config, "sink", issues)
    if sink is not None:
        try:
            issues.extend(_sink_issues(config, sink))
        except Exception as e:
            issues.append(
                ValidationIssue(
                    severity=ValidationSeverity.ERROR,
                    field="target_table",
                    message=f"Target table cannot be inspected: {str(e).splitlines()[0]}",
                )
            )

    return issues


def validate_and_raise(config: LoadConfig, *, check_connectivity: bool = True) -> None:
    """Validate configuration and raise exception if errors found.

    Warnings and notes are logged; errors are collected into one
    ValidationError.

    Raises:
        ValidationError: If any validation errors are found
    """
    issues = validate_load(config, check_connectivity=check_connectivity)

    errors = [i for i in issues if i.severity == ValidationSeverity.ERROR]
    for issue in issues:
        if issue.severity == ValidationSeverity.WARNING:
            logger.warning(str(issue))
        elif issue.severity == ValidationSeverity.INFO:
            logger.info(str(issue))

    if errors:
        raise ValidationError(
            "Configuration validation failed",
            issues=[str(e) for e in errors],
            source_table=config.source_label,
            target_table=config.target_table,
        )


def format_validation_report(issues: List[ValidationIssue]) -> str:
    """Format validation issues as a readable report.

    Args:
        issues: List of validation issues

    Returns:
        Formatted string report
    """
    if not issues:
        return "Configuration is valid."

    sections = [
        (ValidationSeverity.ERROR, "error(s)"),
        (ValidationSeverity.WARNING, "warning(s)"),
        (ValidationSeverity.INFO, "note(s)"),
    ]

    lines = []
    for severity, label in sections:
        matching = [i for i in issues if i.severity == severity]
        if not matching:
            continue
        lines.append(f"Found {len(matching)} {label}:")
        lines.append("-" * 40)
        for issue in matching:
            lines.append(str(issue))
            lines.append("")

    return "\n".join(lines)
