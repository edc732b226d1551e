"""Configuration models and YAML loading for incremental loads.

Configuration is validated with Pydantic v2 before any connection is
opened, so malformed settings fail fast without creating partial state.

Example YAML (orders.yaml):
    load:
      source_table: orders
      target_table: orders_copy
      timestamp_column: updated_at
      batch_size: 1000000
      max_iterations: 50
      source:
        backend: postgres
        host: ${DB_HOST}
        database: sales
        user: ${DB_USER}
        password: ${DB_PASSWORD}
      sink:
        backend: duckdb
        path: ./warehouse.duckdb

Usage:
    from batchload.lib.config import load_config
    config = load_config("./orders.yaml")
"""

from __future__ import annotations

import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from batchload.lib.errors import ConfigurationError

logger = logging.getLogger(__name__)

__all__ = [
    "DEFAULT_BATCH_SIZE",
    "DEFAULT_MAX_ITERATIONS",
    "FILE_BACKENDS",
    "FLOOR_WATERMARK",
    "SERVER_BACKENDS",
    "ConnectionConfig",
    "LoadConfig",
    "LoadSettings",
    "build_config",
    "load_config",
]

DEFAULT_BATCH_SIZE = 1_000_000
DEFAULT_MAX_ITERATIONS = 50

# Sentinel used when the target holds no rows yet
FLOOR_WATERMARK = datetime(1900, 1, 1, 0, 0, 0)

FILE_BACKENDS = ("duckdb", "sqlite")
SERVER_BACKENDS = ("postgres", "mssql", "mysql")


class ConnectionConfig(BaseModel):
    """Connection parameters for a source or sink backend.

    Credentials are referenced by environment variable (``${DB_PASSWORD}``)
    and expanded only when the connection is opened.
    """

    model_config = ConfigDict(extra="forbid")

    backend: str = Field(default="duckdb", description="Ibis backend name")
    name: Optional[str] = Field(default=None, description="Registry key for connection reuse")
    path: Optional[str] = Field(default=None, description="Database file for duckdb/sqlite")
    host: Optional[str] = None
    port: Optional[int] = None
    database: Optional[str] = None
    user: Optional[str] = None
    password: Optional[str] = Field(default=None, repr=False)
    driver: Optional[str] = None
    schema_name: Optional[str] = Field(default=None, description="Schema/database qualifier for tables")
    options: Dict[str, Any] = Field(default_factory=dict, description="Extra backend connect kwargs")
    connect_retries: int = Field(default=1, ge=1, le=10, description="Attempts when opening the connection")

    @field_validator("backend")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        """Validate backend is a supported value."""
        valid = FILE_BACKENDS + SERVER_BACKENDS
        if v.lower() not in valid:
            raise ValueError(f"backend must be one of: {list(valid)}")
        return v.lower()

    @model_validator(mode="after")
    def validate_server_params(self) -> "ConnectionConfig":
        """Server backends need a host and a database."""
        if self.backend in SERVER_BACKENDS:
            if not self.host:
                raise ValueError(f"{self.backend} connections require 'host'")
            if not self.database:
                raise ValueError(f"{self.backend} connections require 'database'")
        return self

    @property
    def connection_key(self) -> str:
        """Registry key; identical locations share one connection."""
        if self.name:
            return self.name
        if self.backend in FILE_BACKENDS:
            return f"{self.backend}:{self.path or ':memory:'}"
        user = f"{self.user}@" if self.user else ""
        port = f":{self.port}" if self.port else ""
        return f"{self.backend}://{user}{self.host}{port}/{self.database}"

    @property
    def display(self) -> str:
        """Location string safe for logs (never includes the password)."""
        if self.backend in FILE_BACKENDS:
            return f"{self.backend}:{self.path or ':memory:'}"
        port = f":{self.port}" if self.port else ""
        return f"{self.backend}://{self.host}{port}/{self.database}"


class LoadConfig(BaseModel):
    """Validated configuration for one incremental load.

    Example:
        >>> config = LoadConfig(
        ...     source_table="orders",
        ...     target_table="orders_copy",
        ...     timestamp_column="updated_at",
        ... )
        >>> config.batch_size
        1000000
    """

    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, description="Label used in logs")
    source_table: Optional[str] = Field(default=None, description="Source table name")
    query: Optional[str] = Field(default=None, description="SQL SELECT used instead of source_table")
    target_table: str = Field(..., min_length=1, description="Append-only target table")
    timestamp_column: str = Field(..., min_length=1, description="Ordering/watermark column")
    batch_size: int = Field(default=DEFAULT_BATCH_SIZE, ge=1, description="Rows per iteration")
    max_iterations: int = Field(default=DEFAULT_MAX_ITERATIONS, ge=1, description="Iteration cap per run")
    recreate_target: bool = Field(default=False, description="Drop and recreate target on first batch")
    floor_watermark: datetime = Field(default=FLOOR_WATERMARK, description="Watermark for an empty target")
    source: ConnectionConfig = Field(default_factory=ConnectionConfig)
    sink: ConnectionConfig = Field(default_factory=ConnectionConfig)

    @model_validator(mode="after")
    def validate_source_relation(self) -> "LoadConfig":
        """Exactly one of source_table / query must be given."""
        if not self.source_table and not self.query:
            raise ValueError("either 'source_table' or 'query' is required")
        if self.source_table and self.query:
            raise ValueError("'source_table' and 'query' are mutually exclusive")
        if self.query and not self.query.lstrip().lower().startswith(("select", "with")):
            raise ValueError("'query' must be a SELECT statement")
        return self

    @model_validator(mode="after")
    def default_name(self) -> "LoadConfig":
        if not self.name:
            self.name = f"{self.source_label}_to_{self.target_table}"
        return self

    @property
    def source_label(self) -> str:
        return self.source_table or "query"


class LoadSettings(BaseSettings):
    """Environment-based defaults using pydantic-settings.

    Loads from environment variables with the BATCHLOAD_ prefix.

    Example:
        >>> # BATCHLOAD_BATCH_SIZE=500000
        >>> # BATCHLOAD_LOG_FORMAT=json
        >>> settings = LoadSettings()
        >>> settings.batch_size
        500000
    """

    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="console", description="Log format: 'json' or 'console'")
    log_file: Optional[str] = Field(default=None, description="Optional log file path")
    batch_size: int = Field(default=DEFAULT_BATCH_SIZE, ge=1)
    max_iterations: int = Field(default=DEFAULT_MAX_ITERATIONS, ge=1)

    model_config = SettingsConfigDict(
        env_prefix="BATCHLOAD_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("log_format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        if v.lower() not in ("json", "console"):
            raise ValueError("log_format must be 'json' or 'console'")
        return v.lower()


def _resolve_path(path: Optional[str], config_dir: Path) -> Optional[str]:
    """Resolve a relative database file against the config file location."""
    if not path or path == ":memory:" or os.path.isabs(path) or "$" in path:
        return path
    return str(config_dir / path)


def _format_validation_error(exc: ValidationError) -> str:
    lines = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err["loc"]) or "load"
        lines.append(f"{loc}: {err['msg']}")
    return "; ".join(lines)


def build_config(
    mapping: Dict[str, Any],
    *,
    settings: Optional[LoadSettings] = None,
    **overrides: Any,
) -> LoadConfig:
    """Build a LoadConfig from a plain mapping.

    Precedence: overrides > mapping > environment settings > defaults.
    Overrides whose value is None are ignored.

    Raises:
        ConfigurationError: If the result is invalid
    """
    data = dict(mapping)
    try:
        settings = settings or LoadSettings()
    except ValidationError as exc:
        raise ConfigurationError(
            f"Invalid BATCHLOAD_ environment settings: {_format_validation_error(exc)}"
        ) from exc

    data.setdefault("batch_size", settings.batch_size)
    data.setdefault("max_iterations", settings.max_iterations)
    data.update({k: v for k, v in overrides.items() if v is not None})

    try:
        return LoadConfig.model_validate(data)
    except ValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {}
        field = ".".join(str(part) for part in first.get("loc", ())) or None
        raise ConfigurationError(
            f"Invalid load configuration: {_format_validation_error(exc)}",
            field=field,
            target_table=data.get("target_table"),
            source_table=data.get("source_table"),
        ) from exc


def load_config(
    config_path: Union[str, Path],
    *,
    settings: Optional[LoadSettings] = None,
    **overrides: Any,
) -> LoadConfig:
    """Load and validate a load configuration from YAML.

    The file may either hold a top-level ``load:`` mapping or the mapping
    itself. Relative duckdb/sqlite ``path`` values resolve against the
    YAML file's directory.

    Raises:
        ConfigurationError: If the file is missing, unparsable, or invalid
    """
    path = Path(config_path)
    if not path.exists():
        raise ConfigurationError(f"Config file not found: {path}", field="config_path", value=path)

    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Invalid YAML in {path}: {exc}") from exc

    if not isinstance(raw, dict):
        raise ConfigurationError(f"Config file {path} must contain a mapping")

    section = raw.get("load", raw)
    if not isinstance(section, dict):
        raise ConfigurationError(f"'load' section in {path} must be a mapping", field="load")

    section = dict(section)
    for side in ("source", "sink"):
        conn = section.get(side)
        if isinstance(conn, dict) and conn.get("path"):
            section[side] = {**conn, "path": _resolve_path(conn["path"], path.parent)}

    logger.debug("Loaded load config from %s", path)
    return build_config(section, settings=settings, **overrides)
