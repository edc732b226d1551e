"""Connection registry for source and sink backends.

Every backend is an Ibis connection. Connections are keyed by location so
a source and sink that live in the same database share one connection,
and repeated runs in one process reuse what is already open.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict

import ibis

from batchload.lib.config import FILE_BACKENDS, ConnectionConfig
from batchload.lib.env import expand_options, expand_setting
from batchload.lib.errors import ConnectionError
from batchload.lib.resilience import RetryConfig, retry_operation

logger = logging.getLogger(__name__)

__all__ = [
    "close_all_connections",
    "close_connection",
    "get_connection",
    "list_connections",
    "register_connection",
]

_connections: Dict[str, ibis.BaseBackend] = {}

_EXTRAS = {
    "postgres": "ibis-framework[postgres]",
    "mssql": "ibis-framework[mssql]",
    "mysql": "ibis-framework[mysql]",
    "sqlite": "ibis-framework[sqlite]",
    "duckdb": "ibis-framework[duckdb]",
}

_DEFAULT_PORTS = {"postgres": 5432, "mssql": 1433, "mysql": 3306}


def _expand(value: Any, field: str, config: ConnectionConfig) -> Any:
    return expand_setting(value, field=field, connection=config.display)


def _connect_kwargs(config: ConnectionConfig) -> Dict[str, Any]:
    """Build backend-specific keyword arguments for ``ibis.<backend>.connect``."""
    options = expand_options(config.options)

    if config.backend in FILE_BACKENDS:
        path = _expand(config.path, "path", config) if config.path else None
        kwargs: Dict[str, Any] = {"database": path or ":memory:"}
        if config.backend == "sqlite" and not path:
            kwargs = {}
        kwargs.update(options)
        return kwargs

    kwargs = {
        "host": _expand(config.host, "host", config),
        "port": config.port or _DEFAULT_PORTS[config.backend],
        "database": _expand(config.database, "database", config),
        "user": _expand(config.user, "user", config) if config.user else None,
        "password": _expand(config.password, "password", config) if config.password else None,
    }
    if config.backend == "mssql":
        kwargs["driver"] = config.driver or "ODBC Driver 17 for SQL Server"
    kwargs.update(options)
    return kwargs


def _backend_connect(config: ConnectionConfig) -> Callable[..., ibis.BaseBackend]:
    try:
        module = getattr(ibis, config.backend)
    except (AttributeError, ImportError) as exc:
        raise ConnectionError(
            f"Ibis backend '{config.backend}' is not available",
            backend=config.backend,
            cause=exc,
            suggestion=f"Install it with: pip install '{_EXTRAS[config.backend]}'",
        ) from exc
    return module.connect


def get_connection(config: ConnectionConfig) -> ibis.BaseBackend:
    """Get or create the connection described by ``config``.

    Raises:
        ConfigurationError: A credential references an unset variable
        ConnectionError: The backend is missing or the connect call failed
    """
    key = config.connection_key
    if key in _connections:
        logger.debug("Reusing existing connection: %s", config.display)
        return _connections[key]

    kwargs = _connect_kwargs(config)
    connect = _backend_connect(config)

    logger.info("Creating new connection: %s", config.display)
    try:
        con = retry_operation(
            lambda: connect(**kwargs),
            RetryConfig(max_attempts=config.connect_retries),
            f"connect {config.display}",
        )
    except Exception as exc:
        raise ConnectionError(
            f"Could not connect to {config.display}",
            connection_name=key,
            backend=config.backend,
            host=kwargs.get("host"),
            cause=exc,
        ) from exc

    _connections[key] = con
    return con


def register_connection(key: str, con: ibis.BaseBackend) -> None:
    """Put an already-open connection into the registry under ``key``."""
    _connections[key] = con


def close_connection(key: str) -> None:
    """Close and forget a specific connection."""
    con = _connections.pop(key, None)
    if con is None:
        return
    try:
        con.disconnect()
        logger.info("Closed connection: %s", key)
    except Exception as e:
        logger.warning("Error closing connection %s: %s", key, e)


def close_all_connections() -> None:
    """Close every registered connection."""
    for key in list(_connections.keys()):
        close_connection(key)


def list_connections() -> list[str]:
    """Names of connections currently in the registry."""
    return list(_connections.keys())
