"""Secrets in connection settings.

Connection fields may name environment variables instead of holding
credentials (``password: ${DB_PASSWORD}``). Credential fields are expanded
strictly when the connection is opened: every unset variable is reported
in one ConfigurationError before any backend is contacted. Free-form
backend ``options`` are expanded leniently.

``.env`` files are loaded with python-dotenv.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from dotenv import load_dotenv

from batchload.lib.errors import ConfigurationError

__all__ = ["expand_env_vars", "expand_options", "expand_setting", "find_env_refs", "load_env_file"]

_REFERENCE = re.compile(r"\$(?:\{(?P<braced>[^}]+)\}|(?P<bare>[A-Za-z_]\w*))")


def _ref_name(match: re.Match[str]) -> str:
    return match.group("braced") or match.group("bare")


def load_env_file(path: Optional[Union[str, Path]] = None, *, override: bool = False) -> bool:
    """Load a ``.env`` file; without ``path`` python-dotenv searches upward from the cwd.

    Returns True if a file was found.
    """
    return load_dotenv(dotenv_path=path, override=override)


def find_env_refs(value: str) -> List[str]:
    """Variable names referenced in ``value``, in order, without duplicates."""
    return list(dict.fromkeys(_ref_name(m) for m in _REFERENCE.finditer(value)))


def expand_env_vars(value: str) -> str:
    """Substitute ``${VAR}`` and ``$VAR``; unset references stay as written.

    Example:
        >>> os.environ["DB_HOST"] = "localhost"
        >>> expand_env_vars("${DB_HOST}:5432")
        'localhost:5432'
    """
    return _REFERENCE.sub(lambda m: os.environ.get(_ref_name(m), m.group(0)), value)


def expand_setting(value: Any, *, field: str, connection: str) -> Any:
    """Expand a credential field of a connection, failing on unset variables.

    Args:
        value: Field value; anything but a string is returned unchanged
        field: Field name, for the error
        connection: Display name of the connection, for the error

    Raises:
        ConfigurationError: If any referenced variable is unset. The
            ``missing`` detail lists all of them.
    """
    if not isinstance(value, str):
        return value

    missing = [name for name in find_env_refs(value) if name not in os.environ]
    if missing:
        raise ConfigurationError(
            f"Connection parameter '{field}' references an unset environment variable",
            field=field,
            details={"connection": connection, "missing": ", ".join(missing)},
            suggestion="Export the variable or add it to a .env file.",
        )
    return expand_env_vars(value)


def _expand_value(value: Any) -> Any:
    if isinstance(value, str):
        return expand_env_vars(value)
    if isinstance(value, dict):
        return expand_options(value)
    if isinstance(value, list):
        return [_expand_value(item) for item in value]
    return value


def expand_options(options: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of backend ``options`` with references expanded at any depth."""
    return {key: _expand_value(value) for key, value in options.items()}
