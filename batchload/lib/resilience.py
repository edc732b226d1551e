"""Opt-in retry for connections and whole load runs.

The loop controller never retries an individual batch. Recovery is
re-running the load, which resumes from the watermark derived from the
target table. These helpers make that re-run (or a flaky connect)
automatic when the caller asks for it.

Implementation: Uses tenacity library internally.
"""

from __future__ import annotations

import logging
from functools import wraps
from typing import Any, Callable, Optional, Tuple, Type, TypeVar

import tenacity
from tenacity.wait import wait_base

logger = logging.getLogger(__name__)

__all__ = ["RetryConfig", "retry_operation", "with_retry"]

F = TypeVar("F", bound=Callable[..., Any])
T = TypeVar("T")


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(
        self,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        exponential: bool = True,
        jitter: bool = True,
        retry_exceptions: Optional[Tuple[Type[BaseException], ...]] = None,
    ):
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.exponential = exponential
        self.jitter = jitter
        self.retry_exceptions = retry_exceptions or (Exception,)

    @classmethod
    def none(cls) -> "RetryConfig":
        """No retry - fail immediately."""
        return cls(max_attempts=1)

    @classmethod
    def default(cls) -> "RetryConfig":
        """Default retry: 3 attempts with exponential backoff."""
        return cls()

    def wait_strategy(self) -> wait_base:
        wait: wait_base
        if self.exponential:
            wait = tenacity.wait_exponential(
                multiplier=self.backoff_seconds, min=self.backoff_seconds
            )
        else:
            wait = tenacity.wait_fixed(self.backoff_seconds)
        if self.jitter:
            wait = wait + tenacity.wait_random(0, self.backoff_seconds * 0.5)
        return wait

    def __repr__(self) -> str:
        return (
            f"RetryConfig(max_attempts={self.max_attempts}, "
            f"backoff_seconds={self.backoff_seconds})"
        )


def _retrying(config: RetryConfig, operation_name: str, log: logging.Logger) -> tenacity.Retrying:
    def before_sleep_handler(retry_state: tenacity.RetryCallState) -> None:
        exception = retry_state.outcome.exception() if retry_state.outcome else None
        log.warning(
            "%s attempt %d/%d failed: %s. Retrying in %.1fs...",
            operation_name,
            retry_state.attempt_number,
            config.max_attempts,
            exception,
            retry_state.next_action.sleep if retry_state.next_action else 0,
        )

    return tenacity.Retrying(
        stop=tenacity.stop_after_attempt(config.max_attempts),
        wait=config.wait_strategy(),
        retry=tenacity.retry_if_exception_type(config.retry_exceptions),
        before_sleep=before_sleep_handler,
        reraise=True,
    )


def retry_operation(
    operation: Callable[[], T],
    config: RetryConfig,
    operation_name: str = "operation",
) -> T:
    """Execute an operation with retry logic.

    Example:
        con = retry_operation(
            lambda: ibis.postgres.connect(**params),
            RetryConfig(max_attempts=3),
            "connect sales_db",
        )
    """
    try:
        return _retrying(config, operation_name, logger)(operation)
    except Exception:
        if config.max_attempts > 1:
            logger.error("%s failed after %d attempts", operation_name, config.max_attempts)
        raise


def with_retry(
    max_attempts: int = 3,
    backoff_seconds: float = 1.0,
    exponential: bool = True,
    jitter: bool = True,
    retry_exceptions: Optional[Tuple[Type[BaseException], ...]] = None,
) -> Callable[[F], F]:
    """Opt-in retry decorator for a whole load function.

    Safe for incremental loads because each attempt re-derives its resume
    point from the target table.

    Example:
        @with_retry(max_attempts=3, backoff_seconds=30)
        def run():
            return run_incremental_load(config).raise_for_failure()
    """
    config = RetryConfig(
        max_attempts=max_attempts,
        backoff_seconds=backoff_seconds,
        exponential=exponential,
        jitter=jitter,
        retry_exceptions=retry_exceptions,
    )

    def decorator(fn: F) -> F:
        fn_logger = logging.getLogger(fn.__module__)

        @wraps(fn)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            retrying = _retrying(config, fn.__name__, fn_logger)
            return retrying(fn, *args, **kwargs)

        return wrapper  # type: ignore

    return decorator
