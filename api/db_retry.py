"""
Retry helpers for transient catalog database errors.

Writes and reads issued by the catalog go through execute_with_retry(), which
retries lock contention and dropped connections with exponential backoff and
jitter. Both SQLite and PostgreSQL error shapes are recognised:

SQLite errors:
- "database is locked" - concurrent write contention
- "SQLITE_BUSY" / "SQLITE_LOCKED" - database busy states

PostgreSQL errors:
- Deadlocks (40P01)
- Serialization failures (40001)
- Connection errors
"""

import asyncio
import logging
import random
import time
from typing import Awaitable, Callable, Optional, TypeVar

from databases import Database

from api.metrics import CATALOG_RETRIES_TOTAL

logger = logging.getLogger(__name__)

# Queries slower than this are logged with their SQL
SLOW_QUERY_THRESHOLD = 1.0

T = TypeVar("T")

# Default retry configuration
DEFAULT_MAX_RETRIES = 5
DEFAULT_BASE_DELAY = 0.1  # 100ms
DEFAULT_MAX_DELAY = 2.0  # 2 seconds
DEFAULT_EXPONENTIAL_BASE = 2

SQLITE_RETRYABLE_PATTERNS = (
    "database is locked",
    "database table is locked",
    "sqlite_busy",
    "sqlite_locked",
)

POSTGRES_RETRYABLE_PATTERNS = (
    "deadlock detected",  # 40P01
    "could not serialize access",  # 40001 serialization failure
    "could not obtain lock",
    "connection refused",
    "connection reset",
    "server closed the connection unexpectedly",
    "canceling statement due to lock timeout",
    "lock timeout",
)


class DatabaseRetryableError(Exception):
    """Raised when a database operation fails after all retries are exhausted."""


def is_retryable_database_error(exc: BaseException) -> bool:
    """Check if an exception is a transient database error worth retrying."""
    error_str = str(exc).lower()

    for pattern in SQLITE_RETRYABLE_PATTERNS + POSTGRES_RETRYABLE_PATTERNS:
        if pattern in error_str:
            return True

    # asyncpg exposes the SQLSTATE code directly
    if getattr(exc, "sqlstate", "") in ("40P01", "40001"):
        return True

    # The databases library wraps driver exceptions
    if exc.__cause__ is not None:
        return is_retryable_database_error(exc.__cause__)

    return False


def backoff_delay(attempt: int, base_delay: float = DEFAULT_BASE_DELAY, max_delay: float = DEFAULT_MAX_DELAY) -> float:
    """Exponential backoff for the given zero-based attempt, with +/-25% jitter."""
    delay = min(base_delay * (DEFAULT_EXPONENTIAL_BASE**attempt), max_delay)
    jitter = delay * 0.25 * (2 * random.random() - 1)
    return max(0.01, delay + jitter)


async def execute_with_retry(
    func: Callable[..., Awaitable[T]],
    *args,
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    operation: str = "query",
    **kwargs,
) -> T:
    """
    Execute an async function with retry logic for transient database errors.

    Args:
        func: Async function to execute
        *args: Positional arguments for func
        max_retries: Maximum number of retry attempts
        base_delay: Initial delay between retries (seconds)
        max_delay: Maximum delay between retries (seconds)
        operation: Label used for logging and the retry metric
        **kwargs: Keyword arguments for func

    Returns:
        Result of the function

    Raises:
        DatabaseRetryableError: If all retries are exhausted
        Other exceptions: Non-retryable errors are re-raised immediately
    """
    last_exception: Optional[Exception] = None

    for attempt in range(max_retries + 1):
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            if not is_retryable_database_error(e):
                raise

            last_exception = e

            if attempt < max_retries:
                delay = backoff_delay(attempt, base_delay, max_delay)
                CATALOG_RETRIES_TOTAL.labels(operation=operation).inc()
                logger.warning(
                    f"Database error during {operation} (attempt {attempt + 1}/{max_retries + 1}), "
                    f"retrying in {delay:.2f}s: {e}"
                )
                await asyncio.sleep(delay)
            else:
                logger.error(f"Database error during {operation} after {max_retries + 1} attempts, giving up: {e}")

    raise DatabaseRetryableError(f"Database operation failed after {max_retries + 1} attempts: {last_exception}")


def _log_if_slow(query, started: float) -> None:
    elapsed = time.monotonic() - started
    if elapsed >= SLOW_QUERY_THRESHOLD:
        logger.warning(f"Slow query ({elapsed:.2f}s): {str(query)[:500]}")


async def fetch_one_with_retry(database: Database, query, **retry_kwargs):
    """Run database.fetch_one(query) with retries. Returns a row or None."""

    async def _fetch():
        started = time.monotonic()
        result = await database.fetch_one(query)
        _log_if_slow(query, started)
        return result

    return await execute_with_retry(_fetch, operation="fetch_one", **retry_kwargs)


async def fetch_all_with_retry(database: Database, query, **retry_kwargs):
    """Run database.fetch_all(query) with retries. Returns a list of rows."""

    async def _fetch():
        started = time.monotonic()
        result = await database.fetch_all(query)
        _log_if_slow(query, started)
        return result

    return await execute_with_retry(_fetch, operation="fetch_all", **retry_kwargs)
