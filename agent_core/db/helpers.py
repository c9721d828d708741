# agent_core/db/helpers.py
"""
Query helpers shared by the repositories.
All psycopg errors surface as DatabaseError so callers can degrade uniformly.
"""

import asyncio
import functools
from typing import Any

import psycopg

from agent_core.db.pool import get_db_connection
from agent_core.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class DatabaseError(Exception):
    """Raised when a store operation fails."""

    def __init__(self, message: str, operation: str = "unknown", recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


async def _fetch(
    query: str,
    params: tuple,
    connection: psycopg.AsyncConnection | None,
    many: bool,
):
    async def run(conn: psycopg.AsyncConnection):
        async with conn.cursor() as cur:
            await cur.execute(query, params)
            if many:
                return await cur.fetchall()
            return await cur.fetchone()

    if connection is not None:
        return await run(connection)
    async with await get_db_connection() as conn:
        return await run(conn)


async def fetch_one(
    query: str, params: tuple = (), *, connection: psycopg.AsyncConnection | None = None
) -> dict[str, Any] | None:
    """
    Execute query and return a single row as dict.

    Args:
        query: SQL query with %s placeholders
        params: Query parameters
        connection: Optional existing connection (joins its transaction)

    Returns:
        Dict with row data or None if no results
    """
    try:
        row = await _fetch(query, params, connection, many=False)
        return row or None
    except psycopg.Error as e:
        logger.error("Database fetch_one error", query=query[:100], error=str(e))
        raise DatabaseError(f"Query failed: {e}", operation="fetch_one") from e


async def fetch_all(
    query: str, params: tuple = (), *, connection: psycopg.AsyncConnection | None = None
) -> list[dict[str, Any]]:
    """Execute query and return all rows as list of dicts."""
    try:
        return list(await _fetch(query, params, connection, many=True))
    except psycopg.Error as e:
        logger.error("Database fetch_all error", query=query[:100], error=str(e))
        raise DatabaseError(f"Query failed: {e}", operation="fetch_all") from e


async def fetch_val(
    query: str, params: tuple = (), *, connection: psycopg.AsyncConnection | None = None
) -> Any:
    """Execute query and return the first column of the first row."""
    try:
        row = await _fetch(query, params, connection, many=False)
        return next(iter(row.values())) if row else None
    except psycopg.Error as e:
        logger.error("Database fetch_val error", query=query[:100], error=str(e))
        raise DatabaseError(f"Query failed: {e}", operation="fetch_val") from e


async def execute_query(
    query: str, params: tuple = (), *, connection: psycopg.AsyncConnection | None = None
) -> int:
    """Execute a statement and return the number of affected rows."""
    try:
        if connection is not None:
            cursor = await connection.execute(query, params)
            return cursor.rowcount
        async with await get_db_connection() as conn:
            cursor = await conn.execute(query, params)
            return cursor.rowcount

    except psycopg.Error as e:
        logger.error("Database execute error", query=query[:100], error=str(e))
        raise DatabaseError(f"Query failed: {e}", operation="execute") from e


def with_db_retry(max_retries: int = 3, base_delay: float = 0.1):
    """
    Retry a coroutine on transient database failures.

    OperationalError (and DatabaseError wrapping one) is retried with
    exponential backoff; integrity and data errors fail immediately.
    """

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)

                except (psycopg.IntegrityError, psycopg.DataError) as e:
                    logger.error("Database operation failed with permanent error", error=str(e))
                    raise DatabaseError(
                        f"Permanent database error: {e}", operation=func.__name__, recoverable=False
                    ) from e

                except (psycopg.OperationalError, DatabaseError) as e:
                    transient = isinstance(e, psycopg.OperationalError) or isinstance(
                        e.__cause__, psycopg.OperationalError
                    )
                    if not transient:
                        raise
                    if attempt >= max_retries:
                        logger.error(
                            "Database operation failed after all retries",
                            operation=func.__name__,
                            attempts=max_retries + 1,
                            error=str(e),
                        )
                        raise DatabaseError(
                            f"Operation failed after {max_retries} retries: {e}",
                            operation=func.__name__,
                            recoverable=False,
                        ) from e

                    delay = base_delay * (2**attempt)
                    logger.warning(
                        "Database operation failed, retrying",
                        operation=func.__name__,
                        attempt=attempt + 1,
                        max_retries=max_retries,
                        delay=delay,
                        error=str(e),
                    )
                    await asyncio.sleep(delay)

        return wrapper

    return decorator
