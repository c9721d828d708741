# agent_core/db/pool.py
"""
Connection pool for the conversation store.

The store is optional. With no DATABASE_URL, or when the pool cannot be
opened at startup, `db_pool.available` stays False and the agent keeps
serving conversations from the ephemeral cache.
"""

import asyncio
import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import psycopg
from psycopg import sql
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from agent_core.config import settings
from agent_core.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

STORE_APPLICATION_NAME = "agent-core"


class ConversationStorePool:
    """Owns the psycopg pool: open on startup, close on shutdown, hand out connections."""

    def __init__(self):
        self.pool: AsyncConnectionPool | None = None
        self._open = False
        self._closed = False

    @property
    def available(self) -> bool:
        return self._open and not self._closed

    async def initialize(self) -> None:
        """
        Open the pool when a database is configured.

        Raises:
            RuntimeError: the pool was configured but could not be opened
        """
        if self._open:
            logger.warning("Conversation store pool already open")
            return
        if self._closed:
            raise RuntimeError("Cannot reopen a closed conversation store pool")
        if not settings.database_configured():
            logger.warning("DATABASE_URL not set, conversation store disabled")
            return

        pool_config = settings.get_db_pool_config()
        self.pool = AsyncConnectionPool(
            conninfo=settings.DATABASE_URL,
            open=False,
            check=AsyncConnectionPool.check_connection,
            configure=self._configure_connection,
            **pool_config,
        )
        try:
            await self.pool.open(wait=True)
            self._open = True
            await self._ping()
        except Exception as e:
            logger.error("Conversation store pool failed to open", error=str(e))
            self._open = False
            await self.pool.close()
            self.pool = None
            raise RuntimeError(f"Database pool initialization failed: {e}") from e

        logger.info(
            "Conversation store pool open",
            min_size=pool_config["min_size"],
            max_size=pool_config["max_size"],
            environment=settings.environment,
        )

    async def _configure_connection(self, conn: psycopg.AsyncConnection) -> None:
        conn.row_factory = dict_row
        # Autocommit keeps idle connections out of INTRANS state
        await conn.set_autocommit(True)
        app_name = f"{STORE_APPLICATION_NAME}-{settings.environment}"
        await conn.execute(sql.SQL("SET application_name = {}").format(sql.Literal(app_name)))
        await conn.execute("SET timezone = 'UTC'")
        await conn.execute("SET statement_timeout = '30s'")

    async def _ping(self) -> float:
        """Round-trip a trivial query; returns latency in milliseconds."""
        started = time.time()
        async with self.connection() as conn:
            cursor = await conn.execute("SELECT 1 AS ok")
            row = await cursor.fetchone()
        if not row or row["ok"] != 1:
            raise RuntimeError("Conversation store ping returned an unexpected result")
        return (time.time() - started) * 1000

    async def close(self) -> None:
        if not self._open or self._closed:
            return
        self._closed = True
        self._open = False
        try:
            await asyncio.wait_for(self.pool.close(), timeout=30.0)
            logger.info("Conversation store pool closed")
        except TimeoutError:
            logger.warning("Conversation store pool close timed out")

    @asynccontextmanager
    async def connection(self) -> AsyncGenerator[psycopg.AsyncConnection, None]:
        if not self.available:
            raise RuntimeError("Conversation store pool is not open")
        async with self.pool.connection() as conn:
            yield conn

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[psycopg.AsyncConnection, None]:
        """Connection with commit on success, rollback on exception."""
        async with self.connection() as conn:
            async with conn.transaction():
                yield conn

    async def health_check(self) -> dict[str, Any]:
        if not settings.database_configured():
            return {"healthy": False, "error": "Not configured"}
        if not self.available:
            return {"healthy": False, "error": "Pool not initialized"}

        try:
            latency_ms = await self._ping()
        except Exception as e:
            logger.error("Conversation store health ping failed", error=str(e))
            return {"healthy": False, "error": str(e), "error_type": type(e).__name__}

        stats = self.pool.get_stats()
        return {
            "healthy": True,
            "connection_time_ms": round(latency_ms, 2),
            "pool_stats": {
                "pool_size": stats.get("pool_size", 0),
                "pool_available": stats.get("pool_available", 0),
                "requests_waiting": stats.get("requests_waiting", 0),
            },
        }


db_pool = ConversationStorePool()


async def get_db_connection():
    """Get database connection from pool."""
    return db_pool.connection()


async def get_db_transaction():
    """Get database connection with transaction."""
    return db_pool.transaction()


async def db_health_check() -> dict[str, Any]:
    return await db_pool.health_check()
