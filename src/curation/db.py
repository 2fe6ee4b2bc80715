"""Shared PostgreSQL connection pool for curation repositories.

Every Postgres repository in the curation package receives the same
PostgresDatabase instance so that one pool serves the whole process.
The schema lives in migrations/001_curation_core.sql and must be applied
before use.
"""

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Optional

import asyncpg


logger = logging.getLogger(__name__)


class DatabaseError(Exception):
    """Raised when a curation repository cannot reach or query Postgres.

    Attributes:
        message: What the repository was doing when it failed.
        original_error: The asyncpg (or connection) exception, if any.
    """

    def __init__(
        self,
        message: str,
        original_error: Optional[Exception] = None,
    ):
        self.message = message
        self.original_error = original_error
        super().__init__(message)


class PostgresDatabase:
    """asyncpg connection pool shared by the curation repositories.

    Example:
        >>> async with PostgresDatabase("postgresql://...") as db:
        ...     leases = PostgresLeaseRepository(db)
        ...     handle = await WorkLeaseManager(leases).acquire("document:42")
    """

    def __init__(
        self,
        connection_string: str,
        min_pool_size: int = 2,
        max_pool_size: int = 10,
    ):
        self.connection_string = connection_string
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: Optional[asyncpg.Pool] = None

    @property
    def pool(self) -> asyncpg.Pool:
        """The live pool.

        Raises:
            DatabaseError: If connect() has not been awaited yet.
        """
        if self._pool is None:
            raise DatabaseError("Curation database is not connected")
        return self._pool

    async def connect(self) -> None:
        """Open the pool. Calling it twice is a no-op.

        Raises:
            DatabaseError: If Postgres refuses the connection.
        """
        if self._pool is not None:
            logger.warning("Curation database pool is already open")
            return

        logger.info(
            "Opening curation database pool",
            extra={
                "min_pool_size": self.min_pool_size,
                "max_pool_size": self.max_pool_size,
            },
        )
        try:
            self._pool = await asyncpg.create_pool(
                self.connection_string,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
            )
        except Exception as e:
            logger.error(
                "Could not open curation database pool",
                extra={"error": str(e)},
            )
            raise DatabaseError(
                f"Could not connect to curation database: {e}",
                original_error=e,
            ) from e
        logger.info("Curation database pool open")

    async def disconnect(self) -> None:
        if self._pool is None:
            return
        await self._pool.close()
        self._pool = None
        logger.info("Curation database pool closed")

    async def __aenter__(self) -> "PostgresDatabase":
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.disconnect()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[asyncpg.Connection]:
        """Yield a pooled connection inside a transaction."""
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                yield conn

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[asyncpg.Connection]:
        """Yield a pooled connection in autocommit mode."""
        async with self.pool.acquire() as conn:
            yield conn

    async def health_check(self) -> bool:
        """True if a trivial query succeeds; used by /ready."""
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
        except Exception as e:
            logger.warning(
                "Curation database health check failed",
                extra={"error": str(e)},
            )
            return False
        return True


def rows_affected(result: str) -> int:
    """Parse the affected row count from an asyncpg command status.

    asyncpg returns strings such as "UPDATE 1" or "INSERT 0 1"; the
    count is always the last token.
    """
    return int(result.split()[-1])


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Ensure a timestamp read from the database has timezone info."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def dump_json(value: Optional[Dict[str, Any]]) -> Optional[str]:
    """Serialize a dict for a JSONB column."""
    return json.dumps(value) if value is not None else None


def load_json(value: Any) -> Dict[str, Any]:
    """Deserialize a JSONB column that may arrive as str or dict."""
    if value is None:
        return {}
    if isinstance(value, str):
        return json.loads(value)
    return dict(value)
