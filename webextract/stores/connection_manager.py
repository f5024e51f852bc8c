"""
Database connection manager for the Postgres page store.

Provides one shared asyncpg pool with health tracking and retrying
connection acquisition.
"""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Optional

import asyncpg

from webextract.config import get_settings
from webextract.utils.errors import MissingConfigurationError, StoreConnectionError
from webextract.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class ConnectionHealth:
    """Connection pool health status."""
    status: str
    error_count: int = 0
    last_error: Optional[str] = None


class DatabaseConnectionManager:
    """
    Shared asyncpg pool with health monitoring.

    Features:
    - Lazy, lock-guarded pool creation
    - Retrying connection acquisition with linear backoff
    - Status and error counts for diagnostics
    """

    def __init__(
        self,
        connection_string: Optional[str] = None,
        min_connections: int = 1,
        max_connections: int = 10,
    ) -> None:
        """
        Initialize connection manager.

        Args:
            connection_string: Postgres DSN (defaults to settings.database_url)
            min_connections: Pool minimum size
            max_connections: Pool maximum size
        """
        self.connection_string = connection_string or get_settings().database_url
        if not self.connection_string:
            raise MissingConfigurationError("database_url")

        self.pool: Optional[asyncpg.Pool] = None
        self._health = ConnectionHealth(status="uninitialized")
        self._initialization_lock = asyncio.Lock()

        self.min_connections = min_connections
        self.max_connections = max_connections
        self.connection_timeout = 30
        self.command_timeout = 60
        self.retry_attempts = 3
        self.retry_delay = 1.0

    async def initialize(self) -> None:
        """
        Create the pool if it does not exist yet.

        Raises:
            StoreConnectionError: If the pool cannot be created
        """
        async with self._initialization_lock:
            if self.pool is not None:
                return

            try:
                logger.info("Initializing database connection pool...")
                self.pool = await asyncpg.create_pool(
                    self.connection_string,
                    min_size=self.min_connections,
                    max_size=self.max_connections,
                    timeout=self.connection_timeout,
                    command_timeout=self.command_timeout,
                    server_settings={"application_name": "webextract"},
                )
                self._health.status = "healthy"
                logger.info(
                    f"Database pool ready: {self.min_connections}-{self.max_connections} connections"
                )
            except (asyncpg.PostgresError, OSError) as e:
                self._health.status = "failed"
                self._health.error_count += 1
                self._health.last_error = str(e)
                raise StoreConnectionError(f"Failed to create database pool: {e}") from e

    @asynccontextmanager
    async def get_connection(self) -> AsyncIterator[asyncpg.Connection]:
        """
        Acquire a pooled connection.

        Usage:
            async with manager.get_connection() as conn:
                await conn.fetchval("SELECT 1")
        """
        if self.pool is None:
            await self.initialize()

        conn = None
        for attempt in range(1, self.retry_attempts + 1):
            try:
                conn = await self.pool.acquire()
                break
            except (asyncpg.PostgresConnectionError, OSError, asyncio.TimeoutError) as e:
                self._health.error_count += 1
                self._health.last_error = str(e)
                if attempt >= self.retry_attempts:
                    self._health.status = "failed"
                    raise StoreConnectionError(
                        f"Failed to acquire connection after {attempt} attempts: {e}"
                    ) from e
                logger.warning(f"Connection attempt {attempt} failed: {e}, retrying...")
                await asyncio.sleep(self.retry_delay * attempt)

        try:
            yield conn
        finally:
            await self.pool.release(conn)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "status": self._health.status,
            "error_count": self._health.error_count,
            "last_error": self._health.last_error,
            "configuration": {
                "min_connections": self.min_connections,
                "max_connections": self.max_connections,
                "command_timeout": self.command_timeout,
            },
        }

    async def close(self) -> None:
        """Close the pool."""
        async with self._initialization_lock:
            if self.pool is None:
                return
            logger.info("Closing database connection pool...")
            await self.pool.close()
            self.pool = None
            self._health.status = "closed"
