"""Database connection management"""
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional
import psycopg
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool
from checkin_rewards.config import DATABASE_URL, DB_POOL_MAX_SIZE, DB_POOL_MIN_SIZE

logger = logging.getLogger(__name__)


class Database:
    """
    Connection pool owned by one engine instance

    The host opens it at startup (init_pool) and closes it at shutdown;
    there is no module-level instance.
    """

    def __init__(
        self,
        connection_string: str = DATABASE_URL,
        min_size: int = DB_POOL_MIN_SIZE,
        max_size: int = DB_POOL_MAX_SIZE
    ):
        self.connection_string = connection_string
        self.min_size = min_size
        self.max_size = max_size
        self._pool: Optional[AsyncConnectionPool] = None

    @property
    def is_open(self) -> bool:
        return self._pool is not None

    async def init_pool(self) -> None:
        """Open the connection pool"""
        logger.info(f"Initializing check-in database pool (min={self.min_size}, max={self.max_size})")
        self._pool = AsyncConnectionPool(
            self.connection_string,
            min_size=self.min_size,
            max_size=self.max_size,
            open=False
        )
        await self._pool.open()

    async def close_pool(self) -> None:
        if self._pool:
            logger.info("Closing check-in database pool")
            await self._pool.close()
            self._pool = None

    @asynccontextmanager
    async def connection(self) -> AsyncGenerator[psycopg.AsyncConnection, None]:
        """Borrow a connection; rows come back as dicts"""
        if not self._pool:
            raise RuntimeError("Database pool not initialized")

        async with self._pool.connection() as conn:
            conn.row_factory = dict_row
            yield conn

    async def ping(self) -> bool:
        """True if a trivial query succeeds"""
        try:
            async with self.connection() as conn:
                async with conn.cursor() as cur:
                    await cur.execute("SELECT 1")
                    return await cur.fetchone() is not None
        except Exception as e:
            logger.error(f"Database ping failed: {e}")
            return False
