"""
TutorMeter - Database Connection Pool

Async PostgreSQL connection pool using asyncpg.
"""

from contextlib import asynccontextmanager
from typing import Optional

import asyncpg


class DatabasePool:
    """
    Async PostgreSQL connection pool.

    Usage:
        pool = DatabasePool("postgresql://localhost/tutormeter")
        await pool.connect()

        async with pool.transaction() as conn:
            await conn.execute("UPDATE quota_ledger SET ...")

        await pool.close()
    """

    def __init__(
        self,
        dsn: str,
        min_size: int = 2,
        max_size: int = 10,
        command_timeout: Optional[float] = 60,
    ):
        """
        Args:
            dsn: PostgreSQL connection string.
            min_size: Minimum number of connections in pool.
            max_size: Maximum number of connections in pool.
            command_timeout: Server-side bound for a single statement.
        """
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self.command_timeout = command_timeout
        self._pool: Optional[asyncpg.Pool] = None

    async def connect(self) -> None:
        """Create the connection pool."""
        if self._pool is not None:
            return

        self._pool = await asyncpg.create_pool(
            self.dsn,
            min_size=self.min_size,
            max_size=self.max_size,
            command_timeout=self.command_timeout,
        )

    async def close(self) -> None:
        """Close the connection pool."""
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    @asynccontextmanager
    async def acquire(self):
        """
        Acquire a connection from the pool.

        Usage:
            async with pool.acquire() as conn:
                await conn.execute(...)
        """
        if self._pool is None:
            raise RuntimeError("Database pool not connected. Call connect() first.")

        async with self._pool.acquire() as connection:
            yield connection

    @asynccontextmanager
    async def transaction(self):
        """Acquire a connection and run the block inside one transaction."""
        async with self.acquire() as connection:
            async with connection.transaction():
                yield connection

    async def execute(self, query: str, *args) -> str:
        async with self.acquire() as conn:
            return await conn.execute(query, *args)

    async def fetch(self, query: str, *args) -> list:
        async with self.acquire() as conn:
            return await conn.fetch(query, *args)

    async def fetchrow(self, query: str, *args) -> Optional[asyncpg.Record]:
        async with self.acquire() as conn:
            return await conn.fetchrow(query, *args)

    async def fetchval(self, query: str, *args):
        async with self.acquire() as conn:
            return await conn.fetchval(query, *args)
