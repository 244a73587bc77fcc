# src/pgwd/infrastructure/postgres.py

"""
Stats Collector: connection counts from pg_stat_activity via an asyncpg pool.

All counts are scoped to the database in the connection URL
(datname = current_database()).
"""

import asyncio
from dataclasses import dataclass

import asyncpg

from ..errors import ConnectError

POOL_MIN_SIZE = 1
POOL_MAX_SIZE = 2

STATS_QUERY = """
    SELECT
        count(*) FILTER (WHERE state = 'active') AS active,
        count(*) FILTER (WHERE state = 'idle')   AS idle,
        count(*)                                 AS total
    FROM pg_stat_activity
    WHERE datname = current_database()
"""

CAPACITY_QUERY = "SELECT current_setting('max_connections')::int"

# Stale = open longer than N seconds (backend_start), whatever the state.
STALE_QUERY = """
    SELECT count(*)
    FROM pg_stat_activity
    WHERE datname = current_database()
    AND (now() - backend_start) > ($1::int * interval '1 second')
"""


@dataclass(frozen=True)
class ConnectionStats:
    total: int = 0
    active: int = 0
    idle: int = 0


class PostgresStatsCollector:
    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def current_stats(self) -> ConnectionStats:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(STATS_QUERY)
        return ConnectionStats(
            total=row['total'] or 0,
            active=row['active'] or 0,
            idle=row['idle'] or 0,
        )

    async def server_capacity(self) -> int:
        """max_connections of the server."""
        async with self.pool.acquire() as conn:
            value = await conn.fetchval(CAPACITY_QUERY)
        return int(value or 0)

    async def stale_connection_count(self, max_age_seconds: int) -> int:
        async with self.pool.acquire() as conn:
            value = await conn.fetchval(STALE_QUERY, max_age_seconds)
        return int(value or 0)

    async def close(self):
        await self.pool.close()


async def open_collector(dsn: str) -> PostgresStatsCollector:
    """Opens the pool; any failure becomes ConnectError (the cause is kept for classification)."""
    try:
        pool = await asyncpg.create_pool(dsn=dsn, min_size=POOL_MIN_SIZE, max_size=POOL_MAX_SIZE)
    except (OSError, asyncio.TimeoutError, asyncpg.PostgresError,
            asyncpg.InterfaceError, ValueError) as e:
        raise ConnectError(
            'postgres connect failed (check database URL, connectivity, and credentials)',
            cause=e,
            details={'error': str(e), 'error_type': type(e).__name__}
        )
    return PostgresStatsCollector(pool)
