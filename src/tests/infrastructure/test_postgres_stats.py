"""
Unit tests for the Postgres stats collector.

The asyncpg pool is mocked: `async with pool.acquire() as conn` yields an
AsyncMock connection.
"""

import asyncio
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from pgwd.errors import ConnectError
from pgwd.infrastructure.postgres import (
    CAPACITY_QUERY,
    ConnectionStats,
    PostgresStatsCollector,
    open_collector,
)


@pytest.fixture
def mock_db_components():

    mock_pool = MagicMock()  # acquire itself is not async, the context manager is
    mock_pool.close = AsyncMock()
    mock_conn = AsyncMock()

    mock_ctx = AsyncMock()
    mock_ctx.__aenter__.return_value = mock_conn
    mock_ctx.__aexit__.return_value = None

    mock_pool.acquire.return_value = mock_ctx

    return mock_pool, mock_conn


class SqlStateError(Exception):
    def __init__(self, message, sqlstate):
        super().__init__(message)
        self.sqlstate = sqlstate

# --- TESTS ---


@pytest.mark.asyncio
async def test_current_stats(mock_db_components):
    mock_pool, mock_conn = mock_db_components
    mock_conn.fetchrow.return_value = {'active': 12, 'idle': 30, 'total': 45}

    stats = await PostgresStatsCollector(mock_pool).current_stats()

    assert stats == ConnectionStats(total=45, active=12, idle=30)
    assert 'current_database()' in mock_conn.fetchrow.call_args[0][0]


@pytest.mark.asyncio
async def test_server_capacity(mock_db_components):
    mock_pool, mock_conn = mock_db_components
    mock_conn.fetchval.return_value = 100

    assert await PostgresStatsCollector(mock_pool).server_capacity() == 100
    mock_conn.fetchval.assert_awaited_once_with(CAPACITY_QUERY)


@pytest.mark.asyncio
async def test_stale_connection_count_passes_age(mock_db_components):
    mock_pool, mock_conn = mock_db_components
    mock_conn.fetchval.return_value = 3

    count = await PostgresStatsCollector(mock_pool).stale_connection_count(600)

    assert count == 3
    assert mock_conn.fetchval.call_args[0][1] == 600
    assert 'backend_start' in mock_conn.fetchval.call_args[0][0]


@pytest.mark.asyncio
async def test_query_errors_propagate(mock_db_components):
    """The collector does not swallow errors; the control loop decides."""
    mock_pool, mock_conn = mock_db_components
    mock_conn.fetchrow.side_effect = Exception('Connection timeout')

    with pytest.raises(Exception, match='Connection timeout'):
        await PostgresStatsCollector(mock_pool).current_stats()


@pytest.mark.asyncio
async def test_close_closes_pool(mock_db_components):
    mock_pool, _ = mock_db_components
    await PostgresStatsCollector(mock_pool).close()
    mock_pool.close.assert_awaited_once()


# --- CONNECT ---


@pytest.mark.asyncio
async def test_open_collector_creates_small_pool():
    with patch('pgwd.infrastructure.postgres.asyncpg.create_pool', AsyncMock()) as create_pool:
        collector = await open_collector('postgres://app:x@127.0.0.1:5432/orders')

    assert isinstance(collector, PostgresStatsCollector)
    assert create_pool.call_args.kwargs['max_size'] == 2


@pytest.mark.asyncio
async def test_open_collector_wraps_connection_refused():
    with patch('pgwd.infrastructure.postgres.asyncpg.create_pool',
               AsyncMock(side_effect=ConnectionRefusedError(111, 'Connection refused'))):
        with pytest.raises(ConnectError) as exc:
            await open_collector('postgres://app:x@127.0.0.1:5432/orders')

    assert not exc.value.too_many_clients
    assert exc.value.details['error_type'] == 'ConnectionRefusedError'


@pytest.mark.asyncio
async def test_open_collector_wraps_timeout():
    with patch('pgwd.infrastructure.postgres.asyncpg.create_pool',
               AsyncMock(side_effect=asyncio.TimeoutError())):
        with pytest.raises(ConnectError):
            await open_collector('postgres://app:x@10.0.0.1:5432/orders')


# --- TOO MANY CLIENTS ---


def test_too_many_clients_by_sqlstate():
    err = ConnectError('connect failed', cause=SqlStateError('rejected', '53300'))
    assert err.too_many_clients


def test_too_many_clients_by_message():
    err = ConnectError('connect failed', cause=OSError('FATAL: sorry, too many clients already'))
    assert err.too_many_clients


def test_other_failures_are_not_too_many_clients():
    err = ConnectError('connect failed', cause=SqlStateError('password authentication failed', '28P01'))
    assert not err.too_many_clients
    assert not ConnectError('connect failed').too_many_clients
