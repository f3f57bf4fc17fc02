"""Fixtures for integration tests against a real PostgreSQL."""

import asyncpg
import pytest
import pytest_asyncio
from testcontainers.postgres import PostgresContainer

from async_timetable.config import TimetableConfig
from async_timetable.ddl import apply_schema

APPLICATION_NAME = "async_timetable_test"

TABLES = (
    "timetable.parameter",
    "timetable.task",
    "timetable.chain",
    "timetable.active_session",
    "timetable.active_chain",
    "timetable.log",
    "timetable.execution_log",
)


@pytest.fixture(scope="module")
def postgres_container():
    """Provide a PostgreSQL test container."""
    with PostgresContainer("postgres:15") as postgres:
        yield postgres


@pytest.fixture(scope="module")
def dsn(postgres_container):
    """asyncpg compatible DSN of the container."""
    return postgres_container.get_connection_url().replace("+psycopg2", "")


@pytest.fixture
def application_name():
    """Application name identifying worker connections in pg_stat_activity."""
    return APPLICATION_NAME


@pytest.fixture
def config(dsn):
    """Create test configuration."""
    return TimetableConfig(
        db_dsn=dsn,
        client_name="worker01",
        application_name=APPLICATION_NAME,
        reconnect_seconds=1,
    )


@pytest_asyncio.fixture
async def db_pool(dsn):
    """Create a database pool with an empty timetable schema."""
    pool = await asyncpg.create_pool(dsn, min_size=1, max_size=5)

    async with pool.acquire() as conn:
        exists = await conn.fetchval("SELECT to_regclass('timetable.chain') IS NOT NULL")
        if not exists:
            await apply_schema(conn)
        await conn.execute(f"TRUNCATE {', '.join(TABLES)} RESTART IDENTITY")

    yield pool

    await pool.close()


@pytest_asyncio.fixture
async def connect(dsn):
    """Factory for dedicated worker connections, closed after the test."""
    connections = []

    async def _connect():
        conn = await asyncpg.connect(
            dsn, server_settings={"application_name": APPLICATION_NAME}
        )
        connections.append(conn)
        return conn

    yield _connect

    for conn in connections:
        if not conn.is_closed():
            await conn.close()
