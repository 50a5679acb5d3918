"""Pytest fixtures for integration tests.

The `store` fixture here overrides the in-memory one from the top-level
conftest, so the shared `engine` and `make_event` fixtures run against a
real PostgreSQL database. Tables are truncated before each test.
"""

import asyncio
import os
from typing import AsyncGenerator

import asyncpg
import pytest
from redis.exceptions import RedisError

from ballotbox.storage import RedisEventCache
from ballotbox.storage.postgres import PostgresStore


def postgres_dsn() -> str:
    return (
        f"postgresql://{os.getenv('POSTGRES_USER', 'postgres')}:{os.getenv('POSTGRES_PASSWORD', 'postgres')}"
        f"@{os.getenv('POSTGRES_HOST', 'localhost')}:{os.getenv('POSTGRES_PORT', '5432')}"
        f"/{os.getenv('POSTGRES_DB', 'ballotbox_test')}"
    )


def redis_url() -> str:
    return (
        f"redis://{os.getenv('REDIS_HOST', 'localhost')}:{os.getenv('REDIS_PORT', '6379')}"
        f"/{os.getenv('REDIS_DB', '15')}"
    )


@pytest.fixture
async def store() -> AsyncGenerator[PostgresStore, None]:
    """PostgresStore over an empty schema. Skips when PostgreSQL is not available."""
    postgres = PostgresStore(postgres_dsn(), min_size=2, max_size=20, create_schema=True)
    try:
        await asyncio.wait_for(postgres.initialize(), timeout=5)
    except (OSError, asyncpg.PostgresError, asyncio.TimeoutError):
        await postgres.close()
        pytest.skip("PostgreSQL not available")

    async with postgres.pool.acquire() as conn:
        await conn.execute("TRUNCATE events, items, voter_credentials, ballots CASCADE")

    yield postgres

    await postgres.close()


@pytest.fixture
async def redis_cache() -> AsyncGenerator[RedisEventCache, None]:
    """Redis-backed event cache. Skips when Redis is not available."""
    cache = RedisEventCache.from_url(redis_url(), ttl_seconds=0.5)
    if not await cache.check_health():
        await cache.close()
        pytest.skip("Redis not available")

    yield cache

    try:
        keys = await cache.client.keys("ballotbox:event_definition:*")
        if keys:
            await cache.client.delete(*keys)
    except RedisError:
        pass
    await cache.close()
