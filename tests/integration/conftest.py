"""Shared Redis container for integration tests."""

import asyncio

import pytest
from redis.asyncio import Redis
from testcontainers.redis import RedisContainer


@pytest.fixture(scope="session")
def redis_container():
    container = RedisContainer()
    try:
        container.start()
    except Exception as e:
        pytest.skip(f"Docker is not available: {e}")
    yield container
    container.stop()


@pytest.fixture
def redis_url(redis_container):
    host = redis_container.get_container_host_ip()
    port = redis_container.get_exposed_port(6379)
    yield f"redis://{host}:{port}/0"

    async def flush():
        client = Redis.from_url(f"redis://{host}:{port}/0")
        await client.flushdb()
        await client.aclose()

    asyncio.run(flush())
