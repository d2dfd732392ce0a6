"""Integration fixtures: session-scoped testcontainers.

Neo4j Community Edition and Redis 7 containers, shared across the entire
integration session. Individual tests clean each database through the
``clean_*`` fixtures.
"""

from __future__ import annotations

import asyncio
import logging
import time

import pytest
import redis as sync_redis
from neo4j import AsyncGraphDatabase
from redis.asyncio import Redis
from testcontainers.core.container import DockerContainer

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Neo4j
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def neo4j_container():
    """Spin up a Neo4j Community container and yield its bolt URI."""
    container = (
        DockerContainer("neo4j:community")
        .with_exposed_ports(7687)
        .with_env("NEO4J_AUTH", "none")
    )
    with container as c:
        host = c.get_container_host_ip()
        port = c.get_exposed_port(7687)
        uri = f"bolt://{host}:{port}"

        async def wait_for_neo4j():
            driver = AsyncGraphDatabase.driver(uri)
            max_attempts = 30
            for attempt in range(max_attempts):
                try:
                    await driver.verify_connectivity()
                    await driver.close()
                    return
                except Exception as exc:
                    if attempt == max_attempts - 1:
                        await driver.close()
                        raise
                    logger.debug(
                        "Neo4j not ready (attempt %d/%d): %s",
                        attempt + 1,
                        max_attempts,
                        exc,
                    )
                    time.sleep(1)

        asyncio.run(wait_for_neo4j())
        yield uri


@pytest.fixture()
async def neo4j_driver(neo4j_container):
    """Yield an async Neo4j driver with an empty graph."""
    driver = AsyncGraphDatabase.driver(neo4j_container)
    async with driver.session() as session:
        await session.run("MATCH (n) DETACH DELETE n")
    yield driver
    await driver.close()


# ---------------------------------------------------------------------------
# Redis
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def redis_container():
    """Spin up a Redis 7 container and yield its URL."""
    container = DockerContainer("redis:7-alpine").with_exposed_ports(6379)
    with container as c:
        host = c.get_container_host_ip()
        port = c.get_exposed_port(6379)
        url = f"redis://{host}:{port}"

        r = sync_redis.Redis(host=host, port=int(port))
        max_attempts = 30
        for attempt in range(max_attempts):
            try:
                r.ping()
                r.close()
                break
            except Exception as exc:
                if attempt == max_attempts - 1:
                    r.close()
                    raise
                logger.debug(
                    "Redis not ready (attempt %d/%d): %s",
                    attempt + 1,
                    max_attempts,
                    exc,
                )
                time.sleep(1)

        yield url


@pytest.fixture()
async def redis_client(redis_container):
    """Yield an async Redis client on a flushed database."""
    client = Redis.from_url(redis_container)
    await client.flushdb()
    yield client
    await client.flushdb()
    await client.aclose()
