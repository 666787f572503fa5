"""Container fixtures for integration tests; skipped when Docker is unavailable."""

from collections.abc import Generator

import pytest
from testcontainers.postgres import PostgresContainer
from testcontainers.redis import RedisContainer


@pytest.fixture(scope="session")
def redis_url() -> Generator[str, None, None]:
    """Start Redis container for tests."""
    try:
        container = RedisContainer("redis:7-alpine")
        container.start()
    except Exception as e:
        pytest.skip(f"Docker is not available: {e}")
    try:
        host = container.get_container_host_ip()
        port = container.get_exposed_port(6379)
        yield f"redis://{host}:{port}/0"
    finally:
        container.stop()


@pytest.fixture(scope="session")
def postgres_url() -> Generator[str, None, None]:
    """Start PostgreSQL container for tests."""
    try:
        container = PostgresContainer("postgres:16-alpine", driver="asyncpg")
        container.start()
    except Exception as e:
        pytest.skip(f"Docker is not available: {e}")
    try:
        yield container.get_connection_url()
    finally:
        container.stop()
