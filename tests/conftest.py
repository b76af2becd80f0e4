"""Pytest configuration and fixtures for weather federation tests."""

import pytest
import pytest_asyncio
from fakes import DOMAIN, FakeHttpSession

from weather_federation.config import AppConfig, DeliveryConfig
from weather_federation.keys import generate_rsa_keypair
from weather_federation.store import MemoryStore, SqlStore


@pytest.fixture
def config() -> AppConfig:
    """Create test configuration."""
    return AppConfig(
        federation={"domain": DOMAIN, "user_agent": "weather.test/1.0"},
        delivery={"retry_delays": [0.0, 0.0, 0.0], "drain_interval_seconds": 0},
        store={"url": "memory://"},
    )


@pytest.fixture
def delivery_config() -> DeliveryConfig:
    """Delivery settings with zero backoff."""
    return DeliveryConfig(retry_delays=[0.0, 0.0, 0.0], max_retries=3, batch_size=10)


@pytest.fixture
def store() -> MemoryStore:
    """Create in-memory store."""
    return MemoryStore()


@pytest_asyncio.fixture
async def sql_store():
    """Create SQL store on an in-memory SQLite database."""
    sql = await SqlStore.connect("sqlite+aiosqlite:///:memory:")
    yield sql
    await sql.close()


@pytest.fixture
def http_session() -> FakeHttpSession:
    """Create fake HTTP session."""
    return FakeHttpSession()


@pytest.fixture(scope="session")
def keypair() -> tuple[str, str]:
    """RSA keypair (public_pem, private_pem), generated once per run."""
    return generate_rsa_keypair()


@pytest.fixture(scope="session")
def other_keypair() -> tuple[str, str]:
    """A second, unrelated RSA keypair."""
    return generate_rsa_keypair()
