"""Pytest configuration and fixtures."""

import pytest

from pubmed_server.data_sources.base_client import ClientConfig, RetryConfig
from pubmed_server.data_sources.pubmed import PubMedClient


class FakeClock:
    """Manually advanced wall clock for TTL tests."""

    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def client_config() -> ClientConfig:
    """Config with no caching and zero backoff."""
    return ClientConfig(
        email="test@example.com",
        retry=RetryConfig(base_delay=0.0, max_delay=0.0),
    )


@pytest.fixture
async def pubmed_client(client_config):
    """Create and tear down a PubMedClient."""
    c = PubMedClient(client_config)
    yield c
    await c.close()
