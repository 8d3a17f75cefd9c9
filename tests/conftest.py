"""Shared fixtures for the distributed rate limiter test suite."""

import fakeredis
import pytest
from fakeredis import aioredis
from prometheus_client import CollectorRegistry

from distributed_rate_limiter.config import TokenBucketConfig, TokenUsageConfig
from distributed_rate_limiter.observability.metrics import AdmissionMetrics

SERVICE_NAME = "service"
RATE_LIMITER_NAME = "test"
DAY_MS = 86_400_000


class FakeClock:
    """Manually advanced epoch-millisecond clock."""

    def __init__(self, now_ms: int = 1_700_000_000_000):
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, ms: int) -> None:
        self.now_ms += ms


def make_fake_redis() -> aioredis.FakeRedis:
    """A fakeredis client on its own server, so nodes never share data."""
    return aioredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
async def redis():
    """Create a fresh fakeredis instance for each test."""
    r = make_fake_redis()
    yield r
    await r.aclose()


@pytest.fixture
async def redis_nodes():
    """Factory for independent fakeredis nodes, closed after the test."""
    created = []

    def factory(count: int) -> list:
        nodes = [make_fake_redis() for _ in range(count)]
        created.extend(nodes)
        return nodes

    yield factory
    for node in created:
        await node.aclose()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def bucket_config():
    return TokenBucketConfig(
        service_name=SERVICE_NAME,
        limiter_name=RATE_LIMITER_NAME,
        bucket_size=100,
        refill_rate=1,
        bucket_ttl_seconds=100,
        lock_ttl_ms=500,
    )


@pytest.fixture
def usage_config():
    return TokenUsageConfig(
        service_name=SERVICE_NAME,
        limiter_name=RATE_LIMITER_NAME,
        window_tokens_limit=1000,
        window_size_seconds=86400,
        estimated_tokens=100,
        lock_ttl_ms=500,
    )


@pytest.fixture
def metrics():
    """Metrics on a private registry so tests never collide on metric names."""
    return AdmissionMetrics(registry=CollectorRegistry())
