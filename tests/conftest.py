"""Shared fixtures for admission router tests."""

import random

import httpx
import pytest
import pytest_asyncio

from apps.admission_router.core.adaptive_router import AdaptiveRouter
from apps.admission_router.core.batch_client import AnthropicBatchClient
from apps.admission_router.core.batch_queue import BatchQueue
from apps.admission_router.core.collaborators import InMemoryPerformanceTracker, StaticModelRegistry
from apps.admission_router.core.rl_store import InMemoryRLStore
from apps.admission_router.core.tiers import DEFAULT_CATALOG
from libs.adapters.circuit_breaker import CircuitBreakerManager
from libs.events.event_bus import EventBus
from tests._helpers.batch_api import BATCH_API_URL, FakeBatchAPI, FakeClock

ALL_TIERS = [profile.tier_id for profile in DEFAULT_CATALOG]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry():
    """Registry exposing the whole default catalog."""
    return StaticModelRegistry(ALL_TIERS)


@pytest.fixture
def tracker():
    return InMemoryPerformanceTracker()


@pytest.fixture
def breakers(clock):
    return CircuitBreakerManager(failure_threshold=3, recovery_timeout=30.0, clock=clock)


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def rl_store():
    return InMemoryRLStore()


@pytest.fixture
def router(registry, tracker, breakers, rl_store, event_bus):
    """Router with exploration disabled."""
    return AdaptiveRouter(
        registry=registry,
        performance_tracker=tracker,
        breakers=breakers,
        store=rl_store,
        event_bus=event_bus,
        epsilon=0.0,
        rng=random.Random(7),
    )


@pytest.fixture
def batch_api():
    return FakeBatchAPI()


@pytest_asyncio.fixture
async def batch_client(batch_api):
    client = AnthropicBatchClient(
        api_key="test-key",
        base_url=BATCH_API_URL,
        transport=httpx.MockTransport(batch_api.handler),
    )
    yield client
    await client.aclose()


@pytest.fixture
def make_queue(batch_client, event_bus):
    """Factory for queues over the stub API with fast polling."""

    def factory(**overrides) -> BatchQueue:
        options = {
            "max_queue_size": 10,
            "poll_interval_s": 0.01,
            "poll_timeout_s": 1.0,
            "event_bus": event_bus,
        }
        options.update(overrides)
        return BatchQueue(batch_client, **options)

    return factory
