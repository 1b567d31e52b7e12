import pytest

from marketfeed.core.data.cache.client import CacheClient, InMemoryCacheStore
from marketfeed.core.data.providers.circuit_breaker import CircuitBreakerConfig, CircuitBreakerRegistry
from marketfeed.core.data.providers.retry import RetryPolicy
from tests.fakes import FakeClock, RecordingSleep


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def fast_retry():
    return RetryPolicy(max_attempts=3, backoff=(1.0, 2.0, 4.0), timeout=1.0)


@pytest.fixture
def cache_client(clock):
    return CacheClient(InMemoryCacheStore(), clock=clock)


@pytest.fixture
def breakers(clock):
    return CircuitBreakerRegistry(CircuitBreakerConfig(failure_threshold=5, reset_timeout=300.0), clock=clock)
