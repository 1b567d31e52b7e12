"""API endpoint tests — FastAPI TestClient over mock-backed services."""
import pytest
from fastapi.testclient import TestClient

from marketfeed.api.v2.app import create_app
from marketfeed.core.config import ProviderConfig
from marketfeed.core.data.providers.retry import RetryPolicy
from marketfeed.core.data.services import build_data_services
from tests.fakes import FakeClock


@pytest.fixture
def services():
    config = ProviderConfig(retry=RetryPolicy(max_attempts=1, backoff=(0.0,), timeout=1.0))
    return build_data_services(config, clock=FakeClock())


@pytest.fixture
def client(services):
    with TestClient(create_app(services=services)) as client:
        yield client


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok", "version": "2.0.0"}


def test_get_prices(client, services):
    services.prices.primary.set_price("AAPL", "178.50")
    r = client.get("/api/v2/data/prices?symbols=aapl,MSFT")
    assert r.status_code == 200
    body = r.json()
    assert [p["symbol"] for p in body["data"]] == ["AAPL", "MSFT"]
    assert body["data"][0]["close"] == "178.50"
    assert body["provider"] == "mock-price"
    assert body["from_cache"] is False
    assert body["freshness"]["is_stale"] is False


def test_prices_second_call_served_from_cache(client):
    client.get("/api/v2/data/prices?symbols=AAPL")
    r = client.get("/api/v2/data/prices?symbols=AAPL")
    assert r.json()["from_cache"] is True
    assert r.json()["provider"] == "cache"


def test_refresh_skips_cache(client, services):
    client.get("/api/v2/data/prices?symbols=AAPL")
    r = client.get("/api/v2/data/prices?symbols=AAPL&refresh=true")
    assert r.json()["from_cache"] is False
    assert services.prices.primary.call_count == 2


def test_prices_fall_back(client, services):
    services.prices.primary.set_failure("vendor down")
    r = client.get("/api/v2/data/prices?symbols=AAPL")
    assert r.status_code == 200
    assert r.json()["provider"] == "mock-price-fallback"


def test_empty_symbols_is_validation_error(client):
    r = client.get("/api/v2/data/prices?symbols=,")
    assert r.status_code == 422
    assert r.json()["code"] == "VALIDATION_ERROR"


def test_missing_symbols_param(client):
    assert client.get("/api/v2/data/prices").status_code == 422


def test_all_providers_failed_is_503(client, services):
    services.prices.primary.set_failure()
    services.prices.fallback.set_failure()
    r = client.get("/api/v2/data/prices?symbols=AAPL")
    assert r.status_code == 503
    body = r.json()
    assert body["code"] == "ALL_PROVIDERS_FAILED"
    assert body["provider"] == "price-service"
    assert body["details"]["symbols"] == ["AAPL"]
    assert body["details"]["primary_provider"] == "mock-price"


def test_get_exchange_rates(client, services):
    services.exchange_rates.primary.set_rate("BRL", "5.0123")
    r = client.get("/api/v2/data/exchange-rates?targets=brl,EUR")
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["base"] == "USD"
    assert data["rates"] == {"BRL": "5.0123", "EUR": "1.2345"}


def test_get_fundamentals(client):
    r = client.get("/api/v2/data/fundamentals?symbols=AAPL")
    assert r.status_code == 200
    data = r.json()["data"][0]
    assert data["pe_ratio"] == "15.50"
    assert data["sector"] == "Technology"


def test_providers_health(client):
    r = client.get("/api/v2/health/providers")
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "ok"
    assert body["using_mock_providers"] is True
    services = {s["service"]: s["providers"] for s in body["services"]}
    assert [p["role"] for p in services["prices"]] == ["primary", "fallback"]
    assert [p["role"] for p in services["fundamentals"]] == ["primary"]
    assert services["prices"][0]["circuit_state"] == "closed"
    assert services["prices"][0]["configured"] is False


def test_providers_health_degraded_after_failures(client, services):
    services.prices.primary.set_failure()
    for _ in range(5):
        client.get("/api/v2/data/prices?symbols=AAPL&refresh=true")
    body = client.get("/api/v2/health/providers").json()
    assert body["status"] == "degraded"
    primary = next(s for s in body["services"] if s["service"] == "prices")["providers"][0]
    assert primary["circuit_state"] == "open"
    assert primary["consecutive_failures"] == 5
    assert primary["next_attempt_at"] is not None
