"""Settings validation, ProviderConfig conversion, provider status and service wiring."""
import pytest
from pydantic import ValidationError
from structlog.testing import capture_logs

from marketfeed.core.config import (
    ProviderConfig,
    Settings,
    log_provider_config_status,
    provider_config_status,
)
from marketfeed.core.data.cache.client import InMemoryCacheStore, RedisCacheStore
from marketfeed.core.data.providers.errors import ProviderError, ProviderErrorCode
from marketfeed.core.data.providers.exchangerate_api import ExchangeRateAPIProvider
from marketfeed.core.data.providers.fmp import FMPFundamentalsProvider, FMPPriceProvider
from marketfeed.core.data.providers.mock import MockExchangeRateProvider, MockPriceProvider
from marketfeed.core.data.providers.open_exchange_rates import OpenExchangeRatesProvider
from marketfeed.core.data.providers.retry import RetryPolicy
from marketfeed.core.data.providers.yahoo import YahooFinancePriceProvider
from marketfeed.core.data.services import build_data_services, build_store
from tests.fakes import FakeRedis


def make_settings(**overrides) -> Settings:
    return Settings(_env_file=None, **overrides)


# ── Settings ─────────────────────────────────────────────────────────────


class TestSettings:

    def test_defaults(self):
        s = make_settings()
        assert s.provider_retry_attempts == 3
        assert s.provider_backoff_ms == [1000, 2000, 4000]
        assert s.circuit_breaker_threshold == 5
        assert s.cache_ttl_fundamentals == 604_800

    @pytest.mark.parametrize("field", [
        "provider_retry_attempts", "provider_timeout_ms", "circuit_breaker_threshold", "cache_ttl_prices",
    ])
    def test_non_positive_rejected(self, field):
        with pytest.raises(ValidationError):
            make_settings(**{field: 0})

    def test_empty_backoff_rejected(self):
        with pytest.raises(ValidationError):
            make_settings(provider_backoff_ms=[])

    def test_unknown_backend_rejected(self):
        with pytest.raises(ValidationError):
            make_settings(cache_backend="memcached")

    def test_backend_case_insensitive(self):
        assert make_settings(cache_backend="Redis").cache_backend == "redis"


class TestProviderConfig:

    def test_milliseconds_become_seconds(self):
        config = ProviderConfig.from_settings(make_settings(
            provider_backoff_ms=[500, 1500], provider_timeout_ms=2500, circuit_breaker_reset_ms=60_000,
        ))
        assert config.retry.backoff == (0.5, 1.5)
        assert config.retry.timeout == 2.5
        assert config.circuit_breaker.reset_timeout == 60.0

    def test_batch_size_capped(self):
        assert ProviderConfig.from_settings(make_settings(provider_batch_size=200)).batch_size == 50

    def test_production_flag(self):
        assert ProviderConfig(environment="Production").is_production
        assert not ProviderConfig().is_production


# ── Provider status ──────────────────────────────────────────────────────


class TestProviderStatus:

    def test_all_mock(self):
        status = provider_config_status(ProviderConfig())
        assert status["using_mock_providers"] is True
        assert "exchange_rates.fallback" in status["mock_slots"]
        assert len(status["warnings"]) == 2
        assert any("FMP_API_KEY" in w for w in status["warnings"])

    def test_real_primaries_use_no_mocks(self):
        status = provider_config_status(ProviderConfig(fmp_api_key="a", exchange_rate_api_key="b"))
        assert status["using_mock_providers"] is False
        assert status["mock_slots"] == []
        assert status["warnings"] == ["OPEN_EXCHANGE_RATES_APP_ID not set - exchange rates have no fallback provider"]
        optional = {p["name"]: p["configured"] for p in status["providers"] if not p["required"]}
        assert optional == {"Yahoo Finance": False, "Open Exchange Rates": False}

    def test_production_with_mocks_logs_error(self):
        with capture_logs() as logs:
            log_provider_config_status(ProviderConfig(environment="production"))
        assert logs[0]["event"] == "config.production_using_mock_providers"
        assert logs[0]["log_level"] == "error"


# ── Wiring ───────────────────────────────────────────────────────────────


class TestBuildDataServices:

    def test_mocks_fill_missing_keys(self):
        services = build_data_services(ProviderConfig())
        assert isinstance(services.prices.primary, MockPriceProvider)
        assert services.prices.fallback.name == "mock-price-fallback"
        assert isinstance(services.exchange_rates.primary, MockExchangeRateProvider)
        assert services.fundamentals.fallback is None

    def test_real_adapters_when_keys_set(self):
        services = build_data_services(ProviderConfig(fmp_api_key="a", exchange_rate_api_key="b"))
        assert isinstance(services.prices.primary, FMPPriceProvider)
        assert isinstance(services.fundamentals.primary, FMPFundamentalsProvider)
        assert isinstance(services.exchange_rates.primary, ExchangeRateAPIProvider)
        assert isinstance(services.prices.fallback, YahooFinancePriceProvider)
        assert services.exchange_rates.fallback is None

    @pytest.mark.asyncio
    async def test_real_primary_never_falls_back_to_mock_values(self):
        config = ProviderConfig(
            fmp_api_key="a", exchange_rate_api_key="b", environment="production",
            retry=RetryPolicy(max_attempts=1, backoff=(0.0,), timeout=1.0),
        )
        services = build_data_services(config)
        services.exchange_rates.primary = MockExchangeRateProvider("exchangerate-api", should_succeed=False)
        with pytest.raises(ProviderError) as exc_info:
            await services.exchange_rates.get_rates("USD", ["BRL"])
        assert exc_info.value.code == ProviderErrorCode.ALL_PROVIDERS_FAILED
        assert exc_info.value.details["fallback_provider"] is None

    def test_fallback_key_alone_leaves_primary_mocked(self):
        status = provider_config_status(ProviderConfig(open_exchange_rates_app_id="c", fmp_api_key="a"))
        assert status["mock_slots"] == ["exchange_rates.primary"]
        services = build_data_services(ProviderConfig(open_exchange_rates_app_id="c", fmp_api_key="a"))
        assert isinstance(services.exchange_rates.primary, MockExchangeRateProvider)
        assert isinstance(services.exchange_rates.fallback, OpenExchangeRatesProvider)

    def test_shared_breaker_registry(self):
        services = build_data_services(ProviderConfig())
        assert services.prices.breakers is services.fundamentals.breakers is services.breakers

    def test_store_selection(self):
        assert isinstance(build_store(ProviderConfig()), InMemoryCacheStore)
        assert isinstance(build_store(ProviderConfig(cache_backend="redis")), RedisCacheStore)

    @pytest.mark.asyncio
    async def test_close_releases_redis(self):
        redis = FakeRedis()
        services = build_data_services(ProviderConfig(), RedisCacheStore(client=redis))
        await services.close()
        assert redis.closed is True
