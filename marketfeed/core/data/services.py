"""Wiring — builds the cache, breaker registry, providers and services from a ProviderConfig.

Nothing here is module-level state: the API lifespan (or a test) calls
build_data_services() and owns the result.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

import structlog

from marketfeed.core.config import ProviderConfig
from marketfeed.core.data.cache.client import CacheClient, CacheStore, InMemoryCacheStore, RedisCacheStore
from marketfeed.core.data.cache.domain import ExchangeRatesCache, FundamentalsCache, PricesCache
from marketfeed.core.data.providers.circuit_breaker import CircuitBreakerRegistry
from marketfeed.core.data.providers.exchange_rate_service import ExchangeRateService
from marketfeed.core.data.providers.exchangerate_api import ExchangeRateAPIProvider
from marketfeed.core.data.providers.fmp import FMPFundamentalsProvider, FMPPriceProvider
from marketfeed.core.data.providers.fundamentals_service import FundamentalsService
from marketfeed.core.data.providers.mock import (
    MockExchangeRateProvider,
    MockFundamentalsProvider,
    MockPriceProvider,
)
from marketfeed.core.data.providers.open_exchange_rates import OpenExchangeRatesProvider
from marketfeed.core.data.providers.price_service import PriceService
from marketfeed.core.data.providers.types import utc_now
from marketfeed.core.data.providers.yahoo import YahooFinancePriceProvider

logger = structlog.get_logger()


@dataclass
class DataServices:
    config: ProviderConfig
    cache: CacheClient
    breakers: CircuitBreakerRegistry
    prices: PriceService
    exchange_rates: ExchangeRateService
    fundamentals: FundamentalsService

    def services(self) -> dict:
        return {
            "prices": self.prices,
            "exchange_rates": self.exchange_rates,
            "fundamentals": self.fundamentals,
        }

    async def close(self) -> None:
        await self.cache.close()


def build_store(config: ProviderConfig) -> CacheStore:
    if config.cache_backend == "redis":
        return RedisCacheStore(config.redis_url)
    return InMemoryCacheStore()


def build_data_services(
    config: ProviderConfig,
    store: CacheStore | None = None,
    *,
    clock: Callable[[], datetime] = utc_now,
) -> DataServices:
    """Real adapters where an API key is configured, mock providers everywhere else."""
    cache = CacheClient(
        store or build_store(config),
        enabled=config.cache_enabled,
        stale_retention_seconds=config.stale_retention_seconds,
        clock=clock,
    )
    breakers = CircuitBreakerRegistry(config.circuit_breaker, clock=clock)
    timeout = config.retry.timeout
    common = {"breakers": breakers, "retry_policy": config.retry, "clock": clock}

    if config.fmp_api_key:
        price_primary = FMPPriceProvider(config.fmp_api_key, batch_size=config.batch_size, timeout=timeout)
        fundamentals_primary = FMPFundamentalsProvider(config.fmp_api_key, batch_size=config.batch_size, timeout=timeout)
    else:
        price_primary = MockPriceProvider("mock-price", clock=clock)
        fundamentals_primary = MockFundamentalsProvider("mock-fundamentals", clock=clock)

    # Mock fallbacks only ever sit behind a mock primary. Yahoo quotes work without a key.
    if config.yahoo_finance_api_key or config.fmp_api_key:
        price_fallback = YahooFinancePriceProvider(
            config.yahoo_finance_api_key, batch_size=config.batch_size, timeout=timeout,
        )
    else:
        price_fallback = MockPriceProvider("mock-price-fallback", clock=clock)

    if config.exchange_rate_api_key:
        rates_primary = ExchangeRateAPIProvider(config.exchange_rate_api_key, timeout=timeout)
    else:
        rates_primary = MockExchangeRateProvider("mock-exchange", clock=clock)

    if config.open_exchange_rates_app_id:
        rates_fallback = OpenExchangeRatesProvider(config.open_exchange_rates_app_id, timeout=timeout)
    elif config.exchange_rate_api_key:
        rates_fallback = None
    else:
        rates_fallback = MockExchangeRateProvider("mock-exchange-fallback", clock=clock)

    services = DataServices(
        config=config,
        cache=cache,
        breakers=breakers,
        prices=PriceService(
            price_primary, price_fallback,
            cache=PricesCache(cache, config.ttl.prices, clock=clock), **common,
        ),
        exchange_rates=ExchangeRateService(
            rates_primary, rates_fallback,
            cache=ExchangeRatesCache(cache, config.ttl.exchange_rates, clock=clock), **common,
        ),
        # FMP is the only fundamentals vendor; there is no fallback.
        fundamentals=FundamentalsService(
            fundamentals_primary, None,
            cache=FundamentalsCache(cache, config.ttl.fundamentals, clock=clock), **common,
        ),
    )
    logger.info(
        "data_services.built",
        cache_backend=config.cache_backend if store is None else type(store).__name__,
        prices=[price_primary.name, price_fallback.name],
        exchange_rates=[p.name for p in (rates_primary, rates_fallback) if p is not None],
        fundamentals=[fundamentals_primary.name],
    )
    return services
