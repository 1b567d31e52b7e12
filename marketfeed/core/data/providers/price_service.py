"""PriceService — daily prices through the provider fallback chain."""
from collections.abc import Sequence
from datetime import date

from marketfeed.core.data.cache.domain import PricesCache
from marketfeed.core.data.providers.base import PriceProvider
from marketfeed.core.data.providers.errors import ProviderError, ProviderErrorCode
from marketfeed.core.data.providers.orchestrator import ProviderOrchestrator, normalise_keys, unwrap_batch
from marketfeed.core.data.providers.types import BatchResult, PriceResult, ServiceResult


class PriceService(ProviderOrchestrator[PriceProvider, tuple, PriceResult, list]):
    """
    Usage:
        service = PriceService(fmp, yahoo, cache=PricesCache(client), breakers=registry)
        result = await service.get_prices(["AAPL", "MSFT"])
        result.data        -> list[PriceResult]
        result.freshness   -> FreshnessInfo
    """

    service_name = "price-service"
    operation_name = "fetch_prices"
    cache: PricesCache

    def _batch_key(self, request: tuple, day: date | None = None) -> str:
        return self.cache.batch_key(request, day)

    async def _call(self, provider: PriceProvider, request: tuple) -> BatchResult[PriceResult]:
        return await provider.fetch_prices(list(request))

    def _unwrap(self, provider: PriceProvider, response: BatchResult[PriceResult], request: tuple) -> list[PriceResult]:
        return unwrap_batch(provider.name, response, self.operation_name)

    def _covers(self, values: list[PriceResult], request: tuple) -> bool:
        return set(request) <= {v.symbol.upper() for v in values}

    def _select(self, values: list[PriceResult], request: tuple) -> list[PriceResult]:
        wanted = set(request)
        return [v for v in values if v.symbol.upper() in wanted]

    def _describe(self, request: tuple) -> dict:
        return {"symbols": list(request)}

    async def _cache_individual(self, values: list[PriceResult], ttl: int) -> None:
        await self.cache.set_multiple(values, ttl)

    async def get_prices(
        self, symbols: Sequence[str], *, skip_cache: bool = False, cache_ttl: int | None = None,
    ) -> ServiceResult[list[PriceResult]]:
        return await self.get(normalise_keys(symbols), skip_cache=skip_cache, cache_ttl=cache_ttl)

    async def get_price(self, symbol: str, *, skip_cache: bool = False, cache_ttl: int | None = None) -> PriceResult:
        (wanted,) = normalise_keys([symbol])
        result = await self.get_prices([wanted], skip_cache=skip_cache, cache_ttl=cache_ttl)
        for price in result.data:
            if price.symbol.upper() == wanted:
                return price
        raise ProviderError(
            f"Price not found for symbol: {wanted}",
            ProviderErrorCode.PROVIDER_FAILED,
            self.service_name,
            {"symbol": wanted},
        )

