"""Company fundamentals through the provider fallback chain (7-day cache)."""
from collections.abc import Sequence
from datetime import date

from marketfeed.core.data.cache.domain import FundamentalsCache
from marketfeed.core.data.providers.base import FundamentalsProvider
from marketfeed.core.data.providers.errors import ProviderError, ProviderErrorCode
from marketfeed.core.data.providers.orchestrator import ProviderOrchestrator, normalise_keys, unwrap_batch
from marketfeed.core.data.providers.types import BatchResult, FundamentalsResult, ServiceResult


class FundamentalsService(ProviderOrchestrator[FundamentalsProvider, tuple, FundamentalsResult, list]):

    service_name = "fundamentals-service"
    operation_name = "fetch_fundamentals"
    cache: FundamentalsCache

    def _batch_key(self, request: tuple, day: date | None = None) -> str:
        return self.cache.batch_key(request, day)

    async def _call(self, provider: FundamentalsProvider, request: tuple) -> BatchResult[FundamentalsResult]:
        return await provider.fetch_fundamentals(list(request))

    def _unwrap(self, provider, response, request: tuple) -> list[FundamentalsResult]:
        return unwrap_batch(provider.name, response, self.operation_name)

    def _covers(self, values: list[FundamentalsResult], request: tuple) -> bool:
        return set(request) <= {v.symbol.upper() for v in values}

    def _select(self, values: list[FundamentalsResult], request: tuple) -> list[FundamentalsResult]:
        wanted = set(request)
        return [v for v in values if v.symbol.upper() in wanted]

    def _describe(self, request: tuple) -> dict:
        return {"symbols": list(request)}

    async def _cache_individual(self, values: list[FundamentalsResult], ttl: int) -> None:
        await self.cache.set_multiple(values, ttl)

    async def get_fundamentals(
        self, symbols: Sequence[str], *, skip_cache: bool = False, cache_ttl: int | None = None,
    ) -> ServiceResult[list[FundamentalsResult]]:
        return await self.get(normalise_keys(symbols), skip_cache=skip_cache, cache_ttl=cache_ttl)

    async def get_fundamental(
        self, symbol: str, *, skip_cache: bool = False, cache_ttl: int | None = None,
    ) -> FundamentalsResult:
        (wanted,) = normalise_keys([symbol])
        result = await self.get_fundamentals([wanted], skip_cache=skip_cache, cache_ttl=cache_ttl)
        for item in result.data:
            if item.symbol.upper() == wanted:
                return item
        raise ProviderError(
            f"Fundamentals not found for symbol: {wanted}",
            ProviderErrorCode.PROVIDER_FAILED,
            self.service_name,
            {"symbol": wanted},
        )
