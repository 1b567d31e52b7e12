"""ExchangeRateService — currency rates through the provider fallback chain."""
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date

from marketfeed.core.data.cache.domain import ExchangeRatesCache
from marketfeed.core.data.providers.base import ExchangeRateProvider
from marketfeed.core.data.providers.errors import ProviderError, ProviderErrorCode
from marketfeed.core.data.providers.orchestrator import ProviderOrchestrator, normalise_keys
from marketfeed.core.data.providers.types import ExchangeRateResult, ServiceResult


@dataclass(frozen=True)
class RateQuery:
    base: str
    targets: tuple[str, ...]

    @classmethod
    def build(cls, base: str, targets: Sequence[str]) -> "RateQuery":
        (base,) = normalise_keys([base])
        return cls(base=base, targets=normalise_keys(targets))


class ExchangeRateService(
    ProviderOrchestrator[ExchangeRateProvider, RateQuery, ExchangeRateResult, ExchangeRateResult]
):
    """
    One provider call answers one base currency for many targets, so the
    cached batch holds a single ExchangeRateResult and there is no per-key
    fan-out.
    """

    service_name = "exchange-rate-service"
    operation_name = "fetch_rates"
    cache: ExchangeRatesCache

    def _batch_key(self, request: RateQuery, day: date | None = None) -> str:
        return self.cache.rates_batch_key(request.base, request.targets, day)

    async def _call(self, provider: ExchangeRateProvider, request: RateQuery) -> ExchangeRateResult:
        return await provider.fetch_rates(request.base, list(request.targets))

    def _unwrap(self, provider, response: ExchangeRateResult, request: RateQuery) -> list[ExchangeRateResult]:
        if response.base.upper() != request.base:
            raise ProviderError(
                f"Provider answered base {response.base}, expected {request.base}",
                ProviderErrorCode.INVALID_RESPONSE,
                provider.name,
                {"expected_base": request.base, "received_base": response.base},
            )
        return [response]

    def _covers(self, values: list[ExchangeRateResult], request: RateQuery) -> bool:
        if len(values) != 1 or values[0].base.upper() != request.base:
            return False
        return set(request.targets) <= set(values[0].rates)

    def _select(self, values: list[ExchangeRateResult], request: RateQuery) -> ExchangeRateResult:
        return values[0].restricted_to(request.targets)

    def _describe(self, request: RateQuery) -> dict:
        return {"base": request.base, "targets": list(request.targets)}

    async def get_rates(
        self, base: str, targets: Sequence[str], *, skip_cache: bool = False, cache_ttl: int | None = None,
    ) -> ServiceResult[ExchangeRateResult]:
        return await self.get(RateQuery.build(base, targets), skip_cache=skip_cache, cache_ttl=cache_ttl)

    async def get_rate(
        self, base: str, target: str, *, skip_cache: bool = False, cache_ttl: int | None = None,
    ) -> str:
        query = RateQuery.build(base, [target])
        result = await self.get(query, skip_cache=skip_cache, cache_ttl=cache_ttl)
        rate = result.data.rates.get(query.targets[0])
        if rate is None:
            raise ProviderError(
                f"Exchange rate not found for {query.base} -> {query.targets[0]}",
                ProviderErrorCode.PROVIDER_FAILED,
                self.service_name,
                {"base": query.base, "target": query.targets[0]},
            )
        return rate
