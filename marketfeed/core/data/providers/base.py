"""Abstract providers implemented by every vendor adapter."""
from abc import ABC, abstractmethod

from marketfeed.core.data.providers.types import (
    BatchResult,
    ExchangeRateResult,
    FundamentalsResult,
    PriceResult,
)

# Vendor limit: never send more than this many keys in one call.
MAX_BATCH_SIZE = 50


class _Provider(ABC):

    @property
    @abstractmethod
    def name(self) -> str:
        """Stable key: used for the breaker registry and in every log / error."""
        ...

    @abstractmethod
    async def health_check(self) -> bool:
        ...


class PriceProvider(_Provider):

    @abstractmethod
    async def fetch_prices(self, symbols: list[str]) -> BatchResult[PriceResult]:
        """
        Returns results for the symbols the vendor could price and an error
        message for each one it could not. Raises ProviderError when the call
        as a whole fails (RATE_LIMITED included).
        """
        ...


class ExchangeRateProvider(_Provider):

    @abstractmethod
    async def fetch_rates(self, base: str, targets: list[str]) -> ExchangeRateResult:
        ...


class FundamentalsProvider(_Provider):

    @abstractmethod
    async def fetch_fundamentals(self, symbols: list[str]) -> BatchResult[FundamentalsResult]:
        ...


def chunked(items: list[str], size: int = MAX_BATCH_SIZE) -> list[list[str]]:
    size = max(1, min(size, MAX_BATCH_SIZE))
    return [items[i:i + size] for i in range(0, len(items), size)]
