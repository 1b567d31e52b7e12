"""Mock providers — stand in for vendors when API keys are missing, and in tests.

Behaviour is switchable at runtime: succeed/fail (with any error code), a
response delay, the health-check answer, and per-key custom values.
"""
import asyncio
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable

from marketfeed.core.data.providers.base import ExchangeRateProvider, FundamentalsProvider, PriceProvider
from marketfeed.core.data.providers.errors import ProviderError, ProviderErrorCode
from marketfeed.core.data.providers.types import (
    BatchResult,
    ExchangeRateResult,
    FundamentalsResult,
    PriceResult,
    utc_now,
)


@dataclass
class MockBehaviour:
    should_succeed: bool = True
    delay: float = 0.0
    healthy: bool = True
    error_code: ProviderErrorCode = ProviderErrorCode.PROVIDER_FAILED
    error_message: str = "Mock provider failure"


class _MockProvider:

    default_name = "mock"

    def __init__(
        self,
        name: str | None = None,
        *,
        clock: Callable[[], datetime] = utc_now,
        **behaviour,
    ):
        self._name = name or self.default_name
        self.behaviour = MockBehaviour(**behaviour)
        self.call_count = 0
        self.failing_keys: set[str] = set()
        self._clock = clock

    @property
    def name(self) -> str:
        return self._name

    def configure(self, **behaviour) -> None:
        self.behaviour = replace(self.behaviour, **behaviour)

    def set_success(self) -> None:
        self.behaviour.should_succeed = True

    def set_failure(
        self,
        message: str = "Mock provider failure",
        code: ProviderErrorCode = ProviderErrorCode.PROVIDER_FAILED,
    ) -> None:
        self.behaviour.should_succeed = False
        self.behaviour.error_message = message
        self.behaviour.error_code = code

    def set_delay(self, seconds: float) -> None:
        self.behaviour.delay = seconds

    def fail_keys(self, *keys: str) -> None:
        """Report these keys as per-item errors while the call itself succeeds."""
        self.failing_keys.update(k.upper() for k in keys)

    async def _respond(self) -> None:
        self.call_count += 1
        if self.behaviour.delay > 0:
            await asyncio.sleep(self.behaviour.delay)
        if not self.behaviour.should_succeed:
            raise ProviderError(self.behaviour.error_message, self.behaviour.error_code, self.name)

    async def health_check(self) -> bool:
        if self.behaviour.delay > 0:
            await asyncio.sleep(self.behaviour.delay)
        return self.behaviour.healthy


class MockPriceProvider(_MockProvider, PriceProvider):

    default_name = "mock-price"

    def __init__(self, name: str | None = None, **kwargs):
        super().__init__(name, **kwargs)
        self._prices: dict[str, dict] = {}

    def set_price(self, symbol: str, close: str, **fields) -> None:
        self._prices[symbol.upper()] = {"close": close, **fields}

    async def fetch_prices(self, symbols: list[str]) -> BatchResult[PriceResult]:
        await self._respond()
        now = self._clock()
        batch = BatchResult()
        for symbol in symbols:
            if symbol.upper() in self.failing_keys:
                batch.errors[symbol] = "mock per-symbol failure"
                continue
            values = {"open": "99.50", "high": "101.00", "low": "98.00", "close": "100.00", "volume": "1000000"}
            values.update(self._prices.get(symbol.upper(), {}))
            batch.results.append(
                PriceResult(symbol=symbol, source=self.name, fetched_at=now, price_date=now.date(), **values)
            )
        return batch


class MockExchangeRateProvider(_MockProvider, ExchangeRateProvider):

    default_name = "mock-exchange"

    def __init__(self, name: str | None = None, **kwargs):
        super().__init__(name, **kwargs)
        self._rates: dict[str, str] = {}

    def set_rate(self, currency: str, rate: str) -> None:
        self._rates[currency.upper()] = rate

    async def fetch_rates(self, base: str, targets: list[str]) -> ExchangeRateResult:
        await self._respond()
        now = self._clock()
        rates = {}
        for target in targets:
            if target.upper() in self.failing_keys:
                continue
            rates[target] = self._rates.get(target.upper(), "1.0000" if target == base else "1.2345")
        return ExchangeRateResult(base=base, rates=rates, source=self.name, fetched_at=now, rate_date=now.date())


class MockFundamentalsProvider(_MockProvider, FundamentalsProvider):

    default_name = "mock-fundamentals"

    def __init__(self, name: str | None = None, **kwargs):
        super().__init__(name, **kwargs)
        self._fundamentals: dict[str, dict] = {}

    def set_fundamentals(self, symbol: str, **fields) -> None:
        self._fundamentals[symbol.upper()] = fields

    async def fetch_fundamentals(self, symbols: list[str]) -> BatchResult[FundamentalsResult]:
        await self._respond()
        now = self._clock()
        batch = BatchResult()
        for symbol in symbols:
            if symbol.upper() in self.failing_keys:
                batch.errors[symbol] = "mock per-symbol failure"
                continue
            values = {
                "pe_ratio": "15.50",
                "pb_ratio": "2.10",
                "dividend_yield": "2.50",
                "market_cap": "1000000000",
                "revenue": "500000000",
                "earnings": "50000000",
                "sector": "Technology",
                "industry": "Software",
            }
            values.update(self._fundamentals.get(symbol.upper(), {}))
            batch.results.append(
                FundamentalsResult(symbol=symbol, source=self.name, fetched_at=now, data_date=now.date(), **values)
            )
        return batch
