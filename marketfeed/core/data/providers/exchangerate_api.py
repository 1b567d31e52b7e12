"""ExchangeRate-API provider (v6) — the primary FX source, plus helpers shared by the FX adapters."""
from datetime import date, datetime, timedelta
from typing import Callable

import aiohttp
import structlog
from aiolimiter import AsyncLimiter

from marketfeed.core.data.providers.base import ExchangeRateProvider
from marketfeed.core.data.providers.errors import ProviderError, ProviderErrorCode
from marketfeed.core.data.providers.http import VendorClient
from marketfeed.core.data.providers.types import ExchangeRateResult, utc_now

logger = structlog.get_logger()

EXCHANGE_RATE_API_BASE = "https://v6.exchangerate-api.com/v6"

SUPPORTED_CURRENCIES = ("USD", "EUR", "GBP", "BRL", "CAD", "AUD", "JPY", "CHF")


def previous_trading_day(day: date) -> date:
    """T-1 for FX: Sunday and Monday both roll back to Friday."""
    weekday = day.weekday()
    if weekday == 6:
        return day - timedelta(days=2)
    if weekday == 0:
        return day - timedelta(days=3)
    return day - timedelta(days=1)


def check_currencies(provider_name: str, base: str, targets: list[str]) -> None:
    unsupported = [c for c in [base, *targets] if c not in SUPPORTED_CURRENCIES]
    if unsupported:
        raise ProviderError(
            f"Unsupported currencies: {', '.join(unsupported)}. "
            f"Supported currencies: {', '.join(SUPPORTED_CURRENCIES)}",
            ProviderErrorCode.INVALID_RESPONSE,
            provider_name,
            {"unsupported": unsupported, "supported_currencies": list(SUPPORTED_CURRENCIES)},
        )


def pick_rates(provider_name: str, base: str, targets: list[str], available: dict) -> dict:
    rates = {}
    for target in targets:
        if target in available:
            rates[target] = available[target]
        else:
            logger.warning("provider.rate_missing", provider=provider_name, base=base, target=target)
    return rates


class ExchangeRateAPIProvider(ExchangeRateProvider):

    def __init__(
        self,
        api_key: str = "",
        *,
        base_url: str = EXCHANGE_RATE_API_BASE,
        timeout: float = 10.0,
        session: aiohttp.ClientSession | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._api_key = api_key
        self._clock = clock
        # Free tier: 1500 requests per month; keep bursts polite.
        self._client = VendorClient(self.name, base_url, limiter=AsyncLimiter(2, 1), timeout=timeout, session=session)
        if not api_key:
            logger.warning("provider.no_api_key", provider=self.name)

    @property
    def name(self) -> str:
        return "exchangerate-api"

    async def fetch_rates(self, base: str, targets: list[str]) -> ExchangeRateResult:
        check_currencies(self.name, base, targets)
        if not self._api_key:
            raise ProviderError("API key is required for ExchangeRate-API", ProviderErrorCode.PROVIDER_FAILED, self.name)

        logger.info("provider.fetch_rates", provider=self.name, base=base, targets=targets)
        payload = await self._client.get_json(f"/{self._api_key}/latest/{base}")
        return self.parse(payload, base, targets)

    def parse(self, payload, base: str, targets: list[str]) -> ExchangeRateResult:
        if not isinstance(payload, dict) or payload.get("result") != "success" or not payload.get("conversion_rates"):
            error_type = payload.get("error-type") if isinstance(payload, dict) else None
            raise ProviderError(
                f"API error: {error_type or 'Unknown error'}",
                ProviderErrorCode.INVALID_RESPONSE,
                self.name,
                {"error_type": error_type},
            )
        now = self._clock()
        return ExchangeRateResult(
            base=base,
            rates=pick_rates(self.name, base, targets, payload["conversion_rates"]),
            source=self.name,
            fetched_at=now,
            rate_date=previous_trading_day(now.date()),
        )

    async def health_check(self) -> bool:
        if not self._api_key:
            return False
        try:
            payload = await self._client.get_json(f"/{self._api_key}/latest/USD")
        except ProviderError as e:
            logger.warning("provider.health_check_failed", provider=self.name, error=e.message)
            return False
        return isinstance(payload, dict) and payload.get("result") == "success"
