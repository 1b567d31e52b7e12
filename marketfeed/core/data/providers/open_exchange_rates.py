"""Open Exchange Rates provider — the fallback FX source.

The free tier only serves USD-based rates, so other bases are derived:
base/target = (USD/target) / (USD/base).
"""
from datetime import datetime
from decimal import Decimal
from typing import Callable

import aiohttp
import structlog
from aiolimiter import AsyncLimiter

from marketfeed.core.data.providers.base import ExchangeRateProvider
from marketfeed.core.data.providers.errors import ProviderError, ProviderErrorCode
from marketfeed.core.data.providers.exchangerate_api import check_currencies, pick_rates, previous_trading_day
from marketfeed.core.data.providers.http import VendorClient
from marketfeed.core.data.providers.types import ExchangeRateResult, utc_now

logger = structlog.get_logger()

OPEN_EXCHANGE_RATES_BASE = "https://openexchangerates.org/api"


def rebase(provider_name: str, usd_rates: dict, base: str, targets: list[str]) -> dict:
    if base == "USD":
        return pick_rates(provider_name, base, targets, usd_rates)
    base_rate = usd_rates.get(base)
    if not base_rate:
        raise ProviderError(
            f"Could not get USD to {base} rate for conversion",
            ProviderErrorCode.INVALID_RESPONSE,
            provider_name,
            {"base": base, "available_rates": sorted(usd_rates)},
        )
    converted = {}
    for target in targets:
        if target == base:
            converted[target] = "1"
        elif target in usd_rates:
            converted[target] = str(Decimal(usd_rates[target]) / Decimal(base_rate))
        else:
            logger.warning("provider.rate_missing", provider=provider_name, base=base, target=target)
    return converted


class OpenExchangeRatesProvider(ExchangeRateProvider):

    def __init__(
        self,
        app_id: str = "",
        *,
        base_url: str = OPEN_EXCHANGE_RATES_BASE,
        timeout: float = 10.0,
        session: aiohttp.ClientSession | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._app_id = app_id
        self._clock = clock
        self._client = VendorClient(self.name, base_url, limiter=AsyncLimiter(2, 1), timeout=timeout, session=session)
        if not app_id:
            logger.warning("provider.no_api_key", provider=self.name)

    @property
    def name(self) -> str:
        return "open-exchange-rates"

    async def fetch_rates(self, base: str, targets: list[str]) -> ExchangeRateResult:
        check_currencies(self.name, base, targets)
        if not self._app_id:
            raise ProviderError("App ID is required for Open Exchange Rates", ProviderErrorCode.PROVIDER_FAILED, self.name)

        symbols = sorted({base, *targets} - {"USD"})
        logger.info("provider.fetch_rates", provider=self.name, base=base, targets=targets)
        payload = await self._client.get_json(
            "/latest.json", {"app_id": self._app_id, "symbols": ",".join(symbols)},
        )
        return self.parse(payload, base, targets)

    def parse(self, payload, base: str, targets: list[str]) -> ExchangeRateResult:
        if not isinstance(payload, dict) or payload.get("error") or not isinstance(payload.get("rates"), dict):
            message = payload.get("description") if isinstance(payload, dict) else None
            raise ProviderError(
                f"API error: {message or 'missing rates'}",
                ProviderErrorCode.INVALID_RESPONSE,
                self.name,
                {"status": payload.get("status") if isinstance(payload, dict) else None},
            )
        usd_rates = {"USD": Decimal(1), **payload["rates"]}
        now = self._clock()
        return ExchangeRateResult(
            base=base,
            rates=rebase(self.name, usd_rates, base, targets),
            source=self.name,
            fetched_at=now,
            rate_date=previous_trading_day(now.date()),
        )

    async def health_check(self) -> bool:
        if not self._app_id:
            return False
        try:
            payload = await self._client.get_json("/latest.json", {"app_id": self._app_id, "symbols": "EUR"})
        except ProviderError as e:
            logger.warning("provider.health_check_failed", provider=self.name, error=e.message)
            return False
        return isinstance(payload, dict) and "rates" in payload
