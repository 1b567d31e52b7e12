"""Yahoo Finance quote provider, the fallback price source."""
from datetime import datetime, timezone
from typing import Callable

import aiohttp
import structlog
from aiolimiter import AsyncLimiter

from marketfeed.core.data.providers.base import MAX_BATCH_SIZE, PriceProvider
from marketfeed.core.data.providers.errors import ProviderError, ProviderErrorCode
from marketfeed.core.data.providers.http import VendorClient, fetch_in_chunks
from marketfeed.core.data.providers.types import BatchResult, PriceResult, utc_now

logger = structlog.get_logger()

YAHOO_BASE = "https://query1.finance.yahoo.com"


def parse_yahoo_quotes(payload, symbols: list[str], *, source: str, fetched_at: datetime) -> BatchResult[PriceResult]:
    response = payload.get("quoteResponse") if isinstance(payload, dict) else None
    if not isinstance(response, dict) or not isinstance(response.get("result"), list):
        raise ProviderError("Missing quoteResponse.result", ProviderErrorCode.INVALID_RESPONSE, source)
    if response.get("error"):
        raise ProviderError(
            f"Yahoo Finance API error: {response['error']}",
            ProviderErrorCode.PROVIDER_FAILED,
            source,
            {"error": response["error"]},
        )

    batch = BatchResult()
    returned = set()
    for quote in response["result"]:
        symbol = str(quote.get("symbol", "")).upper()
        returned.add(symbol)
        if quote.get("regularMarketPrice") is None:
            batch.errors[symbol] = "quote has no regularMarketPrice"
            continue
        market_time = quote.get("regularMarketTime")
        price_date = (
            datetime.fromtimestamp(int(market_time), tz=timezone.utc).date() if market_time else fetched_at.date()
        )
        batch.results.append(PriceResult(
            symbol=symbol,
            close=quote["regularMarketPrice"],
            open=quote.get("regularMarketOpen"),
            high=quote.get("regularMarketDayHigh"),
            low=quote.get("regularMarketDayLow"),
            volume=quote.get("regularMarketVolume"),
            currency=quote.get("currency") or "USD",
            source=source,
            fetched_at=fetched_at,
            price_date=price_date,
        ))
    for symbol in symbols:
        if symbol.upper() not in returned:
            batch.errors[symbol] = "Symbol not found in response"
    return batch


class YahooFinancePriceProvider(PriceProvider):

    def __init__(
        self,
        api_key: str = "",
        *,
        base_url: str = YAHOO_BASE,
        batch_size: int = MAX_BATCH_SIZE,
        timeout: float = 10.0,
        session: aiohttp.ClientSession | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._api_key = api_key
        self._batch_size = batch_size
        self._clock = clock
        self._client = VendorClient(
            self.name, base_url, limiter=AsyncLimiter(5, 1), timeout=timeout, session=session,
        )

    @property
    def name(self) -> str:
        return "yahoo-finance"

    def _params(self, symbols: list[str]) -> dict:
        params = {"symbols": ",".join(symbols)}
        if self._api_key:
            params["apikey"] = self._api_key
        return params

    async def fetch_prices(self, symbols: list[str]) -> BatchResult[PriceResult]:
        logger.info("provider.fetch_prices", provider=self.name, symbols=len(symbols))
        return await fetch_in_chunks(self.name, symbols, self._fetch_chunk, self._batch_size)

    async def _fetch_chunk(self, chunk: list[str]) -> BatchResult[PriceResult]:
        payload = await self._client.get_json("/v7/finance/quote", self._params(chunk))
        return parse_yahoo_quotes(payload, chunk, source=self.name, fetched_at=self._clock())

    async def health_check(self) -> bool:
        try:
            payload = await self._client.get_json("/v7/finance/quote", self._params(["AAPL"]))
        except ProviderError as e:
            logger.warning("provider.health_check_failed", provider=self.name, error=e.message)
            return False
        return isinstance(payload, dict) and "quoteResponse" in payload
