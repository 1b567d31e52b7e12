"""Financial Modeling Prep: US equity quotes and company fundamentals."""
from datetime import date, datetime, timezone
from typing import Callable

import aiohttp
import structlog
from aiolimiter import AsyncLimiter

from marketfeed.core.data.providers.base import MAX_BATCH_SIZE, FundamentalsProvider, PriceProvider
from marketfeed.core.data.providers.errors import ProviderError, ProviderErrorCode
from marketfeed.core.data.providers.http import VendorClient, fetch_in_chunks
from marketfeed.core.data.providers.types import BatchResult, FundamentalsResult, PriceResult, utc_now

logger = structlog.get_logger()

FMP_BASE = "https://financialmodelingprep.com/api/v3"


def _quote_date(timestamp, fallback: date) -> date:
    if timestamp is None:
        return fallback
    return datetime.fromtimestamp(int(timestamp), tz=timezone.utc).date()


def parse_fmp_quotes(payload, symbols: list[str], *, source: str, fetched_at: datetime) -> BatchResult[PriceResult]:
    """/quote/{symbols} → one PriceResult per returned row; missing symbols become errors."""
    if not isinstance(payload, list):
        raise ProviderError(
            "Expected a list of quotes", ProviderErrorCode.INVALID_RESPONSE, source, {"type": type(payload).__name__}
        )
    batch = BatchResult()
    returned = set()
    for row in payload:
        symbol = str(row.get("symbol", "")).upper()
        returned.add(symbol)
        if row.get("price") is None:
            batch.errors[symbol] = "quote has no price"
            continue
        batch.results.append(PriceResult(
            symbol=symbol,
            close=row["price"],
            open=row.get("open"),
            high=row.get("dayHigh"),
            low=row.get("dayLow"),
            volume=row.get("volume"),
            source=source,
            fetched_at=fetched_at,
            price_date=_quote_date(row.get("timestamp"), fetched_at.date()),
        ))
    for symbol in symbols:
        if symbol.upper() not in returned:
            batch.errors[symbol] = "Symbol not found in response"
    return batch


def parse_fmp_fundamentals(profile: dict, ratios: dict | None, *, source: str, fetched_at: datetime) -> FundamentalsResult:
    ratios = ratios or {}
    return FundamentalsResult(
        symbol=str(profile["symbol"]).upper(),
        source=source,
        fetched_at=fetched_at,
        data_date=fetched_at.date(),
        pe_ratio=ratios.get("peRatioTTM"),
        pb_ratio=ratios.get("priceToBookRatioTTM"),
        dividend_yield=ratios.get("dividendYielPercentageTTM"),
        market_cap=profile.get("mktCap"),
        sector=profile.get("sector") or None,
        industry=profile.get("industry") or None,
    )


class _FMPBase:

    def __init__(
        self,
        api_key: str = "",
        *,
        batch_size: int = MAX_BATCH_SIZE,
        timeout: float = 10.0,
        session: aiohttp.ClientSession | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._api_key = api_key
        self._batch_size = batch_size
        self._clock = clock
        # 300 requests per minute on the starter plan
        self._client = VendorClient(
            self.name, FMP_BASE, limiter=AsyncLimiter(300, 60), timeout=timeout, session=session,
        )

    def _params(self, **extra) -> dict:
        return {"apikey": self._api_key, **extra}

    async def health_check(self) -> bool:
        if not self._api_key:
            logger.warning("provider.health_check_skipped", provider=self.name, reason="no API key")
            return False
        try:
            payload = await self._client.get_json("/quote/AAPL", self._params())
        except ProviderError as e:
            logger.warning("provider.health_check_failed", provider=self.name, error=e.message)
            return False
        return isinstance(payload, list) and bool(payload)


class FMPPriceProvider(_FMPBase, PriceProvider):

    @property
    def name(self) -> str:
        return "fmp"

    async def fetch_prices(self, symbols: list[str]) -> BatchResult[PriceResult]:
        logger.info("provider.fetch_prices", provider=self.name, symbols=len(symbols))
        return await fetch_in_chunks(self.name, symbols, self._fetch_chunk, self._batch_size)

    async def _fetch_chunk(self, chunk: list[str]) -> BatchResult[PriceResult]:
        payload = await self._client.get_json(f"/quote/{','.join(chunk)}", self._params())
        return parse_fmp_quotes(payload, chunk, source=self.name, fetched_at=self._clock())


class FMPFundamentalsProvider(_FMPBase, FundamentalsProvider):

    @property
    def name(self) -> str:
        return "fmp-fundamentals"

    async def fetch_fundamentals(self, symbols: list[str]) -> BatchResult[FundamentalsResult]:
        logger.info("provider.fetch_fundamentals", provider=self.name, symbols=len(symbols))
        return await fetch_in_chunks(self.name, symbols, self._fetch_chunk, self._batch_size)

    async def _fetch_chunk(self, chunk: list[str]) -> BatchResult[FundamentalsResult]:
        profiles = await self._client.get_json(f"/profile/{','.join(chunk)}", self._params())
        if not isinstance(profiles, list):
            raise ProviderError("Expected a list of profiles", ProviderErrorCode.INVALID_RESPONSE, self.name)

        now = self._clock()
        batch = BatchResult()
        found = {}
        for profile in profiles:
            if profile.get("symbol"):
                found[str(profile["symbol"]).upper()] = profile

        for symbol in chunk:
            profile = found.get(symbol.upper())
            if profile is None:
                batch.errors[symbol] = "Symbol not found in response"
                continue
            ratios = await self._ratios(symbol)
            batch.results.append(parse_fmp_fundamentals(profile, ratios, source=self.name, fetched_at=now))
        return batch

    async def _ratios(self, symbol: str) -> dict | None:
        """TTM ratios are per symbol; a miss here still leaves the profile data usable."""
        try:
            rows = await self._client.get_json(f"/ratios-ttm/{symbol}", self._params())
        except ProviderError as e:
            if e.is_rate_limited:
                raise
            logger.warning("provider.ratios_failed", provider=self.name, symbol=symbol, error=e.message)
            return None
        return rows[0] if isinstance(rows, list) and rows else None
