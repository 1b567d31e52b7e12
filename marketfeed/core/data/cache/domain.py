"""Domain caches — prices, exchange rates, fundamentals over one CacheClient.

Key patterns:
    {domain}:{KEY}:{YYYY-MM-DD}                      one symbol / base currency
    {domain}:batch:{YYYY-MM-DD}:{K1,K2,...}          a whole request (keys sorted)
    rates:batch:{YYYY-MM-DD}:{BASE}:{T1,T2,...}      exchange-rate request

Every method here swallows and logs cache failures: a broken cache degrades
to a miss, it never fails the caller.
"""
import asyncio
from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable, Generic, Iterable, TypeVar

import structlog

from marketfeed.core.data.cache.client import CacheClient, CacheMetadata
from marketfeed.core.data.providers.types import (
    ExchangeRateResult,
    FundamentalsResult,
    PriceResult,
    utc_now,
)

logger = structlog.get_logger()

R = TypeVar("R", PriceResult, ExchangeRateResult, FundamentalsResult)

PRICES_TTL = 24 * 3600
EXCHANGE_RATES_TTL = 24 * 3600
FUNDAMENTALS_TTL = 7 * 24 * 3600


@dataclass(frozen=True)
class CachedBatch(Generic[R]):
    values: list[R]
    metadata: CacheMetadata
    expired: bool = False


class DomainCache(Generic[R]):

    prefix: str = ""
    result_type: type = PriceResult
    default_ttl: int = PRICES_TTL

    def __init__(
        self,
        client: CacheClient,
        ttl_seconds: int | None = None,
        *,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.client = client
        self.ttl_seconds = int(ttl_seconds if ttl_seconds is not None else self.default_ttl)
        self._clock = clock

    # ── keys ─────────────────────────────────────────────────────────────

    def _day(self, day: date | None) -> str:
        return (day or self._clock().date()).isoformat()

    def key(self, key: str, day: date | None = None) -> str:
        return f"{self.prefix}:{key.upper()}:{self._day(day)}"

    def batch_key(self, keys: Iterable[str], day: date | None = None) -> str:
        joined = ",".join(sorted(k.upper() for k in keys))
        return f"{self.prefix}:batch:{self._day(day)}:{joined}"

    # ── (de)serialisation ────────────────────────────────────────────────

    def _load(self, data: dict) -> R:
        return self.result_type.from_dict(data)

    # ── single-key operations ────────────────────────────────────────────

    async def get(self, key: str, day: date | None = None) -> R | None:
        cache_key = self.key(key, day)
        try:
            entry = await self.client.get(cache_key)
        except Exception as e:
            logger.warning("cache.get_failed", domain=self.prefix, key=cache_key, error=str(e))
            return None
        if entry is None:
            logger.debug("cache.miss", domain=self.prefix, key=cache_key)
            return None
        logger.debug("cache.hit", domain=self.prefix, key=cache_key)
        return self._load(entry.data)

    async def get_as_stale(self, key: str, day: date | None = None) -> R | None:
        """Like get(), but also returns an expired entry, marked stale."""
        cache_key = self.key(key, day)
        try:
            entry = await self.client.get(cache_key, allow_expired=True)
        except Exception as e:
            logger.warning("cache.get_failed", domain=self.prefix, key=cache_key, error=str(e))
            return None
        if entry is None:
            return None
        logger.info("cache.serving_stale", domain=self.prefix, key=cache_key)
        return self._load(entry.data).as_stale()

    async def set(self, value: R, ttl: int | None = None) -> None:
        cache_key = self.key(value.key, value.data_date)
        ttl = ttl if ttl is not None else self.ttl_seconds
        try:
            await self.client.set(cache_key, value.to_dict(), ttl, value.source)
        except Exception as e:
            logger.warning("cache.set_failed", domain=self.prefix, key=cache_key, error=str(e))
            return
        logger.debug("cache.stored", domain=self.prefix, key=cache_key, ttl_s=ttl)

    async def get_multiple(self, keys: Iterable[str], day: date | None = None) -> dict[str, R]:
        keys = list(keys)
        settled = await asyncio.gather(*(self.get(k, day) for k in keys), return_exceptions=True)
        found: dict[str, R] = {}
        for key, value in zip(keys, settled):
            if isinstance(value, BaseException) or value is None:
                continue
            found[key.upper()] = value
        logger.debug(
            "cache.batch_lookup", domain=self.prefix,
            requested=len(keys), hits=len(found), misses=len(keys) - len(found),
        )
        return found

    async def set_multiple(self, values: Iterable[R], ttl: int | None = None) -> None:
        values = list(values)
        settled = await asyncio.gather(*(self.set(v, ttl) for v in values), return_exceptions=True)
        failures = sum(1 for s in settled if isinstance(s, BaseException))
        logger.debug("cache.batch_store", domain=self.prefix, total=len(values), failures=failures)

    async def delete(self, key: str, day: date | None = None) -> None:
        cache_key = self.key(key, day)
        try:
            await self.client.delete(cache_key)
        except Exception as e:
            logger.warning("cache.delete_failed", domain=self.prefix, key=cache_key, error=str(e))
            return
        logger.debug("cache.deleted", domain=self.prefix, key=cache_key)

    # ── whole-request operations (used by the services) ──────────────────

    async def get_batch(self, batch_key: str, *, allow_expired: bool = False) -> CachedBatch[R] | None:
        try:
            entry = await self.client.get(batch_key, allow_expired=allow_expired)
            if entry is None:
                return None
            values = [self._load(item) for item in entry.data]
        except Exception as e:
            logger.warning("cache.get_failed", domain=self.prefix, key=batch_key, error=str(e))
            return None
        return CachedBatch(
            values=values,
            metadata=entry.metadata,
            expired=entry.is_expired(self._clock()),
        )

    async def set_batch(self, batch_key: str, values: list[R], source: str, ttl: int | None = None) -> None:
        ttl = ttl if ttl is not None else self.ttl_seconds
        try:
            await self.client.set(batch_key, [v.to_dict() for v in values], ttl, source)
        except Exception as e:
            logger.warning("cache.set_failed", domain=self.prefix, key=batch_key, error=str(e))
            return
        logger.debug("cache.stored", domain=self.prefix, key=batch_key, count=len(values), ttl_s=ttl)


class PricesCache(DomainCache[PriceResult]):
    prefix = "prices"
    result_type = PriceResult
    default_ttl = PRICES_TTL


class FundamentalsCache(DomainCache[FundamentalsResult]):
    prefix = "fundamentals"
    result_type = FundamentalsResult
    default_ttl = FUNDAMENTALS_TTL


class ExchangeRatesCache(DomainCache[ExchangeRateResult]):
    prefix = "rates"
    result_type = ExchangeRateResult
    default_ttl = EXCHANGE_RATES_TTL

    def rates_batch_key(self, base: str, targets: Iterable[str], day: date | None = None) -> str:
        joined = ",".join(sorted(t.upper() for t in targets))
        return f"{self.prefix}:batch:{self._day(day)}:{base.upper()}:{joined}"
