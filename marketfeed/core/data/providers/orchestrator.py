"""ProviderOrchestrator — the cache-first fallback chain shared by every data domain.

For one request the steps run strictly in order, never concurrently:

    fresh cache  ->  primary  ->  fallback  ->  stale cache  ->  ALL_PROVIDERS_FAILED

Each provider call goes through ``with_retry`` and is gated by that
provider's breaker from the shared ``CircuitBreakerRegistry``. A provider
whose breaker refuses the call is skipped without counting a new failure.
Domain services subclass this and fill in the request-specific hooks.
"""
import asyncio
from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta
from typing import Callable, Generic, TypeVar

import structlog

from marketfeed.core.data.cache.domain import CachedBatch, DomainCache
from marketfeed.core.data.providers.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitBreakerState,
)
from marketfeed.core.data.providers.errors import ProviderError, ProviderErrorCode
from marketfeed.core.data.providers.retry import DEFAULT_RETRY_POLICY, RetryPolicy, Sleep, with_retry
from marketfeed.core.data.providers.types import BatchResult, FreshnessInfo, ServiceResult, utc_now

logger = structlog.get_logger()

P = TypeVar("P")   # provider
Q = TypeVar("Q")   # request
R = TypeVar("R")   # single cached result
D = TypeVar("D")   # data handed back to the caller


class ProviderOrchestrator(ABC, Generic[P, Q, R, D]):

    service_name: str = "provider-service"
    operation_name: str = "fetch"

    def __init__(
        self,
        primary: P,
        fallback: P | None = None,
        *,
        cache: DomainCache,
        breakers: CircuitBreakerRegistry | None = None,
        retry_policy: RetryPolicy = DEFAULT_RETRY_POLICY,
        clock: Callable[[], datetime] = utc_now,
        sleep: Sleep = asyncio.sleep,
    ):
        self.primary = primary
        self.fallback = fallback
        self.cache = cache
        self.breakers = breakers or CircuitBreakerRegistry(clock=clock)
        self.retry_policy = retry_policy
        self._clock = clock
        self._sleep = sleep

    # ── domain hooks ─────────────────────────────────────────────────────

    @abstractmethod
    def _batch_key(self, request: Q, day: date | None = None) -> str:
        ...

    @abstractmethod
    async def _call(self, provider: P, request: Q):
        """One raw provider call; retried as a unit."""
        ...

    @abstractmethod
    def _unwrap(self, provider: P, response, request: Q) -> list[R]:
        """Turn a completed response into results; raise ProviderError if it is a failure."""
        ...

    @abstractmethod
    def _covers(self, values: list[R], request: Q) -> bool:
        ...

    @abstractmethod
    def _select(self, values: list[R], request: Q) -> D:
        ...

    @abstractmethod
    def _describe(self, request: Q) -> dict:
        ...

    async def _cache_individual(self, values: list[R], ttl: int) -> None:
        """Symbol-keyed domains also store each result under its own key."""
        return None

    # ── public API ───────────────────────────────────────────────────────

    async def get(self, request: Q, *, skip_cache: bool = False, cache_ttl: int | None = None) -> ServiceResult[D]:
        batch_key = self._batch_key(request)
        ttl = int(cache_ttl if cache_ttl is not None else self.cache.ttl_seconds)

        if not skip_cache:
            cached = await self._lookup(request, ttl)
            if cached is not None and self._is_fresh(cached, ttl):
                logger.debug("service.cache_hit", service=self.service_name, source=cached.metadata.source, **self._describe(request))
                return ServiceResult(
                    data=self._select(cached.values, request),
                    from_cache=True,
                    freshness=FreshnessInfo(
                        source=cached.metadata.source,
                        fetched_at=self._fetched_at(cached),
                        is_stale=False,
                    ),
                    provider="cache",
                )

        for provider, breaker in self._chain():
            values = await self._try_provider(provider, breaker, request)
            if values is None:
                continue
            await self._store(batch_key, values, provider, ttl)
            return ServiceResult(
                data=self._select(values, request),
                from_cache=False,
                freshness=FreshnessInfo(source=provider.name, fetched_at=self._clock(), is_stale=False),
                provider=provider.name,
            )

        stale = await self._lookup(request, ttl + self.cache.client.stale_retention_seconds, allow_expired=True)
        if stale is not None:
            fetched_at = self._fetched_at(stale)
            logger.warning(
                "service.serving_stale", service=self.service_name,
                stale_since=fetched_at.isoformat(), **self._describe(request),
            )
            return ServiceResult(
                data=self._select([v.as_stale() for v in stale.values], request),
                from_cache=True,
                freshness=FreshnessInfo(
                    source=stale.metadata.source,
                    fetched_at=fetched_at,
                    is_stale=True,
                    stale_since=fetched_at,
                ),
                provider="cache",
            )

        details = {
            **self._describe(request),
            "primary_provider": self.primary.name,
            "fallback_provider": self.fallback.name if self.fallback is not None else None,
        }
        logger.error("service.all_providers_failed", service=self.service_name, **details)
        raise ProviderError(
            f"{self.operation_name} failed for {self._describe_short(request)}: "
            f"all providers failed and no cache available",
            ProviderErrorCode.ALL_PROVIDERS_FAILED,
            self.service_name,
            details,
        )

    async def health_check(self) -> dict[str, bool | None]:
        primary = await self._safe_health_check(self.primary)
        fallback = await self._safe_health_check(self.fallback) if self.fallback is not None else None
        return {"primary": primary, "fallback": fallback}

    def get_circuit_breaker_states(self) -> dict[str, CircuitBreakerState | None]:
        return {
            "primary": self.breakers.get_breaker(self.primary.name).get_state(),
            "fallback": (
                self.breakers.get_breaker(self.fallback.name).get_state()
                if self.fallback is not None else None
            ),
        }

    # ── chain steps ──────────────────────────────────────────────────────

    def _chain(self) -> list[tuple[P, CircuitBreaker]]:
        chain = [(self.primary, self.breakers.get_breaker(self.primary.name))]
        if self.fallback is not None:
            chain.append((self.fallback, self.breakers.get_breaker(self.fallback.name)))
        return chain

    async def _try_provider(self, provider: P, breaker: CircuitBreaker, request: Q) -> list[R] | None:
        if not breaker.allow_request():
            state = breaker.get_state()
            logger.info(
                "provider.circuit_open", provider=provider.name,
                next_attempt_at=state.next_attempt_at.isoformat() if state.next_attempt_at else None,
            )
            return None

        logger.info("provider.attempt", provider=provider.name, service=self.service_name, **self._describe(request))
        try:
            response = await with_retry(
                lambda: self._call(provider, request),
                self.retry_policy,
                provider_name=provider.name,
                operation_name=self.operation_name,
                sleep=self._sleep,
            )
            values = self._unwrap(provider, response, request)
        except asyncio.CancelledError:
            # A cancelled trial call must not leave the probe claimed forever.
            if breaker.is_half_open():
                breaker.record_failure()
            raise
        except Exception as e:
            breaker.record_failure()
            logger.warning(
                "provider.failed", provider=provider.name, service=self.service_name,
                error=str(e), code=getattr(getattr(e, "code", None), "value", None),
                circuit_state=breaker.get_state().state.value,
            )
            return None

        breaker.record_success()
        logger.info("provider.ok", provider=provider.name, service=self.service_name, results=len(values))
        return values

    async def _store(self, batch_key: str, values: list[R], provider: P, ttl: int) -> None:
        try:
            await self.cache.set_batch(batch_key, values, provider.name, ttl)
            await self._cache_individual(values, ttl)
        except Exception as e:
            logger.warning("service.cache_store_failed", service=self.service_name, key=batch_key, error=str(e))

    # ── helpers ──────────────────────────────────────────────────────────

    async def _lookup(self, request: Q, window: int, *, allow_expired: bool = False) -> CachedBatch | None:
        """
        Newest cached batch covering the request. Batch keys carry the day they
        were written, so walk back one day at a time across the window (seconds).
        """
        today = self._clock().date()
        for offset in range(window // 86400 + 1):
            day = today - timedelta(days=offset)
            cached = await self.cache.get_batch(self._batch_key(request, day), allow_expired=allow_expired)
            if cached is not None and self._covers(cached.values, request):
                return cached
        return None

    def _fetched_at(self, cached: CachedBatch) -> datetime:
        stamps = [v.fetched_at for v in cached.values]
        return min(stamps) if stamps else cached.metadata.cached_at

    def _is_fresh(self, cached: CachedBatch, ttl: int) -> bool:
        if cached.expired or not cached.values:
            return False
        return self._clock() - self._fetched_at(cached) <= timedelta(seconds=ttl)

    def _describe_short(self, request: Q) -> str:
        return ", ".join(f"{k}={v}" for k, v in self._describe(request).items())

    async def _safe_health_check(self, provider: P) -> bool:
        try:
            return bool(await provider.health_check())
        except Exception as e:
            logger.warning("provider.health_check_failed", provider=provider.name, error=str(e))
            return False


def normalise_keys(keys) -> tuple[str, ...]:
    """Strip, upper-case and de-duplicate while keeping order. Empty input is an error."""
    if isinstance(keys, str):
        keys = [keys]
    cleaned = tuple(dict.fromkeys(k.strip().upper() for k in keys if k and k.strip()))
    if not cleaned:
        raise ValueError("At least one symbol or currency code is required")
    return cleaned


def unwrap_batch(provider_name: str, response: BatchResult, operation_name: str) -> list:
    """Results of a batch call; only an empty result list alongside errors is a failure."""
    if response.failed:
        raise ProviderError(
            f"{operation_name} returned no results ({len(response.errors)} errors)",
            ProviderErrorCode.PROVIDER_FAILED,
            provider_name,
            {"errors": dict(response.errors)},
        )
    if response.errors:
        logger.warning(
            "provider.partial_results", provider=provider_name,
            results=len(response.results), failed_keys=sorted(response.errors),
        )
    return list(response.results)
