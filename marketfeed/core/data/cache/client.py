"""Key-value cache adapter with TTL + source metadata.

Entries are stored as ``{"data": ..., "metadata": {...}}`` built from
primitives only. The store keeps an entry for ``ttl + stale_retention``
seconds, but ``get()`` reports it absent once ``expires_at`` has passed unless
the caller asks for expired data. The services serve that retained tail,
labelled stale, when every live provider is down.
"""
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

import msgpack
import redis.asyncio as redis
import structlog

from marketfeed.core.data.providers.types import utc_now

logger = structlog.get_logger()

DEFAULT_TTL_SECONDS = 86400


class CacheStore(ABC):
    """Physical storage. Values are plain dicts; TTL is enforced by the store."""

    @abstractmethod
    async def get(self, key: str) -> dict | None:
        ...

    @abstractmethod
    async def set(self, key: str, entry: dict, ttl_seconds: int) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...

    @abstractmethod
    async def exists(self, key: str) -> bool:
        ...

    async def close(self) -> None:
        return None


class RedisCacheStore(CacheStore):
    """Redis-backed store using MessagePack serialisation."""

    def __init__(self, redis_url: str = "redis://localhost:6379", client=None):
        self.client = client or redis.from_url(redis_url)

    async def get(self, key: str) -> dict | None:
        raw = await self.client.get(key)
        return msgpack.unpackb(raw, raw=False) if raw else None

    async def set(self, key: str, entry: dict, ttl_seconds: int) -> None:
        await self.client.setex(key, ttl_seconds, msgpack.packb(entry, use_bin_type=True))

    async def delete(self, key: str) -> None:
        await self.client.delete(key)

    async def exists(self, key: str) -> bool:
        return bool(await self.client.exists(key))

    async def close(self) -> None:
        await self.client.aclose()


class InMemoryCacheStore(CacheStore):
    """Process-local store for development and tests.

    Entries are packed with msgpack on write so callers never share mutable
    state with the store, mirroring what a round trip through Redis gives.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._data: dict[str, tuple[bytes, float]] = {}

    async def get(self, key: str) -> dict | None:
        item = self._data.get(key)
        if item is None:
            return None
        raw, deadline = item
        if self._clock() >= deadline:
            del self._data[key]
            return None
        return msgpack.unpackb(raw, raw=False)

    async def set(self, key: str, entry: dict, ttl_seconds: int) -> None:
        self._data[key] = (msgpack.packb(entry, use_bin_type=True), self._clock() + ttl_seconds)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def exists(self, key: str) -> bool:
        return await self.get(key) is not None

    def keys(self) -> list[str]:
        return list(self._data)


@dataclass(frozen=True)
class CacheMetadata:
    cached_at: datetime
    expires_at: datetime
    ttl_seconds: int
    source: str

    def to_dict(self) -> dict:
        return {
            "cached_at": self.cached_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "ttl_seconds": self.ttl_seconds,
            "source": self.source,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CacheMetadata":
        return cls(
            cached_at=datetime.fromisoformat(data["cached_at"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
            ttl_seconds=int(data["ttl_seconds"]),
            source=data.get("source", "cache"),
        )


@dataclass(frozen=True)
class CacheEntry:
    key: str
    data: Any
    metadata: CacheMetadata

    def is_expired(self, now: datetime) -> bool:
        return now >= self.metadata.expires_at


class CacheClient:
    """Typed get/set/delete over a CacheStore. Store errors propagate to the caller."""

    def __init__(
        self,
        store: CacheStore | None = None,
        *,
        enabled: bool = True,
        default_ttl_seconds: int = DEFAULT_TTL_SECONDS,
        stale_retention_seconds: int = 7 * 86400,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store or InMemoryCacheStore()
        self.enabled = enabled
        self.default_ttl_seconds = default_ttl_seconds
        self.stale_retention_seconds = stale_retention_seconds
        self._clock = clock

    async def get(self, key: str, *, allow_expired: bool = False) -> CacheEntry | None:
        if not self.enabled:
            return None
        raw = await self.store.get(key)
        if not raw:
            return None
        entry = CacheEntry(key=key, data=raw["data"], metadata=CacheMetadata.from_dict(raw["metadata"]))
        if not allow_expired and entry.is_expired(self._clock()):
            return None
        return entry

    async def set(self, key: str, value: Any, ttl_seconds: int | None = None, source: str = "manual") -> None:
        if not self.enabled:
            return
        ttl = int(ttl_seconds if ttl_seconds is not None else self.default_ttl_seconds)
        if ttl < 0:
            raise ValueError("ttl_seconds must not be negative")
        if ttl + self.stale_retention_seconds <= 0:
            # Nothing would survive the write.
            return
        now = self._clock()
        metadata = CacheMetadata(
            cached_at=now,
            expires_at=now + timedelta(seconds=ttl),
            ttl_seconds=ttl,
            source=source,
        )
        await self.store.set(
            key,
            {"data": value, "metadata": metadata.to_dict()},
            ttl + self.stale_retention_seconds,
        )

    async def delete(self, key: str) -> None:
        if self.enabled:
            await self.store.delete(key)

    async def delete_many(self, keys: list[str]) -> int:
        """Best-effort bulk delete; returns how many deletes succeeded."""
        if not self.enabled:
            return 0
        deleted = 0
        for key in keys:
            try:
                await self.store.delete(key)
                deleted += 1
            except Exception as e:
                logger.warning("cache.delete_failed", key=key, error=str(e))
        return deleted

    async def exists(self, key: str) -> bool:
        return await self.get(key) is not None

    async def close(self) -> None:
        await self.store.close()
