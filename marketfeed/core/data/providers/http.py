"""Shared HTTP plumbing for vendor adapters: rate-limited GETs, status mapping, chunked batches."""
import asyncio
import json
from decimal import Decimal
from typing import Any, Awaitable, Callable

import aiohttp
import structlog
from aiolimiter import AsyncLimiter

from marketfeed.core.data.providers.base import MAX_BATCH_SIZE, chunked
from marketfeed.core.data.providers.errors import ProviderError, ProviderErrorCode
from marketfeed.core.data.providers.types import BatchResult

logger = structlog.get_logger()


def parse_json(provider_name: str, body: str) -> Any:
    """Decode vendor JSON keeping every float as Decimal."""
    try:
        return json.loads(body, parse_float=Decimal)
    except ValueError as e:
        raise ProviderError(
            f"Malformed JSON from {provider_name}: {e}",
            ProviderErrorCode.INVALID_RESPONSE,
            provider_name,
            {"body": body[:200]},
        ) from e


def raise_for_status(provider_name: str, status: int, body: str) -> None:
    if 200 <= status < 300:
        return
    details = {"status": status, "body": body[:200]}
    if status == 429:
        raise ProviderError("Rate limit exceeded", ProviderErrorCode.RATE_LIMITED, provider_name, details)
    if status in (401, 403):
        raise ProviderError(
            "Authentication failed - invalid or missing API key",
            ProviderErrorCode.INVALID_RESPONSE,
            provider_name,
            details,
        )
    raise ProviderError(f"HTTP error: {status}", ProviderErrorCode.PROVIDER_FAILED, provider_name, details)


class VendorClient:
    """
    One adapter's view of a vendor API.

    A session can be injected (tests, or an app-wide session); otherwise each
    request opens its own, like the rest of the aiohttp code in this package.
    """

    def __init__(
        self,
        provider_name: str,
        base_url: str,
        *,
        limiter: AsyncLimiter | None = None,
        timeout: float = 10.0,
        session: aiohttp.ClientSession | None = None,
    ):
        self.provider_name = provider_name
        self.base_url = base_url.rstrip("/")
        self._limiter = limiter or AsyncLimiter(10, 1)
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session

    async def get_json(self, path: str, params: dict | None = None) -> Any:
        url = f"{self.base_url}/{path.lstrip('/')}"
        try:
            async with self._limiter:
                if self._session is not None:
                    status, body = await self._get(self._session, url, params)
                else:
                    async with aiohttp.ClientSession(timeout=self._timeout) as session:
                        status, body = await self._get(session, url, params)
        except asyncio.TimeoutError as e:
            raise ProviderError(
                f"Request timed out after {self._timeout.total}s",
                ProviderErrorCode.TIMEOUT,
                self.provider_name,
                {"path": path},
            ) from e
        except aiohttp.ClientError as e:
            raise ProviderError(
                f"Network error: {e}", ProviderErrorCode.PROVIDER_FAILED, self.provider_name, {"path": path}
            ) from e

        raise_for_status(self.provider_name, status, body)
        return parse_json(self.provider_name, body)

    async def _get(self, session: aiohttp.ClientSession, url: str, params: dict | None) -> tuple[int, str]:
        async with session.get(url, params=params) as resp:
            return resp.status, await resp.text()


async def fetch_in_chunks(
    provider_name: str,
    keys: list[str],
    fetch_chunk: Callable[[list[str]], Awaitable[BatchResult]],
    batch_size: int = MAX_BATCH_SIZE,
) -> BatchResult:
    """
    Run fetch_chunk over keys in batches of at most 50.

    A failed chunk marks its keys as per-item errors and the loop moves on;
    RATE_LIMITED is the exception and propagates at once.
    """
    batch = BatchResult()
    chunks = chunked(list(keys), batch_size)
    for index, chunk in enumerate(chunks, start=1):
        logger.debug("provider.batch", provider=provider_name, batch=index, total_batches=len(chunks), size=len(chunk))
        try:
            batch.extend(await fetch_chunk(chunk))
        except ProviderError as e:
            if e.is_rate_limited:
                raise
            logger.warning("provider.batch_failed", provider=provider_name, batch=index, error=e.message)
            batch.errors.update({key: e.message for key in chunk})
    logger.info(
        "provider.fetch_completed", provider=provider_name,
        succeeded=len(batch.results), failed=len(batch.errors),
    )
    return batch
