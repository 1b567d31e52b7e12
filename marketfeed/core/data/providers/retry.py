"""Retry executor — fixed backoff schedule with a per-attempt deadline.

A provider call is attempted up to ``max_attempts`` times. Each attempt races
the operation against ``timeout``; the loser is cancelled so a late result is
never observed. Between attempts the executor sleeps
``backoff[min(attempt - 1, len(backoff) - 1)]`` seconds; there is no sleep
after the last attempt. Rate-limit errors are re-raised at once, since
retrying only deepens the vendor's throttling.
"""
import asyncio
import time
from dataclasses import asdict, dataclass
from typing import Awaitable, Callable, TypeVar

import structlog

from marketfeed.core.data.providers.errors import ProviderError, ProviderErrorCode

logger = structlog.get_logger()

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff: tuple[float, ...] = (1.0, 2.0, 4.0)   # seconds
    timeout: float = 10.0                            # seconds per attempt

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if not self.backoff:
            raise ValueError("backoff schedule must not be empty")
        if self.timeout <= 0:
            raise ValueError("timeout must be positive")

    def delay_after(self, attempt: int) -> float:
        return self.backoff[min(attempt - 1, len(self.backoff) - 1)]


DEFAULT_RETRY_POLICY = RetryPolicy()


@dataclass
class RetryAttempt:
    attempt: int
    error: str
    duration: float


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    *,
    provider_name: str = "unknown",
    operation_name: str = "operation",
    sleep: Sleep = asyncio.sleep,
) -> T:
    attempts: list[RetryAttempt] = []
    last_error: Exception | None = None

    for attempt in range(1, policy.max_attempts + 1):
        started = time.monotonic()
        try:
            result = await asyncio.wait_for(operation(), timeout=policy.timeout)
        except ProviderError as e:
            if e.is_rate_limited:
                logger.warning(
                    "retry.rate_limited",
                    provider=provider_name, operation=operation_name, attempt=attempt,
                )
                raise
            last_error = e
        except asyncio.TimeoutError:
            last_error = ProviderError(
                f"Request timed out after {policy.timeout}s",
                ProviderErrorCode.TIMEOUT,
                provider_name,
                {"timeout": policy.timeout, "attempt": attempt},
            )
        except Exception as e:
            last_error = e
        else:
            if attempt > 1:
                logger.info(
                    "retry.succeeded",
                    provider=provider_name, operation=operation_name,
                    attempt=attempt, previous_failures=attempt - 1,
                )
            return result

        duration = time.monotonic() - started
        attempts.append(RetryAttempt(attempt=attempt, error=str(last_error), duration=duration))
        logger.warning(
            "retry.attempt_failed",
            provider=provider_name, operation=operation_name,
            attempt=attempt, max_attempts=policy.max_attempts,
            error=str(last_error), duration_s=round(duration, 3),
        )

        if attempt < policy.max_attempts:
            delay = policy.delay_after(attempt)
            logger.info(
                "retry.backoff",
                provider=provider_name, operation=operation_name,
                next_attempt=attempt + 1, delay_s=delay,
            )
            await sleep(delay)

    logger.error(
        "retry.exhausted",
        provider=provider_name, operation=operation_name,
        total_attempts=policy.max_attempts,
        attempts=[asdict(a) for a in attempts],
        final_error=str(last_error),
    )
    raise ProviderError(
        f"{operation_name} failed after {policy.max_attempts} attempts: {last_error}",
        ProviderErrorCode.PROVIDER_FAILED,
        provider_name,
        {
            "attempts": [asdict(a) for a in attempts],
            "total_attempts": policy.max_attempts,
        },
    )


def create_retry_wrapper(
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    *,
    provider_name: str = "unknown",
    operation_name: str = "operation",
    sleep: Sleep = asyncio.sleep,
):
    """Bind retry options once; the returned coroutine function takes the operation."""

    async def run(operation: Callable[[], Awaitable[T]], name: str | None = None) -> T:
        return await with_retry(
            operation, policy,
            provider_name=provider_name,
            operation_name=name or operation_name,
            sleep=sleep,
        )

    return run
