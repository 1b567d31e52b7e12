"""Per-provider circuit breaker.

The state machine lives in ``transition()``, a pure function over an
immutable ``CircuitBreakerState``. ``CircuitBreaker`` only holds the current
state behind a lock, applies the lazy open -> half-open check before every
event, and logs transitions.

    closed    --failure x threshold-->  open
    open      --reset_timeout elapsed--> half-open   (evaluated on every query)
    half-open --success-->               closed
    half-open --failure-->               open        (cooldown restarts)

Half-open admits a trial call. By default concurrent callers that observe
half-open may each probe; with ``strict_half_open`` the first caller claims
the probe and the rest are refused until it reports back.
"""
import asyncio
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Awaitable, Callable, TypeVar

import structlog

from marketfeed.core.data.providers.errors import ProviderError, ProviderErrorCode
from marketfeed.core.data.providers.types import utc_now

logger = structlog.get_logger()

T = TypeVar("T")
Clock = Callable[[], datetime]


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


class BreakerEvent(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    TICK = "tick"       # time passes; may move open -> half-open
    PROBE = "probe"     # a trial call is admitted while half-open
    RESET = "reset"


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int = 5
    reset_timeout: float = 300.0   # seconds
    strict_half_open: bool = False

    def __post_init__(self):
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if self.reset_timeout < 0:
            raise ValueError("reset_timeout must be >= 0")


DEFAULT_CIRCUIT_BREAKER_CONFIG = CircuitBreakerConfig()


@dataclass(frozen=True)
class CircuitBreakerState:
    provider: str
    state: CircuitState = CircuitState.CLOSED
    failures: int = 0
    last_failure: datetime | None = None
    opened_at: datetime | None = None
    next_attempt_at: datetime | None = None
    probe_in_flight: bool = False

    def to_dict(self) -> dict:
        def iso(dt):
            return dt.isoformat() if dt else None
        return {
            "provider": self.provider,
            "state": self.state.value,
            "failures": self.failures,
            "last_failure": iso(self.last_failure),
            "opened_at": iso(self.opened_at),
            "next_attempt_at": iso(self.next_attempt_at),
        }


def _open(state: CircuitBreakerState, now: datetime, config: CircuitBreakerConfig) -> CircuitBreakerState:
    return replace(
        state,
        state=CircuitState.OPEN,
        opened_at=now,
        next_attempt_at=now + timedelta(seconds=config.reset_timeout),
        probe_in_flight=False,
    )


def transition(
    state: CircuitBreakerState,
    event: BreakerEvent,
    *,
    now: datetime,
    config: CircuitBreakerConfig = DEFAULT_CIRCUIT_BREAKER_CONFIG,
) -> CircuitBreakerState:
    """Return the state that follows ``event``. Never mutates its input."""
    if event is BreakerEvent.RESET:
        return CircuitBreakerState(provider=state.provider)

    if event is BreakerEvent.TICK:
        if (
            state.state is CircuitState.OPEN
            and state.opened_at is not None
            and now - state.opened_at >= timedelta(seconds=config.reset_timeout)
        ):
            return replace(state, state=CircuitState.HALF_OPEN, next_attempt_at=None, probe_in_flight=False)
        return state

    if event is BreakerEvent.PROBE:
        if state.state is CircuitState.HALF_OPEN:
            return replace(state, probe_in_flight=True)
        return state

    if event is BreakerEvent.SUCCESS:
        if state.state is CircuitState.HALF_OPEN:
            return replace(
                state, state=CircuitState.CLOSED, failures=0, last_failure=None,
                opened_at=None, next_attempt_at=None, probe_in_flight=False,
            )
        return replace(state, failures=0, last_failure=None)

    if event is BreakerEvent.FAILURE:
        failed = replace(state, failures=state.failures + 1, last_failure=now)
        if state.state is CircuitState.HALF_OPEN:
            return _open(failed, now, config)
        if state.state is CircuitState.CLOSED and failed.failures >= config.failure_threshold:
            return _open(failed, now, config)
        return failed

    raise ValueError(f"Unknown breaker event: {event!r}")


class CircuitBreaker:

    def __init__(
        self,
        provider_name: str,
        config: CircuitBreakerConfig | None = None,
        *,
        clock: Clock = utc_now,
        on_state_change: Callable[[CircuitState, CircuitState], None] | None = None,
    ):
        self.provider_name = provider_name
        self.config = config or DEFAULT_CIRCUIT_BREAKER_CONFIG
        self._clock = clock
        self._on_state_change = on_state_change
        self._lock = threading.Lock()
        self._state = CircuitBreakerState(provider=provider_name)

    # ── state machine plumbing ───────────────────────────────────────────

    def _apply(self, *events: BreakerEvent) -> CircuitBreakerState:
        with self._lock:
            now = self._clock()
            before = self._state
            current = before
            changes = []
            for event in events:
                nxt = transition(current, event, now=now, config=self.config)
                if nxt.state is not current.state:
                    changes.append((current, nxt))
                current = nxt
            self._state = current
        for old, new in changes:
            self._emit(old, new)
        return current

    def _emit(self, old: CircuitBreakerState, new: CircuitBreakerState) -> None:
        logger.info(
            "circuit_breaker.state_change",
            provider=self.provider_name,
            from_state=old.state.value,
            to_state=new.state.value,
            consecutive_failures=new.failures,
        )
        if new.state is CircuitState.OPEN:
            logger.warning(
                "circuit_breaker.opened",
                provider=self.provider_name,
                consecutive_failures=new.failures,
                failure_threshold=self.config.failure_threshold,
                reset_timeout_s=self.config.reset_timeout,
                next_attempt_at=new.next_attempt_at.isoformat() if new.next_attempt_at else None,
            )
        elif new.state is CircuitState.CLOSED:
            logger.info("circuit_breaker.closed", provider=self.provider_name, previous_state=old.state.value)
        if self._on_state_change is not None:
            self._on_state_change(old.state, new.state)

    # ── queries ──────────────────────────────────────────────────────────

    def get_state(self) -> CircuitBreakerState:
        return self._apply(BreakerEvent.TICK)

    def is_open(self) -> bool:
        return self.get_state().state is CircuitState.OPEN

    def is_half_open(self) -> bool:
        return self.get_state().state is CircuitState.HALF_OPEN

    def is_closed(self) -> bool:
        return self.get_state().state is CircuitState.CLOSED

    # ── events ───────────────────────────────────────────────────────────

    def record_success(self) -> None:
        self._apply(BreakerEvent.TICK, BreakerEvent.SUCCESS)

    def record_failure(self) -> None:
        state = self._apply(BreakerEvent.TICK, BreakerEvent.FAILURE)
        if state.state is CircuitState.CLOSED:
            logger.warning(
                "circuit_breaker.failure_recorded",
                provider=self.provider_name,
                consecutive_failures=state.failures,
                failure_threshold=self.config.failure_threshold,
            )

    def allow_request(self) -> bool:
        """Admit or refuse one call. Claims the probe when half-open."""
        with self._lock:
            now = self._clock()
            before = self._state
            current = transition(before, BreakerEvent.TICK, now=now, config=self.config)
            allowed = True
            if current.state is CircuitState.OPEN:
                allowed = False
            elif current.state is CircuitState.HALF_OPEN:
                if self.config.strict_half_open and current.probe_in_flight:
                    allowed = False
                else:
                    current = transition(current, BreakerEvent.PROBE, now=now, config=self.config)
            self._state = current
        if current.state is not before.state:
            self._emit(before, current)
        return allowed

    def check_request(self) -> None:
        if not self.allow_request():
            state = self._state
            raise ProviderError(
                f"Provider {self.provider_name} circuit is open - disabled until "
                f"{state.next_attempt_at.isoformat() if state.next_attempt_at else 'probe completes'}",
                ProviderErrorCode.CIRCUIT_OPEN,
                self.provider_name,
                {
                    "state": state.state.value,
                    "opened_at": state.opened_at.isoformat() if state.opened_at else None,
                    "next_attempt_at": state.next_attempt_at.isoformat() if state.next_attempt_at else None,
                    "consecutive_failures": state.failures,
                },
            )

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        self.check_request()
        try:
            result = await operation()
        except asyncio.CancelledError:
            # A cancelled trial must not leave the probe claimed.
            if self.is_half_open():
                self.record_failure()
            raise
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result

    def reset(self) -> None:
        previous = self._state.state
        self._apply(BreakerEvent.RESET)
        if previous is not CircuitState.CLOSED:
            logger.info("circuit_breaker.manual_reset", provider=self.provider_name, previous_state=previous.value)


class CircuitBreakerRegistry:
    """One breaker per provider name, created on first use and kept for the registry's lifetime."""

    def __init__(self, default_config: CircuitBreakerConfig | None = None, *, clock: Clock = utc_now):
        self.default_config = default_config or DEFAULT_CIRCUIT_BREAKER_CONFIG
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get_breaker(self, provider_name: str, config: CircuitBreakerConfig | None = None) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(provider_name)
            if breaker is None:
                breaker = CircuitBreaker(provider_name, config or self.default_config, clock=self._clock)
                self._breakers[provider_name] = breaker
            return breaker

    def __contains__(self, provider_name: str) -> bool:
        return provider_name in self._breakers

    def names(self) -> list[str]:
        return list(self._breakers)

    def get_all_states(self) -> list[CircuitBreakerState]:
        return [b.get_state() for b in list(self._breakers.values())]

    def reset_all(self) -> None:
        for breaker in list(self._breakers.values()):
            breaker.reset()
