"""Result envelopes shared by every provider, cache and service.

Numeric values are carried as exact-precision strings, never floats, so
downstream Decimal arithmetic does not inherit binary rounding drift.
Temporal fields serialise to ISO strings because the cache stores only
primitives; from_dict() restores them.
"""
from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Generic, TypeVar


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def decimal_string(value, field_name: str = "value") -> str | None:
    """Normalise a vendor numeric to an exact string. Floats are refused."""
    if value is None:
        return None
    if isinstance(value, bool):
        raise TypeError(f"{field_name} must be numeric, got bool")
    if isinstance(value, float):
        raise TypeError(f"{field_name} must not be a float ({value!r}); pass str or Decimal")
    if isinstance(value, (int, Decimal)):
        return str(value)
    if isinstance(value, str):
        return value
    raise TypeError(f"{field_name} has unsupported type {type(value).__name__}")


def _as_datetime(value) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    dt = datetime.fromisoformat(value)
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def _as_date(value) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(value[:10])


class _Serialisable:
    """to_dict/from_dict for the result dataclasses below."""

    _numeric: tuple[str, ...] = ()
    _datetimes: tuple[str, ...] = ("fetched_at",)
    _dates: tuple[str, ...] = ()

    def _normalise_numerics(self) -> None:
        for name in self._numeric:
            object.__setattr__(self, name, decimal_string(getattr(self, name), name))

    def to_dict(self) -> dict:
        out = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, (datetime, date)):
                value = value.isoformat()
            elif isinstance(value, dict):
                value = dict(value)
            out[f.name] = value
        return out

    @classmethod
    def from_dict(cls, data: dict):
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}
        for name in cls._datetimes:
            if kwargs.get(name) is not None:
                kwargs[name] = _as_datetime(kwargs[name])
        for name in cls._dates:
            if kwargs.get(name) is not None:
                kwargs[name] = _as_date(kwargs[name])
        return cls(**kwargs)

    def as_stale(self):
        return replace(self, is_stale=True)


@dataclass(frozen=True)
class PriceResult(_Serialisable):
    symbol: str
    close: str
    source: str
    fetched_at: datetime
    price_date: date
    currency: str = "USD"
    open: str | None = None
    high: str | None = None
    low: str | None = None
    volume: str | None = None
    is_stale: bool = False

    _numeric = ("close", "open", "high", "low", "volume")
    _dates = ("price_date",)

    def __post_init__(self):
        self._normalise_numerics()

    @property
    def key(self) -> str:
        return self.symbol

    @property
    def data_date(self) -> date:
        return self.price_date


@dataclass(frozen=True)
class ExchangeRateResult(_Serialisable):
    base: str
    rates: dict[str, str]
    source: str
    fetched_at: datetime
    rate_date: date
    is_stale: bool = False

    _dates = ("rate_date",)

    def __post_init__(self):
        object.__setattr__(
            self, "rates", {t: decimal_string(r, f"rates[{t}]") for t, r in self.rates.items()}
        )

    @property
    def key(self) -> str:
        return self.base

    @property
    def data_date(self) -> date:
        return self.rate_date

    def restricted_to(self, targets) -> ExchangeRateResult:
        return replace(self, rates={t: self.rates[t] for t in targets if t in self.rates})


@dataclass(frozen=True)
class FundamentalsResult(_Serialisable):
    symbol: str
    source: str
    fetched_at: datetime
    data_date: date
    pe_ratio: str | None = None
    pb_ratio: str | None = None
    dividend_yield: str | None = None
    market_cap: str | None = None
    revenue: str | None = None
    earnings: str | None = None
    sector: str | None = None
    industry: str | None = None
    is_stale: bool = False

    _numeric = ("pe_ratio", "pb_ratio", "dividend_yield", "market_cap", "revenue", "earnings")
    _dates = ("data_date",)

    def __post_init__(self):
        self._normalise_numerics()

    @property
    def key(self) -> str:
        return self.symbol


R = TypeVar("R")
D = TypeVar("D")


@dataclass
class BatchResult(Generic[R]):
    """Per-key results and per-key errors from one provider call, side by side."""
    results: list[R] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def failed(self) -> bool:
        # Empty with no errors is a legitimate empty answer, not a failure.
        return not self.results and bool(self.errors)

    def extend(self, other: BatchResult[R]) -> None:
        self.results.extend(other.results)
        self.errors.update(other.errors)


@dataclass(frozen=True)
class FreshnessInfo:
    source: str
    fetched_at: datetime
    is_stale: bool = False
    stale_since: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "source": self.source,
            "fetched_at": self.fetched_at.isoformat(),
            "is_stale": self.is_stale,
            "stale_since": self.stale_since.isoformat() if self.stale_since else None,
        }


@dataclass(frozen=True)
class ServiceResult(Generic[D]):
    data: D
    from_cache: bool
    freshness: FreshnessInfo
    provider: str
