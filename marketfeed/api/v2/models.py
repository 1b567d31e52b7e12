"""Pydantic response models for the data and health endpoints."""
from __future__ import annotations

from pydantic import BaseModel, Field


# ── Shared ───────────────────────────────────────────────────────────────


class Freshness(BaseModel):
    source: str
    fetched_at: str
    is_stale: bool = False
    stale_since: str | None = None


class ErrorResponse(BaseModel):
    error: str
    code: str
    provider: str | None = None
    details: dict = Field(default_factory=dict)


# ── Data ─────────────────────────────────────────────────────────────────


class Price(BaseModel):
    symbol: str
    close: str
    currency: str = "USD"
    open: str | None = None
    high: str | None = None
    low: str | None = None
    volume: str | None = None
    price_date: str
    source: str
    fetched_at: str
    is_stale: bool = False


class PricesResponse(BaseModel):
    data: list[Price] = Field(default_factory=list)
    from_cache: bool
    provider: str
    freshness: Freshness


class ExchangeRates(BaseModel):
    base: str
    rates: dict[str, str] = Field(default_factory=dict)
    rate_date: str
    source: str
    fetched_at: str
    is_stale: bool = False


class ExchangeRatesResponse(BaseModel):
    data: ExchangeRates
    from_cache: bool
    provider: str
    freshness: Freshness


class Fundamentals(BaseModel):
    symbol: str
    pe_ratio: str | None = None
    pb_ratio: str | None = None
    dividend_yield: str | None = None
    market_cap: str | None = None
    revenue: str | None = None
    earnings: str | None = None
    sector: str | None = None
    industry: str | None = None
    data_date: str
    source: str
    fetched_at: str
    is_stale: bool = False


class FundamentalsResponse(BaseModel):
    data: list[Fundamentals] = Field(default_factory=list)
    from_cache: bool
    provider: str
    freshness: Freshness


# ── Health ───────────────────────────────────────────────────────────────


class ProviderHealth(BaseModel):
    name: str
    role: str
    configured: bool
    circuit_state: str
    consecutive_failures: int = 0
    next_attempt_at: str | None = None


class ServiceHealth(BaseModel):
    service: str
    providers: list[ProviderHealth] = Field(default_factory=list)


class ProvidersHealthResponse(BaseModel):
    status: str
    using_mock_providers: bool
    services: list[ServiceHealth] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
