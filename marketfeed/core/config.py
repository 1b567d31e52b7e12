from dataclasses import dataclass, field

import structlog
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from marketfeed.core.data.providers.base import MAX_BATCH_SIZE
from marketfeed.core.data.providers.circuit_breaker import CircuitBreakerConfig
from marketfeed.core.data.providers.retry import RetryPolicy

logger = structlog.get_logger()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")
    redis_url: str = "redis://localhost:6379"
    cache_enabled: bool = True
    # "memory" keeps everything in-process; "redis" uses redis_url
    cache_backend: str = "memory"
    cache_stale_retention_seconds: int = 7 * 24 * 60 * 60
    provider_retry_attempts: int = 3
    # JSON list in the environment, e.g. PROVIDER_BACKOFF_MS=[1000,2000,4000]
    provider_backoff_ms: list[int] = [1000, 2000, 4000]
    provider_timeout_ms: int = 10_000
    circuit_breaker_threshold: int = 5
    circuit_breaker_reset_ms: int = 300_000
    circuit_breaker_strict_half_open: bool = False
    cache_ttl_prices: int = 86_400
    cache_ttl_exchange_rates: int = 86_400
    cache_ttl_fundamentals: int = 604_800
    provider_batch_size: int = MAX_BATCH_SIZE
    fmp_api_key: str = ""
    yahoo_finance_api_key: str = ""
    exchange_rate_api_key: str = ""
    open_exchange_rates_app_id: str = ""
    environment: str = "development"
    log_level: str = "INFO"

    @field_validator(
        "provider_retry_attempts", "provider_timeout_ms", "circuit_breaker_threshold",
        "circuit_breaker_reset_ms", "cache_ttl_prices", "cache_ttl_exchange_rates",
        "cache_ttl_fundamentals", "provider_batch_size",
    )
    @classmethod
    def _positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be a positive integer")
        return v

    @field_validator("cache_stale_retention_seconds")
    @classmethod
    def _non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("must not be negative")
        return v

    @field_validator("provider_backoff_ms")
    @classmethod
    def _backoff(cls, v: list[int]) -> list[int]:
        if not v or any(ms < 0 for ms in v):
            raise ValueError("must be a non-empty list of non-negative milliseconds")
        return v

    @field_validator("cache_backend")
    @classmethod
    def _backend(cls, v: str) -> str:
        v = v.lower()
        if v not in ("memory", "redis"):
            raise ValueError("must be 'memory' or 'redis'")
        return v


settings = Settings()


@dataclass(frozen=True)
class CacheTTLConfig:
    prices: int = 86_400
    exchange_rates: int = 86_400
    fundamentals: int = 604_800


@dataclass(frozen=True)
class ProviderConfig:
    """Everything the data layer needs, read from the environment exactly once."""
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    ttl: CacheTTLConfig = field(default_factory=CacheTTLConfig)
    cache_enabled: bool = True
    cache_backend: str = "memory"
    redis_url: str = "redis://localhost:6379"
    stale_retention_seconds: int = 7 * 24 * 60 * 60
    batch_size: int = MAX_BATCH_SIZE
    fmp_api_key: str = ""
    yahoo_finance_api_key: str = ""
    exchange_rate_api_key: str = ""
    open_exchange_rates_app_id: str = ""
    environment: str = "development"

    @classmethod
    def from_settings(cls, s: Settings | None = None) -> "ProviderConfig":
        s = s or settings
        return cls(
            retry=RetryPolicy(
                max_attempts=s.provider_retry_attempts,
                backoff=tuple(ms / 1000 for ms in s.provider_backoff_ms),
                timeout=s.provider_timeout_ms / 1000,
            ),
            circuit_breaker=CircuitBreakerConfig(
                failure_threshold=s.circuit_breaker_threshold,
                reset_timeout=s.circuit_breaker_reset_ms / 1000,
                strict_half_open=s.circuit_breaker_strict_half_open,
            ),
            ttl=CacheTTLConfig(
                prices=s.cache_ttl_prices,
                exchange_rates=s.cache_ttl_exchange_rates,
                fundamentals=s.cache_ttl_fundamentals,
            ),
            cache_enabled=s.cache_enabled,
            cache_backend=s.cache_backend,
            redis_url=s.redis_url,
            stale_retention_seconds=s.cache_stale_retention_seconds,
            batch_size=min(s.provider_batch_size, MAX_BATCH_SIZE),
            fmp_api_key=s.fmp_api_key,
            yahoo_finance_api_key=s.yahoo_finance_api_key,
            exchange_rate_api_key=s.exchange_rate_api_key,
            open_exchange_rates_app_id=s.open_exchange_rates_app_id,
            environment=s.environment,
        )

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"


@dataclass(frozen=True)
class VendorRequirement:
    name: str
    env_var: str
    attr: str
    required: bool
    description: str
    get_key_url: str


VENDORS = (
    VendorRequirement(
        "Financial Modeling Prep", "FMP_API_KEY", "fmp_api_key", True,
        "Stock prices and fundamentals", "https://site.financialmodelingprep.com/developer/docs",
    ),
    VendorRequirement(
        "ExchangeRate-API", "EXCHANGE_RATE_API_KEY", "exchange_rate_api_key", True,
        "Currency exchange rates", "https://www.exchangerate-api.com/",
    ),
    VendorRequirement(
        "Yahoo Finance", "YAHOO_FINANCE_API_KEY", "yahoo_finance_api_key", False,
        "Fallback price provider", "https://rapidapi.com/apidojo/api/yahoo-finance1",
    ),
    VendorRequirement(
        "Open Exchange Rates", "OPEN_EXCHANGE_RATES_APP_ID", "open_exchange_rates_app_id", False,
        "Fallback exchange rates provider", "https://openexchangerates.org/signup",
    ),
)


def mock_slots(config: ProviderConfig) -> list[str]:
    """Service slots that build_data_services fills with a mock provider, as "service.role"."""
    slots = []
    if not config.fmp_api_key:
        slots.append("prices.primary")
        if not config.yahoo_finance_api_key:
            slots.append("prices.fallback")
        slots.append("fundamentals.primary")
    if not config.exchange_rate_api_key:
        slots.append("exchange_rates.primary")
        if not config.open_exchange_rates_app_id:
            slots.append("exchange_rates.fallback")
    return slots


def provider_config_status(config: ProviderConfig) -> dict:
    providers = [
        {
            "name": v.name,
            "env_var": v.env_var,
            "configured": bool(getattr(config, v.attr)),
            "required": v.required,
            "description": v.description,
        }
        for v in VENDORS
    ]
    warnings = [
        f"{v.env_var} not set - using MOCK {v.name}. Get key from: {v.get_key_url}"
        for v in VENDORS
        if v.required and not getattr(config, v.attr)
    ]
    if config.exchange_rate_api_key and not config.open_exchange_rates_app_id:
        warnings.append("OPEN_EXCHANGE_RATES_APP_ID not set - exchange rates have no fallback provider")
    slots = mock_slots(config)
    return {
        "is_production": config.is_production,
        "using_mock_providers": bool(slots),
        "mock_slots": slots,
        "providers": providers,
        "warnings": warnings,
    }


def log_provider_config_status(config: ProviderConfig) -> dict:
    status = provider_config_status(config)
    configured = [p["name"] for p in status["providers"] if p["configured"]]
    mocked = status["mock_slots"]

    if not status["using_mock_providers"]:
        logger.info("config.providers_configured", configured=configured)
    elif status["is_production"]:
        logger.error(
            "config.production_using_mock_providers",
            configured=configured, mocked=mocked,
            action="Set required API keys in environment variables",
        )
    else:
        logger.info("config.using_mock_providers", configured=configured, mocked=mocked)
    return status
