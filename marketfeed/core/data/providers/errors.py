"""Provider error taxonomy — every failure the orchestration layer can report."""
from enum import Enum


class ProviderErrorCode(str, Enum):
    PROVIDER_FAILED = "PROVIDER_FAILED"                # retries exhausted
    CIRCUIT_OPEN = "PROVIDER_CIRCUIT_OPEN"             # breaker rejected the call
    TIMEOUT = "PROVIDER_TIMEOUT"                       # single attempt over deadline
    ALL_PROVIDERS_FAILED = "ALL_PROVIDERS_FAILED"      # chain exhausted, no cache
    INVALID_RESPONSE = "PROVIDER_INVALID_RESPONSE"     # malformed / unsupported payload
    RATE_LIMITED = "PROVIDER_RATE_LIMITED"             # vendor throttled us, never retried


_STATUS_CODES: dict[ProviderErrorCode, int] = {
    ProviderErrorCode.RATE_LIMITED: 429,
    ProviderErrorCode.ALL_PROVIDERS_FAILED: 503,
}


class ProviderError(Exception):
    """Structured failure raised by providers, the retry executor and the services."""

    def __init__(
        self,
        message: str,
        code: ProviderErrorCode,
        provider: str,
        details: dict | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = ProviderErrorCode(code)
        self.provider = provider
        self.details = details or {}

    @property
    def status_code(self) -> int:
        return _STATUS_CODES.get(self.code, 502)

    @property
    def is_rate_limited(self) -> bool:
        return self.code == ProviderErrorCode.RATE_LIMITED

    def to_dict(self) -> dict:
        """Error response body: {error, code, provider, details}."""
        return {
            "error": self.message,
            "code": self.code.value,
            "provider": self.provider,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"ProviderError(code={self.code.value!r}, provider={self.provider!r}, message={self.message!r})"
