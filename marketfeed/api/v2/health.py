"""Provider health endpoint. Reports breaker state per provider without calling any vendor."""
from fastapi import APIRouter, Depends

from marketfeed.api.v2.data import get_data_services
from marketfeed.api.v2.models import ProvidersHealthResponse
from marketfeed.core.config import provider_config_status
from marketfeed.core.data.providers.circuit_breaker import CircuitState
from marketfeed.core.data.services import DataServices

router = APIRouter(tags=["Health"])


def _is_configured(provider) -> bool:
    return not provider.name.startswith("mock")


@router.get("/health/providers", response_model=ProvidersHealthResponse)
async def get_providers_health(services: DataServices = Depends(get_data_services)):
    degraded = False
    report = []
    for service_name, service in services.services().items():
        states = service.get_circuit_breaker_states()
        providers = []
        for role, provider in (("primary", service.primary), ("fallback", service.fallback)):
            if provider is None:
                continue
            state = states[role]
            degraded = degraded or state.state != CircuitState.CLOSED
            providers.append({
                "name": provider.name,
                "role": role,
                "configured": _is_configured(provider),
                "circuit_state": state.state.value,
                "consecutive_failures": state.failures,
                "next_attempt_at": state.next_attempt_at.isoformat() if state.next_attempt_at else None,
            })
        report.append({"service": service_name, "providers": providers})

    status = provider_config_status(services.config)
    return {
        "status": "degraded" if degraded else "ok",
        "using_mock_providers": status["using_mock_providers"],
        "services": report,
        "warnings": status["warnings"],
    }
