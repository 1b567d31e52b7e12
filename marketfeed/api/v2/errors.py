"""Global error handlers."""
import structlog
from fastapi import Request
from fastapi.responses import JSONResponse

from marketfeed.core.data.providers.errors import ProviderError

logger = structlog.get_logger()


async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(
        status_code=422,
        content={"error": str(exc), "code": "VALIDATION_ERROR", "details": {}},
    )


async def provider_error_handler(request: Request, exc: ProviderError):
    logger.warning("api.provider_error", path=request.url.path, code=exc.code.value, provider=exc.provider)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())
