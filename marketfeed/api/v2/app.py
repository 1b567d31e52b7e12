"""FastAPI application — marketfeed v2."""
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from marketfeed.api.v2 import data, health
from marketfeed.api.v2.errors import provider_error_handler, value_error_handler
from marketfeed.core.config import ProviderConfig, log_provider_config_status, settings
from marketfeed.core.data.providers.errors import ProviderError
from marketfeed.core.data.services import DataServices, build_data_services
from marketfeed.core.logging import configure_logging

logger = structlog.get_logger()

VERSION = "2.0.0"


def create_app(services: DataServices | None = None) -> FastAPI:
    """Services passed in are used as-is (tests); otherwise they are built from settings at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if services is None:
            configure_logging(settings.log_level)
            config = ProviderConfig.from_settings(settings)
            app.state.data_services = build_data_services(config)
        else:
            app.state.data_services = services
        log_provider_config_status(app.state.data_services.config)
        logger.info("startup", version=VERSION, cache_backend=app.state.data_services.config.cache_backend)
        yield
        await app.state.data_services.close()
        logger.info("shutdown")

    app = FastAPI(
        title="marketfeed API",
        version=VERSION,
        description="Resilient market-data access: prices, exchange rates and fundamentals",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(data.router, prefix="/api/v2")
    app.include_router(health.router, prefix="/api/v2")

    app.add_exception_handler(ProviderError, provider_error_handler)
    app.add_exception_handler(ValueError, value_error_handler)

    @app.get("/health")
    async def health_check():
        return {"status": "ok", "version": VERSION}

    return app


app = create_app()
