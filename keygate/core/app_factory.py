"""Application factory for the FastAPI app.

Centralizes app construction (metadata, lifespan, middleware, handlers,
routers) to improve testability. The lifespan loads the key table before the
first request and runs the expiry sweeper for the lifetime of the app.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from keygate.api.routes import health_router, keys_router
from keygate.core.config import settings
from keygate.core.exception_handlers import setup_exception_handlers
from keygate.core.logging import configure_logging
from keygate.core.middleware import request_id_middleware
from keygate.core.openapi import apply_openapi_customizations
from keygate.services.factory import create_key_service
from keygate.services.key_service import KeyLifecycleService
from keygate.services.sweeper import ExpirySweeper

logger = logging.getLogger(__name__)


def create_app(
    key_service: KeyLifecycleService | None = None,
    *,
    run_sweeper: bool = True,
    configure_logs: bool = True,
) -> FastAPI:
    """Create and configure the FastAPI application instance.

    Args:
        key_service: Service to serve; built from settings when omitted.
        run_sweeper: Start the background expiry sweeper in the lifespan.
        configure_logs: Install the root logging configuration.

    Returns:
        Configured FastAPI app with middleware, handlers, routers and docs.
    """
    # Logging first so subsequent init logs are formatted as desired
    if configure_logs:
        configure_logging(settings.log)

    service = key_service or create_key_service()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        report = service.load()
        logger.info(
            "app.keys_loaded",
            extra={"source": report.source, "entries": report.entries, "defects": report.defects},
        )
        app.state.key_service = service

        sweeper = ExpirySweeper(
            service,
            interval_seconds=settings.keys.sweep_interval_minutes * 60,
        )
        app.state.sweeper = sweeper
        if run_sweeper:
            await sweeper.run_once()
            sweeper.start()
        try:
            yield
        finally:
            await sweeper.stop()

    app = FastAPI(
        title="Keygate",
        description=(
            "Issues, binds and revokes short-lived access keys tied to one "
            "owner and one hardware fingerprint (HWID). Keys are persisted to "
            "a Lua table consumed by the client application."
        ),
        version="0.1.0",
        lifespan=lifespan,
    )

    # Middleware
    app.middleware("http")(request_id_middleware)

    # Exception handlers
    setup_exception_handlers(app)

    # Routers
    app.include_router(keys_router, prefix="/v1")
    app.include_router(health_router)

    # OpenAPI customizations (security scheme, tags, exemptions)
    apply_openapi_customizations(app)

    return app
