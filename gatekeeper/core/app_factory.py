"""Application factory for FastAPI app.

Centralizes app construction (metadata, lifespan, middleware, handlers,
routers) so tests can build fresh instances with their own limiter.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable

from fastapi import FastAPI

from gatekeeper.api.routes import admin_router, admission_router, health_router
from gatekeeper.core.config import settings
from gatekeeper.core.exception_handlers import setup_exception_handlers
from gatekeeper.core.logging import configure_logging
from gatekeeper.core.middleware import request_id_middleware
from gatekeeper.core.openapi import apply_openapi_customizations
from gatekeeper.services.limiter import Limiter, create_limiter

logger = logging.getLogger(__name__)


def create_app(limiter_factory: Callable[[], Limiter] = create_limiter) -> FastAPI:
    """Create and configure the FastAPI application instance.

    Args:
        limiter_factory: Builds the limiter owned by this app; started on
            lifespan startup and closed on shutdown.

    Returns:
        Configured FastAPI app with middleware, handlers, routers and docs.
    """
    # Logging first so subsequent init logs are formatted as desired
    configure_logging(settings.log)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        limiter = limiter_factory()
        state = await limiter.start()
        app.state.limiter = limiter
        logger.info("app.started", extra={"limiter_state": state.value})
        try:
            yield
        finally:
            await limiter.close()
            app.state.limiter = None
            logger.info("app.stopped")

    app = FastAPI(
        title="Gatekeeper",
        description=(
            "Sliding-window admission control backed by Redis with an "
            "in-memory fallback. Denied requests receive HTTP 429 with "
            "retryAfter and a Retry-After header."
        ),
        version="0.1.0",
        lifespan=lifespan,
    )

    app.middleware("http")(request_id_middleware)

    setup_exception_handlers(app)

    app.include_router(admission_router, prefix="/v1")
    app.include_router(admin_router, prefix="/v1")
    app.include_router(health_router)

    apply_openapi_customizations(app)

    return app
