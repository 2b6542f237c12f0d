from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import Settings
from .container import ApplicationContainer, build_container
from .logging import configure_logging
from ..domain.errors import SubscriptionError
from ..presentation.api.routers import payments as payments_router
from ..presentation.api.routers import subscriptions as subscriptions_router

logger = logging.getLogger(__name__)


def create_application() -> FastAPI:
    settings = Settings()

    app = FastAPI(title="CourseHub Subscriptions", lifespan=_create_lifespan(settings))

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(SubscriptionError)
    async def subscription_error_handler(request: Request, exc: SubscriptionError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    app.include_router(subscriptions_router.router)
    app.include_router(payments_router.router)

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        container: ApplicationContainer = app.state.container  # type: ignore[attr-defined]
        return {
            "ok": True,
            "sweep_running": container.scheduler.running,
            "email_enabled": container.email_service.enabled,
            "payments_webhook_enabled": container.payment_webhook.enabled,
        }

    return app


def _create_lifespan(settings: Settings):
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        configure_logging(settings.log_level)
        container = build_container(settings)
        app.state.container = container  # type: ignore[attr-defined]

        await container.scheduler.start()
        logger.info("Subscription service ready (database %s)", settings.database_path)

        try:
            yield
        finally:
            await container.scheduler.stop()
            container.persistence.close()

    return lifespan
