"""
AgroAlert — FastAPI Application.

Run: agroalert-api  (or: uvicorn agroalert.main:app --port 8002)

Routes:
  - /api/v1/alerts/*  ← alert listing, ad-hoc evaluation, stats, test message
  - GET /health       ← liveness probe
"""

from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from agroalert.api.routers.alerts import router as alerts_router
from agroalert.config import Settings, settings as default_settings
from agroalert.logging_config import configure_logging
from agroalert.middleware.error_handler import ErrorHandlerMiddleware
from agroalert.services.notification_service import (
    NotificationService,
    build_notification_service,
)

logger = structlog.get_logger(__name__)


def create_app(
    service: Optional[NotificationService] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    When `service` is given it is used as-is and the lifespan neither builds
    nor closes it.
    """
    cfg = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("agroalert_api_starting", version=cfg.app_version)
        owned = service is None
        if owned:
            app.state.notification_service = await build_notification_service(cfg)
            if cfg.api_embed_scheduler:
                if cfg.run_evaluation_on_start:
                    await app.state.notification_service.trigger_evaluation_now()
                app.state.notification_service.start()
        yield
        if owned:
            await app.state.notification_service.close()
        logger.info("agroalert_api_shutdown")

    app = FastAPI(
        title=cfg.app_name,
        description=(
            "Weather-condition alerting and notification scheduling for farms.\n\n"
            "Evaluation → Alert scheduling → WhatsApp dispatch"
        ),
        version=cfg.app_version,
        lifespan=lifespan,
        docs_url="/docs" if cfg.debug else None,
        redoc_url="/redoc" if cfg.debug else None,
        openapi_tags=[
            {"name": "health", "description": "Liveness probe"},
            {"name": "alerts", "description": "Alert listing, evaluation, dispatch stats"},
        ],
    )
    if service is not None:
        app.state.notification_service = service

    # Catches everything below CORS, returns structured JSON
    app.add_middleware(ErrorHandlerMiddleware)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(alerts_router)       # /api/v1/alerts/*

    @app.get("/health", tags=["health"])
    async def health():
        """Liveness probe. Does NOT check dependencies."""
        return {
            "status": "ok",
            "version": cfg.app_version,
            "service": "agroalert",
        }

    return app


configure_logging()
app = create_app()


def run() -> None:
    import uvicorn

    uvicorn.run(
        "agroalert.main:app",
        host=default_settings.api_host,
        port=default_settings.api_port,
        reload=default_settings.debug,
        log_level=default_settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
