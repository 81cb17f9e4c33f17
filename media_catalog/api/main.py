"""FastAPI application for the media catalog service."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from media_catalog.api.routes import admin, health, telegram
from media_catalog.config.logging_config import get_logger
from media_catalog.config.settings import Settings
from media_catalog.domain.exceptions import DataIntegrityError
from media_catalog.use_cases.pipeline_factories import PipelineServices

logger = get_logger(__name__)


def create_app(services: PipelineServices, settings: Settings) -> FastAPI:
    """Build the API around already wired pipeline services."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info("media_catalog_api_starting", database_type=settings.database_type)
        yield
        services.repository.close()
        logger.info("media_catalog_api_stopped")

    app = FastAPI(
        title="Media Catalog API",
        description="Telegram media and caption ingestion",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.services = services
    app.state.settings = settings

    @app.exception_handler(DataIntegrityError)
    async def data_integrity_handler(
        request: Request, exc: DataIntegrityError
    ) -> JSONResponse:
        correlation_id = request.headers.get("x-correlation-id")
        logger.warning(
            "webhook_payload_rejected",
            path=request.url.path,
            field=exc.field,
            error=str(exc),
            correlation_id=correlation_id,
        )
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "success": False,
                "error": str(exc),
                "field": exc.field,
                "correlation_id": correlation_id,
            },
        )

    app.include_router(health.router, tags=["health"])
    app.include_router(telegram.router, prefix="/telegram", tags=["telegram"])
    app.include_router(admin.router, prefix="/admin", tags=["admin"])
    return app


__all__ = ["create_app"]
