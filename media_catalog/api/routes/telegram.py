"""Telegram webhook endpoint.

Telegram redelivers any update that is not answered with 2xx, so processing
failures are acknowledged with ``200`` and ``success: false``; only malformed
payloads get a ``400``.
"""

from __future__ import annotations

import secrets
from typing import Any

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from media_catalog.api.dependencies import get_app_settings, get_services
from media_catalog.config.logging_config import get_logger
from media_catalog.config.settings import Settings
from media_catalog.domain.exceptions import DataIntegrityError
from media_catalog.use_cases.pipeline_factories import PipelineServices

logger = get_logger(__name__)
router = APIRouter()

SECRET_HEADER = "X-Telegram-Bot-Api-Secret-Token"
CORRELATION_HEADER = "X-Correlation-ID"


def _verify_secret(settings: Settings, provided: str | None) -> None:
    if settings.telegram_webhook_secret is None:
        return
    expected = settings.telegram_webhook_secret.get_secret_value()
    if not expected:
        return
    if provided is None or not secrets.compare_digest(provided, expected):
        logger.warning("telegram_webhook_secret_rejected")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook secret.",
        )


@router.post("/webhook")
async def telegram_webhook(
    request: Request,
    services: PipelineServices = Depends(get_services),
    settings: Settings = Depends(get_app_settings),
    secret_token: str | None = Header(default=None, alias=SECRET_HEADER),
    correlation_id: str | None = Header(default=None, alias=CORRELATION_HEADER),
) -> JSONResponse:
    """Ingest one Telegram update."""

    _verify_secret(settings, secret_token)

    try:
        body: Any = await request.json()
    except ValueError as exc:
        raise DataIntegrityError("Request body is not valid JSON") from exc

    try:
        result = await run_in_threadpool(
            services.gateway.handle_update, body, correlation_id=correlation_id
        )
    except DataIntegrityError:
        raise
    except Exception as exc:  # noqa: BLE001 - acknowledge to stop redelivery
        logger.exception("telegram_webhook_failed", error=str(exc))
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={
                "success": False,
                "error": str(exc),
                "correlation_id": correlation_id,
            },
        )

    return JSONResponse(status_code=status.HTTP_200_OK, content=result.to_dict())
