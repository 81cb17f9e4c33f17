"""Shared FastAPI dependencies."""

from __future__ import annotations

import secrets

from fastapi import HTTPException, Request, Security, status
from fastapi.security import APIKeyHeader

from media_catalog.config.settings import Settings
from media_catalog.use_cases.pipeline_factories import PipelineServices

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def get_services(request: Request) -> PipelineServices:
    return request.app.state.services  # type: ignore[no-any-return]


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings  # type: ignore[no-any-return]


def require_api_key(
    request: Request, x_api_key: str | None = Security(api_key_header)
) -> str:
    """Validate the provided API key against the configured admin key."""

    settings = get_app_settings(request)
    configured = (
        settings.admin_api_key.get_secret_value() if settings.admin_api_key else ""
    )

    if not configured:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="API authentication is not configured.",
        )

    if x_api_key is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing API key.",
        )

    if secrets.compare_digest(x_api_key, configured):
        return x_api_key

    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail="Invalid API key.",
    )
