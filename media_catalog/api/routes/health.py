"""Health check and Prometheus metrics endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

router = APIRouter()


@router.get("/health")
def health_check() -> dict[str, Any]:
    return {"status": "healthy", "service": "media_catalog"}


@router.get("/metrics", include_in_schema=False)
def metrics() -> Response:
    """Expose Prometheus metrics collected by the service."""

    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
