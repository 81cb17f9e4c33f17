"""Prometheus metrics for the ingestion pipeline.

The API process exposes these through ``GET /metrics``. Standalone workers and
the sweep call :func:`ensure_metrics_exporter` to serve them on ``METRICS_PORT``.
"""

from __future__ import annotations

import os
import threading
from typing import Final

from prometheus_client import Counter, start_http_server

from media_catalog.config.logging_config import get_logger

logger = get_logger(__name__)

WEBHOOK_UPDATES_TOTAL: Final[Counter] = Counter(
    "media_catalog_webhook_updates_total",
    "Inbound chat platform updates by kind and outcome",
    labelnames=("kind", "action"),
)

CAPTION_ANALYSES_TOTAL: Final[Counter] = Counter(
    "media_catalog_caption_analyses_total",
    "Caption analyses by parsing method and outcome",
    labelnames=("method", "outcome"),
)

GROUP_SIBLING_UPDATES_TOTAL: Final[Counter] = Counter(
    "media_catalog_group_sibling_updates_total",
    "Media group sibling updates by outcome",
    labelnames=("outcome",),
)

STUCK_RESETS_TOTAL: Final[Counter] = Counter(
    "media_catalog_stuck_resets_total",
    "Messages reset to pending by the stuck-message sweep",
)

OUTBOX_TASKS_TOTAL: Final[Counter] = Counter(
    "media_catalog_outbox_tasks_total",
    "Outbox tasks finished by workers, by type and outcome",
    labelnames=("task_type", "outcome"),
)

DEFAULT_METRICS_PORT: Final[int] = 9000

_exporter_lock = threading.Lock()
_exporter_port: int | None = None


def metrics_port() -> int:
    """Port from ``METRICS_PORT``; malformed values fall back to the default."""
    raw = os.getenv("METRICS_PORT", "").strip()
    if not raw:
        return DEFAULT_METRICS_PORT
    if not raw.isdigit():
        logger.warning("invalid_metrics_port", port=raw, fallback=DEFAULT_METRICS_PORT)
        return DEFAULT_METRICS_PORT
    return int(raw)


def ensure_metrics_exporter() -> int:
    """Serve the default registry over HTTP, once per process.

    Returns:
        The port the exporter listens on

    Raises:
        OSError: If the port cannot be bound
    """
    global _exporter_port
    with _exporter_lock:
        if _exporter_port is None:
            port = metrics_port()
            try:
                start_http_server(port)
            except OSError as exc:
                logger.error("metrics_exporter_start_failed", port=port, error=str(exc))
                raise
            _exporter_port = port
            logger.info("metrics_exporter_started", port=port)
        return _exporter_port


__all__ = [
    "CAPTION_ANALYSES_TOTAL",
    "GROUP_SIBLING_UPDATES_TOTAL",
    "OUTBOX_TASKS_TOTAL",
    "STUCK_RESETS_TOTAL",
    "WEBHOOK_UPDATES_TOTAL",
    "ensure_metrics_exporter",
    "metrics_port",
]
