"""Serve the Telegram webhook and the admin endpoints.

uvicorn owns signal handling here; the app lifespan closes the repository.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

import uvicorn

from media_catalog.api.main import create_app
from media_catalog.config.logging_config import get_logger
from media_catalog.config.settings import get_settings
from media_catalog.use_cases.pipeline_factories import build_services
from scripts.pipeline_runtime import configure_logging

logger = get_logger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the media catalog API")
    parser.add_argument("--host", default="0.0.0.0", help="Bind address")
    parser.add_argument("--port", type=int, default=8000, help="Bind port")
    parser.add_argument("--json-logs", action="store_true", help="Render logs as JSON")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    settings = get_settings()
    configure_logging(settings, json_logs=args.json_logs)

    try:
        services = build_services(settings)
    except ValueError as exc:
        logger.error("pipeline_configuration_invalid", error=str(exc))
        return 1

    logger.info("api_starting", host=args.host, port=args.port)
    # log_config=None keeps uvicorn on the structlog handlers configured above.
    uvicorn.run(create_app(services, settings), host=args.host, port=args.port, log_config=None)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
