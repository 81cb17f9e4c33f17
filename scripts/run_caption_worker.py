"""Drain queued caption analysis tasks.

Needed when ``inline_caption_processing`` is off: the webhook then only
records an outbox task per caption revision and this process analyzes them.
"""

from __future__ import annotations

import argparse
import sys
from contextlib import closing
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from media_catalog.config.logging_config import get_logger
from media_catalog.config.settings import get_settings
from media_catalog.observability.metrics import ensure_metrics_exporter
from media_catalog.use_cases.pipeline_factories import build_services
from media_catalog.workers.pipeline import DEFAULT_BATCH_SIZE, CaptionAnalysisWorker
from scripts import pipeline_runtime

logger = get_logger(__name__)


def _positive_int(raw: str) -> int:
    value = int(raw)
    if value <= 0:
        raise argparse.ArgumentTypeError("must be greater than 0")
    return value


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the caption analysis worker")
    parser.add_argument(
        "--poll-interval-seconds",
        type=float,
        default=2.0,
        help="Wait between leases when the queue is empty",
    )
    parser.add_argument(
        "--batch-size",
        type=_positive_int,
        default=DEFAULT_BATCH_SIZE,
        help="Tasks leased per batch",
    )
    parser.add_argument("--run-once", action="store_true", help="Process one batch and exit")
    parser.add_argument("--json-logs", action="store_true", help="Render logs as JSON")
    parser.add_argument(
        "--metrics", action="store_true", help="Serve Prometheus metrics on METRICS_PORT"
    )
    args = parser.parse_args(argv)
    if args.poll_interval_seconds <= 0:
        parser.error("--poll-interval-seconds must be greater than 0")
    return args


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    settings = get_settings()
    shutdown = pipeline_runtime.start_process(settings, json_logs=args.json_logs)
    if args.metrics:
        ensure_metrics_exporter()

    try:
        services = build_services(settings)
    except ValueError as exc:
        logger.error("pipeline_configuration_invalid", error=str(exc))
        return 1

    with closing(services.repository):
        worker = CaptionAnalysisWorker(
            task_queue=services.task_queue,
            process_message=services.analysis_service.process_message,
            batch_size=args.batch_size,
        )
        pipeline_runtime.run_worker_loop(
            worker,
            shutdown,
            poll_interval=args.poll_interval_seconds,
            run_once=args.run_once,
        )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
