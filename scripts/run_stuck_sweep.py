"""Reset stuck messages on a schedule and analyze the pending backlog.

Each sweep moves messages stuck in ``processing_caption`` past the threshold,
orphaned ``has_caption`` rows and retryable ``error`` rows back to
``pending``, releases expired outbox leases, re-runs the fan-out for media
groups whose siblings are still in ``ready_for_sync``, and then (unless
``--no-process-pending``) runs one batch of pending analyses.
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
from media_catalog.use_cases.pipeline_factories import PipelineServices, build_services
from media_catalog.use_cases.repair_operations import RepairOperations
from scripts import pipeline_runtime

logger = get_logger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the stuck-message sweep")
    parser.add_argument(
        "--interval-seconds", type=float, default=300.0, help="Seconds between sweeps"
    )
    parser.add_argument(
        "--process-pending",
        default=True,
        action=argparse.BooleanOptionalAction,
        help="Analyze pending messages after each reset",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=None,
        help="Pending messages per sweep (defaults to PENDING_BATCH_SIZE)",
    )
    parser.add_argument("--run-once", action="store_true", help="Sweep once and exit")
    parser.add_argument("--json-logs", action="store_true", help="Render logs as JSON")
    parser.add_argument(
        "--metrics", action="store_true", help="Serve Prometheus metrics on METRICS_PORT"
    )
    args = parser.parse_args(argv)
    if args.interval_seconds <= 0:
        parser.error("--interval-seconds must be greater than 0")
    if args.batch_size is not None and args.batch_size <= 0:
        parser.error("--batch-size must be greater than 0")
    return args


def sweep(repair: RepairOperations, *, process_pending: bool, batch_size: int | None) -> None:
    """Reset and group re-sync, optionally followed by a pending batch."""
    reset = repair.reset_stuck_messages()
    logger.info("stuck_sweep_reset", **reset.counts)
    groups = repair.sync_pending_media_groups(batch_size)
    logger.info("stuck_sweep_groups", errors=len(groups.errors), **groups.counts)
    if not process_pending:
        return
    pending = repair.process_pending_messages(batch_size)
    logger.info("stuck_sweep_pending", errors=len(pending.errors), **pending.counts)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    settings = get_settings()
    shutdown = pipeline_runtime.start_process(settings, json_logs=args.json_logs)
    if args.metrics:
        ensure_metrics_exporter()

    try:
        services: PipelineServices = build_services(settings)
    except ValueError as exc:
        logger.error("pipeline_configuration_invalid", error=str(exc))
        return 1

    with closing(services.repository):
        pipeline_runtime.run_periodic(
            lambda: sweep(
                services.repair,
                process_pending=args.process_pending,
                batch_size=args.batch_size,
            ),
            shutdown,
            interval_seconds=args.interval_seconds,
            run_once=args.run_once,
        )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
