"""Process plumbing shared by the worker, sweep and API scripts."""

from __future__ import annotations

import signal
import threading
from collections.abc import Callable
from types import FrameType
from typing import Final, Protocol

from media_catalog.config.logging_config import get_logger, setup_logging
from media_catalog.config.settings import Settings

logger = get_logger(__name__)

MAX_FAILURE_BACKOFF_SECONDS: Final[float] = 60.0


class ShutdownSignal(Protocol):
    def is_set(self) -> bool: ...

    def wait(self, timeout: float) -> bool: ...


class BatchWorker(Protocol):
    def process_available_tasks(self) -> int: ...


class ShutdownFlag(threading.Event):
    """Event set by SIGTERM or SIGINT; loops wait on it instead of sleeping."""

    def handle(self, signum: int, frame: FrameType | None) -> None:
        logger.info("shutdown_signal_received", signal=signal.Signals(signum).name)
        self.set()

    def install(self) -> ShutdownFlag:
        for signum in (signal.SIGTERM, signal.SIGINT):
            signal.signal(signum, self.handle)
        return self


def configure_logging(settings: Settings, *, json_logs: bool = False) -> None:
    """``--json-logs`` on the command line and ``json_logs`` in settings both
    switch the renderer to JSON.
    """
    use_json = json_logs or settings.json_logs
    setup_logging(log_level=settings.log_level, json_logs=use_json)
    logger.info("logging_configured", level=settings.log_level, json_logs=use_json)


def start_process(settings: Settings, *, json_logs: bool = False) -> ShutdownFlag:
    """Configure logging and return an installed shutdown flag."""
    configure_logging(settings, json_logs=json_logs)
    return ShutdownFlag().install()


def failure_backoff(poll_interval: float, consecutive_failures: int) -> float:
    """Double the wait for each failure in a row, capped at one minute."""
    return min(poll_interval * 2 ** (consecutive_failures - 1), MAX_FAILURE_BACKOFF_SECONDS)


def run_worker_loop(
    worker: BatchWorker,
    shutdown: ShutdownSignal,
    *,
    poll_interval: float,
    run_once: bool = False,
) -> None:
    """Drain the outbox until ``shutdown`` is set.

    A batch that leased work is followed by the next lease right away, an
    empty one waits ``poll_interval`` seconds. Repeated lease failures (a
    locked SQLite file, a lost Postgres connection) back off exponentially.
    """
    logger.info("worker_loop_started", poll_interval=poll_interval, run_once=run_once)
    batches = 0
    failures = 0
    while not shutdown.is_set():
        batches += 1
        try:
            leased = worker.process_available_tasks()
        except Exception:  # noqa: BLE001
            logger.exception("worker_batch_failed", batch=batches)
            if run_once:
                raise
            failures += 1
            delay = failure_backoff(poll_interval, failures)
            logger.info("worker_backing_off", consecutive_failures=failures, delay=delay)
            shutdown.wait(delay)
            continue

        failures = 0
        if run_once:
            break
        if not leased:
            shutdown.wait(poll_interval)

    logger.info("worker_loop_stopped", batches=batches)


def run_periodic(
    action: Callable[[], object],
    shutdown: ShutdownSignal,
    *,
    interval_seconds: float,
    run_once: bool = False,
) -> None:
    """Call ``action`` every ``interval_seconds`` until shutdown.

    A failing run is logged and the next one still happens on schedule.
    """
    logger.info("periodic_loop_started", interval=interval_seconds, run_once=run_once)
    runs = 0
    while not shutdown.is_set():
        runs += 1
        try:
            action()
        except Exception:  # noqa: BLE001
            logger.exception("periodic_run_failed", run=runs)
            if run_once:
                raise
        if run_once:
            break
        shutdown.wait(interval_seconds)

    logger.info("periodic_loop_stopped", runs=runs)


__all__ = [
    "BatchWorker",
    "ShutdownFlag",
    "ShutdownSignal",
    "configure_logging",
    "failure_backoff",
    "run_periodic",
    "run_worker_loop",
    "start_process",
]
