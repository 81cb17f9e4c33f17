"""Outbox worker that drains caption analysis tasks.

A failed task is recorded once and never rescheduled here. The message row
already carries the ``error`` state, and the stuck-message sweep owns the
decision to move it back to ``pending``.
"""

from __future__ import annotations

from typing import Final, Protocol

from media_catalog.config.logging_config import get_logger
from media_catalog.domain.models import Message
from media_catalog.domain.task_queue import Task, TaskType
from media_catalog.observability.metrics import OUTBOX_TASKS_TOTAL
from media_catalog.observability.tracing import correlation_scope
from media_catalog.ports.task_queue import TaskQueuePort

logger = get_logger(__name__)

DEFAULT_BATCH_SIZE: Final[int] = 8


class CaptionProcessor(Protocol):
    def __call__(self, message_id: str, *, force: bool = False) -> Message | None: ...


def _describe_failure(exc: Exception) -> str:
    return f"{type(exc).__name__}: {exc}"


class CaptionAnalysisWorker:
    """Lease ``caption_analysis`` tasks and run them through the analyzer.

    Args:
        task_queue: Outbox bound to the message store
        process_message: Usually ``CaptionAnalysisService.process_message``
        batch_size: Tasks leased per call to :meth:`process_available_tasks`
    """

    task_type: Final = TaskType.CAPTION_ANALYSIS

    def __init__(
        self,
        *,
        task_queue: TaskQueuePort,
        process_message: CaptionProcessor,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self._queue = task_queue
        self._process_message = process_message
        self._batch_size = batch_size

    def process_available_tasks(self) -> int:
        """Run one leased batch and return how many tasks it held."""
        batch = self._queue.lease(self.task_type, self._batch_size)
        failed = sum(0 if self._run(task) else 1 for task in batch)
        if batch:
            logger.info(
                "caption_batch_finished",
                leased=len(batch),
                failed=failed,
            )
        return len(batch)

    def _run(self, task: Task) -> bool:
        log = logger.bind(task_id=str(task.task_id), attempt=task.attempts)
        try:
            self._analyze(task)
        except Exception as exc:  # noqa: BLE001
            log.exception("caption_task_failed", message_id=task.message_id)
            self._queue.fail(task.task_id, error=_describe_failure(exc), retry_at=None)
            OUTBOX_TASKS_TOTAL.labels(task_type=self.task_type.value, outcome="failed").inc()
            return False

        self._queue.complete(task.task_id)
        OUTBOX_TASKS_TOTAL.labels(task_type=self.task_type.value, outcome="done").inc()
        return True

    def _analyze(self, task: Task) -> None:
        message_id = task.message_id
        if message_id is None:
            raise ValueError("caption analysis task missing message_id")

        with correlation_scope(task.correlation_id) as correlation_id:
            message = self._process_message(message_id)
            logger.info(
                "caption_task_analyzed",
                correlation_id=correlation_id,
                message_id=message_id,
                state=message.processing_state.value if message else None,
            )


__all__ = ["DEFAULT_BATCH_SIZE", "CaptionAnalysisWorker"]
