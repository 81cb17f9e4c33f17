"""Outbox port shared by the SQLite and PostgreSQL queues."""

from __future__ import annotations

from datetime import datetime
from typing import Protocol, runtime_checkable
from uuid import UUID

from media_catalog.domain.task_queue import Task, TaskCreate, TaskType


@runtime_checkable
class TaskQueuePort(Protocol):
    def enqueue(self, task: TaskCreate) -> Task:
        """Persist ``task``; an existing idempotency key returns the stored task."""

    def lease(self, task_type: TaskType, limit: int) -> list[Task]:
        """Move up to ``limit`` due tasks to ``in_progress``, lowest priority first."""

    def complete(self, task_id: UUID) -> None: ...

    def fail(self, task_id: UUID, *, error: str, retry_at: datetime | None) -> None:
        """Record a failure; requeue at ``retry_at`` while attempts remain."""

    def release_expired(self, task_type: TaskType, locked_before: datetime) -> int:
        """Return tasks leased before ``locked_before`` to the queue.

        Tasks without attempts left are failed instead. Returns the number of
        tasks touched.
        """


__all__ = ["TaskQueuePort"]
