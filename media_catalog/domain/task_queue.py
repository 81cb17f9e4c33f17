"""Outbox task models.

A task is the persisted intent to run one unit of pipeline work. Ingestion
writes the task before it attempts the work, so a crash in between leaves a
queued (or lease-expired) row for a worker or the sweep to pick up.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Final
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, field_validator

DEFAULT_PRIORITY_NORMAL: Final[int] = 50
DEFAULT_MAX_ATTEMPTS: Final[int] = 3
LEASE_EXPIRED_ERROR: Final[str] = "lease expired"


def as_utc(value: datetime) -> datetime:
    """Return ``value`` in UTC; naive values are taken to be UTC already."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class TaskType(StrEnum):
    CAPTION_ANALYSIS = "caption_analysis"


class TaskStatus(StrEnum):
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    FAILED = "failed"


def caption_analysis_key(message_id: str, edit_marker: str) -> str:
    """Idempotency key for one caption revision of one message."""
    return f"{TaskType.CAPTION_ANALYSIS.value}:{message_id}:{edit_marker}"


class TaskCreate(BaseModel):
    """Task to enqueue.

    ``idempotency_key`` is unique across the queue: enqueuing a key twice
    yields the first task.
    """

    task_type: TaskType
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: int = Field(default=DEFAULT_PRIORITY_NORMAL, ge=0)
    run_at: datetime = Field(default_factory=lambda: datetime.now(tz=UTC))
    idempotency_key: str
    max_attempts: int = Field(default=DEFAULT_MAX_ATTEMPTS, gt=0)

    @field_validator("run_at")
    @classmethod
    def _run_at_utc(cls, value: datetime) -> datetime:
        return as_utc(value)

    @classmethod
    def caption_analysis(
        cls,
        message_id: str,
        edit_marker: str,
        *,
        correlation_id: str | None = None,
    ) -> TaskCreate:
        """Analysis task for the current caption revision of ``message_id``."""
        return cls(
            task_type=TaskType.CAPTION_ANALYSIS,
            payload={"message_id": message_id, "correlation_id": correlation_id},
            idempotency_key=caption_analysis_key(message_id, edit_marker),
        )


class Task(BaseModel):
    """Task as stored in ``pipeline_tasks``."""

    task_id: UUID = Field(default_factory=uuid4)
    task_type: TaskType
    payload: dict[str, Any]
    priority: int
    run_at: datetime
    status: TaskStatus
    attempts: int
    max_attempts: int
    idempotency_key: str
    last_error: str | None = None
    created_at: datetime
    updated_at: datetime
    locked_at: datetime | None = None

    @field_validator("run_at", "created_at", "updated_at", "locked_at")
    @classmethod
    def _timestamps_utc(cls, value: datetime | None) -> datetime | None:
        return as_utc(value) if value is not None else None

    @property
    def message_id(self) -> str | None:
        value = self.payload.get("message_id")
        return value if isinstance(value, str) and value else None

    @property
    def correlation_id(self) -> str | None:
        value = self.payload.get("correlation_id")
        return value if isinstance(value, str) and value else None

    @property
    def attempts_left(self) -> bool:
        return self.attempts < self.max_attempts


__all__ = [
    "DEFAULT_MAX_ATTEMPTS",
    "DEFAULT_PRIORITY_NORMAL",
    "LEASE_EXPIRED_ERROR",
    "Task",
    "TaskCreate",
    "TaskStatus",
    "TaskType",
    "as_utc",
    "caption_analysis_key",
]
