"""Outbox on SQLite.

Timestamps are stored as UTC ISO-8601 strings with microseconds so that
string comparison orders them chronologically. Lease and failure updates run
under ``BEGIN IMMEDIATE`` so two workers cannot claim the same row.
"""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

from media_catalog.config.logging_config import get_logger
from media_catalog.domain.exceptions import RepositoryError
from media_catalog.domain.task_queue import (
    LEASE_EXPIRED_ERROR,
    Task,
    TaskCreate,
    TaskStatus,
    TaskType,
    as_utc,
)
from media_catalog.ports.task_queue import TaskQueuePort

logger = get_logger(__name__)

_TIMESTAMP_COLUMNS = ("run_at", "created_at", "updated_at", "locked_at")


def _iso(value: datetime) -> str:
    return as_utc(value).isoformat(timespec="microseconds")


def _now() -> str:
    return _iso(datetime.now(tz=UTC))


def _row_to_task(row: sqlite3.Row) -> Task:
    data: dict[str, Any] = dict(row)
    data["task_id"] = UUID(data["task_id"])
    data["payload"] = json.loads(data["payload"] or "{}")
    for column in _TIMESTAMP_COLUMNS:
        if data.get(column):
            data[column] = datetime.fromisoformat(data[column])
    return Task.model_validate(data)


class SQLiteTaskQueue(TaskQueuePort):
    """Queue over the ``pipeline_tasks`` table of the SQLite store."""

    def __init__(self, connection_factory: Callable[[], sqlite3.Connection]) -> None:
        self._connection_factory = connection_factory

    @contextmanager
    def _transaction(
        self, action: str, *, immediate: bool = False
    ) -> Iterator[sqlite3.Cursor]:
        conn = self._connection_factory()
        try:
            cursor = conn.cursor()
            if immediate:
                cursor.execute("BEGIN IMMEDIATE")
            yield cursor
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise RepositoryError(f"Failed to {action}: {e}") from e
        except RepositoryError:
            conn.rollback()
            raise
        finally:
            conn.close()

    def enqueue(self, task: TaskCreate) -> Task:
        now = _now()
        with self._transaction("enqueue task") as cursor:
            cursor.execute(
                """
                INSERT INTO pipeline_tasks (
                    task_id, task_type, payload, priority, run_at, status,
                    attempts, max_attempts, idempotency_key, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?, ?, ?)
                ON CONFLICT (idempotency_key) DO NOTHING
                """,
                (
                    str(uuid4()),
                    task.task_type.value,
                    json.dumps(task.payload),
                    task.priority,
                    _iso(task.run_at),
                    TaskStatus.QUEUED.value,
                    task.max_attempts,
                    task.idempotency_key,
                    now,
                    now,
                ),
            )
            cursor.execute(
                "SELECT * FROM pipeline_tasks WHERE idempotency_key = ?",
                (task.idempotency_key,),
            )
            row = cursor.fetchone()
        return _row_to_task(row)

    def lease(self, task_type: TaskType, limit: int) -> list[Task]:
        if limit <= 0:
            raise ValueError("limit must be positive")

        now = _now()
        with self._transaction("lease tasks", immediate=True) as cursor:
            cursor.execute(
                """
                SELECT task_id FROM pipeline_tasks
                WHERE status = ? AND task_type = ? AND run_at <= ?
                ORDER BY priority ASC, run_at ASC
                LIMIT ?
                """,
                (TaskStatus.QUEUED.value, task_type.value, now, limit),
            )
            task_ids = [row["task_id"] for row in cursor.fetchall()]
            rows: list[sqlite3.Row] = []
            if task_ids:
                placeholders = ",".join("?" * len(task_ids))
                cursor.execute(
                    f"""
                    UPDATE pipeline_tasks
                    SET status = ?, attempts = attempts + 1, locked_at = ?, updated_at = ?
                    WHERE task_id IN ({placeholders})
                    """,
                    [TaskStatus.IN_PROGRESS.value, now, now, *task_ids],
                )
                cursor.execute(
                    f"""
                    SELECT * FROM pipeline_tasks WHERE task_id IN ({placeholders})
                    ORDER BY priority ASC, run_at ASC
                    """,
                    task_ids,
                )
                rows = cursor.fetchall()
        return [_row_to_task(row) for row in rows]

    def complete(self, task_id: UUID) -> None:
        with self._transaction("complete task") as cursor:
            cursor.execute(
                """
                UPDATE pipeline_tasks
                SET status = ?, last_error = NULL, locked_at = NULL, updated_at = ?
                WHERE task_id = ?
                """,
                (TaskStatus.DONE.value, _now(), str(task_id)),
            )
            if cursor.rowcount == 0:
                raise RepositoryError(f"Task not found: {task_id}")

    def fail(self, task_id: UUID, *, error: str, retry_at: datetime | None) -> None:
        with self._transaction("record task failure", immediate=True) as cursor:
            cursor.execute(
                "SELECT attempts, max_attempts, run_at FROM pipeline_tasks WHERE task_id = ?",
                (str(task_id),),
            )
            row = cursor.fetchone()
            if row is None:
                raise RepositoryError(f"Task not found: {task_id}")

            requeue = retry_at is not None and row["attempts"] < row["max_attempts"]
            cursor.execute(
                """
                UPDATE pipeline_tasks
                SET status = ?, run_at = ?, last_error = ?, locked_at = NULL, updated_at = ?
                WHERE task_id = ?
                """,
                (
                    (TaskStatus.QUEUED if requeue else TaskStatus.FAILED).value,
                    _iso(retry_at) if requeue and retry_at else row["run_at"],
                    error,
                    _now(),
                    str(task_id),
                ),
            )
        logger.debug("task_failed", task_id=str(task_id), requeued=requeue)

    def release_expired(self, task_type: TaskType, locked_before: datetime) -> int:
        with self._transaction("release expired leases", immediate=True) as cursor:
            cursor.execute(
                """
                UPDATE pipeline_tasks
                SET status = CASE WHEN attempts < max_attempts THEN ? ELSE ? END,
                    last_error = ?, locked_at = NULL, updated_at = ?
                WHERE status = ? AND task_type = ? AND locked_at < ?
                """,
                (
                    TaskStatus.QUEUED.value,
                    TaskStatus.FAILED.value,
                    LEASE_EXPIRED_ERROR,
                    _now(),
                    TaskStatus.IN_PROGRESS.value,
                    task_type.value,
                    _iso(locked_before),
                ),
            )
            released = cursor.rowcount
        if released:
            logger.info(
                "expired_task_leases_released",
                task_type=task_type.value,
                released=released,
            )
        return released


__all__ = ["SQLiteTaskQueue"]
