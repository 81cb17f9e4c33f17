"""Outbox on PostgreSQL.

Leasing uses ``FOR UPDATE SKIP LOCKED`` so concurrent workers never receive
the same task.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from contextlib import AbstractContextManager
from datetime import UTC, datetime
from typing import Any, Final
from uuid import UUID, uuid4

from psycopg2.extras import RealDictCursor

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

INSERT_TASK_SQL: Final[str] = """
    INSERT INTO pipeline_tasks (
        task_id, task_type, payload, priority, run_at, status,
        attempts, max_attempts, idempotency_key
    ) VALUES (
        %(task_id)s, %(task_type)s, %(payload)s, %(priority)s, %(run_at)s,
        %(status)s, 0, %(max_attempts)s, %(idempotency_key)s
    )
    ON CONFLICT (idempotency_key) DO NOTHING
    RETURNING *
"""

SELECT_BY_KEY_SQL: Final[str] = (
    "SELECT * FROM pipeline_tasks WHERE idempotency_key = %(idempotency_key)s"
)

LEASE_SQL: Final[str] = """
    WITH due AS (
        SELECT task_id
        FROM pipeline_tasks
        WHERE status = %(queued)s
          AND task_type = %(task_type)s
          AND run_at <= %(now)s
        ORDER BY priority ASC, run_at ASC
        FOR UPDATE SKIP LOCKED
        LIMIT %(limit)s
    )
    UPDATE pipeline_tasks AS t
    SET status = %(in_progress)s,
        attempts = t.attempts + 1,
        locked_at = %(now)s,
        updated_at = %(now)s
    FROM due
    WHERE t.task_id = due.task_id
    RETURNING t.*
"""

COMPLETE_SQL: Final[str] = """
    UPDATE pipeline_tasks
    SET status = %(done)s, last_error = NULL, locked_at = NULL, updated_at = %(now)s
    WHERE task_id = %(task_id)s
"""

LOCK_TASK_SQL: Final[str] = """
    SELECT attempts, max_attempts, run_at
    FROM pipeline_tasks
    WHERE task_id = %(task_id)s
    FOR UPDATE
"""

FAIL_SQL: Final[str] = """
    UPDATE pipeline_tasks
    SET status = %(status)s,
        run_at = %(run_at)s,
        last_error = %(error)s,
        locked_at = NULL,
        updated_at = %(now)s
    WHERE task_id = %(task_id)s
"""

RELEASE_EXPIRED_SQL: Final[str] = """
    UPDATE pipeline_tasks
    SET status = CASE
            WHEN attempts < max_attempts THEN %(queued)s
            ELSE %(failed)s
        END,
        last_error = %(error)s,
        locked_at = NULL,
        updated_at = %(now)s
    WHERE status = %(in_progress)s
      AND task_type = %(task_type)s
      AND locked_at < %(locked_before)s
"""


class PostgresTaskQueue(TaskQueuePort):
    """Queue over the ``pipeline_tasks`` table.

    Args:
        connection_provider: Returns a context manager yielding a pooled
            psycopg2 connection
    """

    def __init__(self, connection_provider: Callable[[], AbstractContextManager[Any]]):
        self._connection_provider = connection_provider

    def enqueue(self, task: TaskCreate) -> Task:
        params = {
            "task_id": uuid4(),
            "task_type": task.task_type.value,
            "payload": json.dumps(task.payload),
            "priority": task.priority,
            "run_at": as_utc(task.run_at),
            "status": TaskStatus.QUEUED.value,
            "max_attempts": task.max_attempts,
            "idempotency_key": task.idempotency_key,
        }
        with self._connection_provider() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(INSERT_TASK_SQL, params)
                row = cur.fetchone()
                if row is None:
                    # Key already present: hand back the stored task.
                    cur.execute(SELECT_BY_KEY_SQL, params)
                    row = cur.fetchone()
                if row is None:
                    conn.rollback()
                    raise RepositoryError(
                        f"Task vanished after conflict: {task.idempotency_key}"
                    )
                conn.commit()
        return Task.model_validate(dict(row))

    def lease(self, task_type: TaskType, limit: int) -> list[Task]:
        if limit <= 0:
            raise ValueError("limit must be positive")

        params = {
            "queued": TaskStatus.QUEUED.value,
            "in_progress": TaskStatus.IN_PROGRESS.value,
            "task_type": task_type.value,
            "now": datetime.now(tz=UTC),
            "limit": limit,
        }
        with self._connection_provider() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(LEASE_SQL, params)
                rows = cur.fetchall()
                conn.commit()
        return [Task.model_validate(dict(row)) for row in rows]

    def complete(self, task_id: UUID) -> None:
        params = {
            "done": TaskStatus.DONE.value,
            "now": datetime.now(tz=UTC),
            "task_id": task_id,
        }
        with self._connection_provider() as conn:
            with conn.cursor() as cur:
                cur.execute(COMPLETE_SQL, params)
                if cur.rowcount == 0:
                    conn.rollback()
                    raise RepositoryError(f"Task not found: {task_id}")
                conn.commit()

    def fail(self, task_id: UUID, *, error: str, retry_at: datetime | None) -> None:
        with self._connection_provider() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(LOCK_TASK_SQL, {"task_id": task_id})
                row = cur.fetchone()
                if row is None:
                    conn.rollback()
                    raise RepositoryError(f"Task not found: {task_id}")

                requeue = retry_at is not None and row["attempts"] < row["max_attempts"]
                cur.execute(
                    FAIL_SQL,
                    {
                        "status": (
                            TaskStatus.QUEUED.value if requeue else TaskStatus.FAILED.value
                        ),
                        "run_at": as_utc(retry_at) if requeue and retry_at else row["run_at"],
                        "error": error,
                        "now": datetime.now(tz=UTC),
                        "task_id": task_id,
                    },
                )
                conn.commit()
        logger.debug("task_failed", task_id=str(task_id), requeued=requeue)

    def release_expired(self, task_type: TaskType, locked_before: datetime) -> int:
        params = {
            "queued": TaskStatus.QUEUED.value,
            "failed": TaskStatus.FAILED.value,
            "in_progress": TaskStatus.IN_PROGRESS.value,
            "error": LEASE_EXPIRED_ERROR,
            "now": datetime.now(tz=UTC),
            "task_type": task_type.value,
            "locked_before": as_utc(locked_before),
        }
        with self._connection_provider() as conn:
            with conn.cursor() as cur:
                cur.execute(RELEASE_EXPIRED_SQL, params)
                released = cur.rowcount
                conn.commit()
        if released:
            logger.info(
                "expired_task_leases_released",
                task_type=task_type.value,
                released=released,
            )
        return released


__all__ = ["PostgresTaskQueue"]
