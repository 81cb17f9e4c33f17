"""SQLite repository adapter for local storage.

Implements MessageRepositoryProtocol with SQLite backend.
"""

import sqlite3
from collections.abc import Sequence
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from media_catalog.adapters.message_rows import (
    AUDIT_COLUMNS,
    MESSAGE_COLUMNS,
    MUTABLE_MESSAGE_COLUMNS,
    audit_values,
    message_values,
    row_to_audit_entry,
    row_to_message,
)
from media_catalog.adapters.sqlite_task_queue import SQLiteTaskQueue
from media_catalog.config.logging_config import get_logger
from media_catalog.domain.exceptions import RepositoryError
from media_catalog.domain.models import (
    AuditLogEntry,
    Message,
    ProcessingState,
    ProcessingStats,
)
from media_catalog.domain.outcomes import (
    DuplicateFile,
    FileCheck,
    Found,
    MessageLookup,
    NewFile,
    NotFound,
)
from media_catalog.ports.task_queue import TaskQueuePort

logger = get_logger(__name__)


def _to_sqlite(value: Any) -> Any:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value.astimezone(UTC).isoformat(timespec="microseconds")
    if isinstance(value, bool):
        return int(value)
    return value


class SQLiteRepository:
    """SQLite-based repository for local development and tests."""

    def __init__(self, db_path: str) -> None:
        """Initialize repository and ensure schema.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._task_queue = SQLiteTaskQueue(self._get_connection)
        self._create_schema()

    def _get_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    def _create_schema(self) -> None:
        """Create database schema if not exists."""
        logger.info("sqlite_schema_creation_started", db_path=str(self.db_path))
        conn = self._get_connection()
        try:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS messages (
                    id TEXT PRIMARY KEY,
                    telegram_message_id INTEGER NOT NULL,
                    chat_id INTEGER NOT NULL,
                    chat_type TEXT,
                    chat_title TEXT,
                    media_group_id TEXT,
                    caption TEXT,
                    media_type TEXT,
                    file_id TEXT,
                    file_unique_id TEXT,
                    mime_type TEXT,
                    file_size INTEGER,
                    width INTEGER,
                    height INTEGER,
                    duration INTEGER,
                    storage_path TEXT,
                    public_url TEXT,
                    content_disposition TEXT,
                    is_duplicate INTEGER NOT NULL DEFAULT 0,
                    duplicate_reference_id TEXT,
                    needs_redownload INTEGER NOT NULL DEFAULT 0,
                    is_original_caption INTEGER NOT NULL DEFAULT 0,
                    group_caption_synced INTEGER NOT NULL DEFAULT 0,
                    analyzed_content TEXT,
                    processing_state TEXT NOT NULL DEFAULT 'initialized',
                    processing_started_at TEXT,
                    processing_completed_at TEXT,
                    is_edited INTEGER NOT NULL DEFAULT 0,
                    edit_date TEXT,
                    error_message TEXT,
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    correlation_id TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE (chat_id, telegram_message_id)
                );

                CREATE INDEX IF NOT EXISTS idx_messages_media_group
                    ON messages(media_group_id);
                CREATE INDEX IF NOT EXISTS idx_messages_file_unique_id
                    ON messages(file_unique_id);
                CREATE INDEX IF NOT EXISTS idx_messages_state
                    ON messages(processing_state, processing_started_at);

                CREATE TABLE IF NOT EXISTS audit_logs (
                    id TEXT PRIMARY KEY,
                    event_type TEXT NOT NULL,
                    message_id TEXT,
                    media_group_id TEXT,
                    correlation_id TEXT,
                    previous_state TEXT,
                    new_state TEXT,
                    metadata TEXT,
                    error_message TEXT,
                    created_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_audit_logs_message
                    ON audit_logs(message_id, created_at);
                CREATE INDEX IF NOT EXISTS idx_audit_logs_group
                    ON audit_logs(media_group_id, created_at);

                CREATE TABLE IF NOT EXISTS pipeline_tasks (
                    task_id TEXT PRIMARY KEY,
                    task_type TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    priority INTEGER NOT NULL,
                    run_at TEXT NOT NULL,
                    status TEXT NOT NULL,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    max_attempts INTEGER NOT NULL,
                    idempotency_key TEXT NOT NULL UNIQUE,
                    last_error TEXT,
                    locked_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_pipeline_tasks_lease
                    ON pipeline_tasks(status, task_type, run_at);
                """
            )
            conn.commit()
        except sqlite3.Error as e:
            raise RepositoryError(f"Failed to create SQLite schema: {e}") from e
        finally:
            conn.close()

    def task_queue(self) -> TaskQueuePort:
        """Outbox stored in the same database file."""
        return self._task_queue

    def close(self) -> None:
        """Connections are opened per call; nothing to release."""

    def insert_message(self, message: Message) -> Message:
        values = message_values(message)
        placeholders = ", ".join(["?"] * len(MESSAGE_COLUMNS))
        try:
            conn = self._get_connection()
            try:
                conn.execute(
                    f"INSERT INTO messages ({', '.join(MESSAGE_COLUMNS)}) "
                    f"VALUES ({placeholders})",
                    [_to_sqlite(values[column]) for column in MESSAGE_COLUMNS],
                )
                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise RepositoryError(f"Failed to insert message: {e}") from e
        return message

    def save_message(self, message: Message) -> Message:
        stored = message.model_copy(update={"updated_at": datetime.now(tz=UTC)})
        values = message_values(stored)
        assignments = ", ".join(f"{column} = ?" for column in MUTABLE_MESSAGE_COLUMNS)
        try:
            conn = self._get_connection()
            try:
                cursor = conn.execute(
                    f"UPDATE messages SET {assignments} WHERE id = ?",
                    [_to_sqlite(values[c]) for c in MUTABLE_MESSAGE_COLUMNS]
                    + [stored.id],
                )
                if cursor.rowcount == 0:
                    conn.rollback()
                    raise RepositoryError(f"Message not found: {stored.id}")
                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise RepositoryError(f"Failed to save message: {e}") from e
        return stored

    def _fetch_messages(self, query: str, params: Sequence[Any]) -> list[Message]:
        try:
            conn = self._get_connection()
            try:
                rows = conn.execute(query, list(params)).fetchall()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise RepositoryError(f"Failed to query messages: {e}") from e
        return [row_to_message(row) for row in rows]

    def get_message(self, message_id: str) -> MessageLookup:
        rows = self._fetch_messages("SELECT * FROM messages WHERE id = ?", (message_id,))
        return Found(rows[0]) if rows else NotFound(message_id)

    def find_by_telegram_id(self, chat_id: int, telegram_message_id: int) -> MessageLookup:
        rows = self._fetch_messages(
            "SELECT * FROM messages WHERE chat_id = ? AND telegram_message_id = ?",
            (chat_id, telegram_message_id),
        )
        if rows:
            return Found(rows[0])
        return NotFound(f"{chat_id}:{telegram_message_id}")

    def check_file(
        self, file_unique_id: str, *, exclude_message_id: str | None = None
    ) -> FileCheck:
        query = (
            "SELECT * FROM messages WHERE file_unique_id = ? AND is_duplicate = 0"
        )
        params: list[Any] = [file_unique_id]
        if exclude_message_id is not None:
            query += " AND id != ?"
            params.append(exclude_message_id)
        query += " ORDER BY created_at ASC LIMIT 1"
        rows = self._fetch_messages(query, params)
        return DuplicateFile(rows[0]) if rows else NewFile(file_unique_id)

    def get_media_group_messages(self, media_group_id: str) -> list[Message]:
        return self._fetch_messages(
            "SELECT * FROM messages WHERE media_group_id = ? ORDER BY created_at ASC",
            (media_group_id,),
        )

    def list_messages(
        self,
        states: Sequence[ProcessingState],
        *,
        started_before: datetime | None = None,
        updated_before: datetime | None = None,
        max_retry_count: int | None = None,
        limit: int | None = None,
    ) -> list[Message]:
        if not states:
            return []
        where = [f"processing_state IN ({', '.join(['?'] * len(states))})"]
        params: list[Any] = [state.value for state in states]
        if started_before is not None:
            where.append(
                "processing_started_at IS NOT NULL AND processing_started_at < ?"
            )
            params.append(_to_sqlite(started_before))
        if updated_before is not None:
            where.append("updated_at < ?")
            params.append(_to_sqlite(updated_before))
        if max_retry_count is not None:
            where.append("retry_count < ?")
            params.append(max_retry_count)

        query = f"SELECT * FROM messages WHERE {' AND '.join(where)} ORDER BY created_at ASC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        return self._fetch_messages(query, params)

    def append_audit_log(self, entry: AuditLogEntry) -> None:
        values = audit_values(entry)
        placeholders = ", ".join(["?"] * len(AUDIT_COLUMNS))
        try:
            conn = self._get_connection()
            try:
                conn.execute(
                    f"INSERT INTO audit_logs ({', '.join(AUDIT_COLUMNS)}) "
                    f"VALUES ({placeholders})",
                    [_to_sqlite(values[column]) for column in AUDIT_COLUMNS],
                )
                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise RepositoryError(f"Failed to append audit log: {e}") from e

    def get_audit_logs(
        self,
        *,
        message_id: str | None = None,
        media_group_id: str | None = None,
        limit: int = 100,
    ) -> list[AuditLogEntry]:
        where: list[str] = []
        params: list[Any] = []
        if message_id is not None:
            where.append("message_id = ?")
            params.append(message_id)
        if media_group_id is not None:
            where.append("media_group_id = ?")
            params.append(media_group_id)
        query = "SELECT * FROM audit_logs"
        if where:
            query += f" WHERE {' AND '.join(where)}"
        query += " ORDER BY created_at ASC, rowid ASC LIMIT ?"
        params.append(limit)
        try:
            conn = self._get_connection()
            try:
                rows = conn.execute(query, params).fetchall()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise RepositoryError(f"Failed to query audit logs: {e}") from e
        return [row_to_audit_entry(row) for row in rows]

    def get_processing_stats(self, *, stalled_before: datetime) -> ProcessingStats:
        try:
            conn = self._get_connection()
            try:
                by_state = {
                    row["processing_state"]: row["total"]
                    for row in conn.execute(
                        "SELECT processing_state, COUNT(*) AS total "
                        "FROM messages GROUP BY processing_state"
                    )
                }
                totals = conn.execute(
                    """
                    SELECT
                        COUNT(*) AS total_messages,
                        SUM(CASE WHEN TRIM(COALESCE(caption, '')) != '' THEN 1 ELSE 0 END)
                            AS with_caption,
                        SUM(CASE WHEN analyzed_content IS NOT NULL THEN 1 ELSE 0 END)
                            AS with_analyzed_content,
                        SUM(needs_redownload) AS needs_redownload,
                        SUM(CASE WHEN media_group_id IS NOT NULL THEN 1 ELSE 0 END)
                            AS in_media_groups,
                        SUM(CASE WHEN processing_state = ?
                                  AND processing_started_at < ? THEN 1 ELSE 0 END)
                            AS stalled
                    FROM messages
                    """,
                    (
                        ProcessingState.PROCESSING_CAPTION.value,
                        _to_sqlite(stalled_before),
                    ),
                ).fetchone()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise RepositoryError(f"Failed to compute processing stats: {e}") from e

        return ProcessingStats(
            total_messages=totals["total_messages"] or 0,
            by_state=by_state,
            with_caption=totals["with_caption"] or 0,
            with_analyzed_content=totals["with_analyzed_content"] or 0,
            needs_redownload=totals["needs_redownload"] or 0,
            in_media_groups=totals["in_media_groups"] or 0,
            stalled=totals["stalled"] or 0,
        )
