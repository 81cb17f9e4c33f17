"""PostgreSQL repository implementation using psycopg2 with connection pooling.

The schema is owned by the Alembic migrations in ``alembic/versions``.
"""

from collections.abc import Iterator, Sequence
from contextlib import AbstractContextManager, contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from threading import Lock
from time import sleep
from typing import TYPE_CHECKING, Any, Final

from psycopg2 import Error as PsycopgError
from psycopg2 import errorcodes, extensions
from psycopg2 import pool as psycopg2_pool
from psycopg2.extras import RealDictCursor, register_uuid

from media_catalog.adapters.message_rows import (
    AUDIT_COLUMNS,
    MESSAGE_COLUMNS,
    MUTABLE_MESSAGE_COLUMNS,
    audit_values,
    message_values,
    row_to_audit_entry,
    row_to_message,
)
from media_catalog.adapters.postgres_task_queue import PostgresTaskQueue
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

if TYPE_CHECKING:
    from media_catalog.config.settings import Settings

DEFAULT_POOL_MIN_CONNECTIONS: Final[int] = 1
DEFAULT_POOL_MAX_CONNECTIONS: Final[int] = 10
POOL_ACQUIRE_MAX_ATTEMPTS_DEFAULT: Final[int] = 5
POOL_ACQUIRE_BASE_DELAY_SECONDS: Final[float] = 0.1
POOL_ACQUIRE_MAX_DELAY_SECONDS: Final[float] = 2.0

logger = get_logger(__name__)

_uuid_adapter_lock = Lock()
_uuid_adapter_registered = False


def _register_uuid_adapter() -> None:
    """message_id and task_id columns are UUIDs; psycopg2 needs the adapter once."""
    global _uuid_adapter_registered
    with _uuid_adapter_lock:
        if not _uuid_adapter_registered:
            register_uuid()
            _uuid_adapter_registered = True


@dataclass(frozen=True)
class PoolOptions:
    """Pool bounds and per-connection options taken from settings."""

    min_connections: int = DEFAULT_POOL_MIN_CONNECTIONS
    max_connections: int = DEFAULT_POOL_MAX_CONNECTIONS
    statement_timeout_ms: int = 10_000
    connect_timeout_seconds: int = 10
    application_name: str = "media_catalog"
    ssl_mode: str | None = None

    @classmethod
    def from_settings(cls, settings: "Settings | None") -> "PoolOptions":
        if settings is None:
            return cls()
        return cls(
            min_connections=settings.postgres_min_connections,
            max_connections=settings.postgres_max_connections,
            statement_timeout_ms=settings.postgres_statement_timeout_ms,
            connect_timeout_seconds=settings.postgres_connect_timeout_seconds,
            application_name=settings.postgres_application_name,
            ssl_mode=settings.postgres_ssl_mode,
        )

    def check(self) -> None:
        if self.min_connections <= 0:
            raise RepositoryError("postgres_min_connections must be positive")
        if self.max_connections < self.min_connections:
            raise RepositoryError(
                "postgres_max_connections must be greater than or equal to "
                "postgres_min_connections"
            )

    def connection_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "connect_timeout": self.connect_timeout_seconds,
            "options": (
                f"-c statement_timeout={self.statement_timeout_ms} "
                f"-c application_name={self.application_name}"
            ),
        }
        if self.ssl_mode:
            kwargs["sslmode"] = self.ssl_mode
        return kwargs


class PostgresRepository:
    """Message store on PostgreSQL with a thread-safe connection pool.

    The pool is opened and checked with ``SELECT 1`` in the constructor, so a
    wrong host or password fails at startup instead of on the first webhook.
    """

    def __init__(
        self,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        settings: "Settings | None" = None,
    ):
        self._database = database
        self._options = PoolOptions.from_settings(settings)
        self._options.check()
        self._task_queue_adapter: PostgresTaskQueue | None = None

        _register_uuid_adapter()
        self._pool = self._open_pool(
            host=host,
            port=port,
            database=database,
            user=user,
            password=password,
            **self._options.connection_kwargs(),
        )

    def _open_pool(self, **dsn: Any) -> psycopg2_pool.ThreadedConnectionPool:
        options = self._options
        try:
            pool = psycopg2_pool.ThreadedConnectionPool(
                options.min_connections, options.max_connections, **dsn
            )
        except PsycopgError as exc:
            raise RepositoryError(f"Failed to initialize PostgreSQL pool: {exc}") from exc

        try:
            conn = pool.getconn()
            try:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")
            finally:
                pool.putconn(conn)
        except PsycopgError as exc:
            pool.closeall()
            raise RepositoryError(f"PostgreSQL validation query failed: {exc}") from exc

        logger.info(
            "postgres_pool_initialized",
            host=dsn["host"],
            port=dsn["port"],
            database=dsn["database"],
            min_connections=options.min_connections,
            max_connections=options.max_connections,
            statement_timeout_ms=options.statement_timeout_ms,
        )
        return pool

    def _acquire_connection_with_retry(self) -> extensions.connection:
        """Acquire a connection from the pool with exponential backoff."""
        attempt = 0
        delay = POOL_ACQUIRE_BASE_DELAY_SECONDS
        while True:
            attempt += 1
            try:
                return self._pool.getconn()
            except psycopg2_pool.PoolError as exc:
                if attempt >= POOL_ACQUIRE_MAX_ATTEMPTS_DEFAULT:
                    logger.error(
                        "postgres_pool_acquire_failed",
                        attempts=attempt,
                        max_connections=self._options.max_connections,
                    )
                    raise RepositoryError(
                        "Failed to acquire PostgreSQL connection from pool"
                    ) from exc

                logger.warning(
                    "postgres_pool_exhausted_retry",
                    attempt=attempt,
                    wait_seconds=delay,
                    max_connections=self._options.max_connections,
                )
                sleep(delay)
                delay = min(delay * 2, POOL_ACQUIRE_MAX_DELAY_SECONDS)

    @contextmanager
    def _get_connection(self) -> Iterator[extensions.connection]:
        """Borrow a connection from the pool and ensure cleanup."""
        conn: extensions.connection | None = None
        try:
            conn = self._acquire_connection_with_retry()
            conn.autocommit = False
            yield conn
        except PsycopgError as exc:
            if conn is not None:
                try:
                    conn.rollback()
                except PsycopgError:
                    logger.warning(
                        "postgres_connection_rollback_failed",
                        database=self._database,
                        exc_info=True,
                    )
                finally:
                    self._pool.putconn(conn, close=True)
                    conn = None
            if exc.pgcode == errorcodes.UNIQUE_VIOLATION:
                raise RepositoryError(f"Unique constraint violated: {exc}") from exc
            raise RepositoryError(f"PostgreSQL connection error: {exc}") from exc
        finally:
            if conn is not None:
                try:
                    status = conn.get_transaction_status()
                    if status in (
                        extensions.TRANSACTION_STATUS_INTRANS,
                        extensions.TRANSACTION_STATUS_INERROR,
                    ):
                        conn.rollback()
                except PsycopgError:
                    logger.warning(
                        "postgres_connection_cleanup_failed",
                        database=self._database,
                        exc_info=True,
                    )
                    self._pool.putconn(conn, close=True)
                else:
                    self._pool.putconn(conn)

    def close(self) -> None:
        """Close all connections in the pool."""
        self._pool.closeall()
        logger.info("postgres_pool_closed", database=self._database)

    def task_queue(self) -> TaskQueuePort:
        """Provide task queue adapter tied to this repository."""

        if self._task_queue_adapter is None:

            def _provider() -> AbstractContextManager[Any]:
                return self._get_connection()

            self._task_queue_adapter = PostgresTaskQueue(_provider)
        return self._task_queue_adapter

    def _fetch_messages(self, query: str, params: Sequence[Any]) -> list[Message]:
        with self._get_connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(query, list(params))
                rows = cur.fetchall()
        return [row_to_message(row) for row in rows]

    def insert_message(self, message: Message) -> Message:
        values = message_values(message)
        placeholders = ", ".join(["%s"] * len(MESSAGE_COLUMNS))
        with self._get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"INSERT INTO messages ({', '.join(MESSAGE_COLUMNS)}) "
                    f"VALUES ({placeholders})",
                    [values[column] for column in MESSAGE_COLUMNS],
                )
            conn.commit()
        return message

    def save_message(self, message: Message) -> Message:
        stored = message.model_copy(update={"updated_at": datetime.now(tz=UTC)})
        values = message_values(stored)
        assignments = ", ".join(f"{column} = %s" for column in MUTABLE_MESSAGE_COLUMNS)
        with self._get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"UPDATE messages SET {assignments} WHERE id = %s",
                    [values[c] for c in MUTABLE_MESSAGE_COLUMNS] + [stored.id],
                )
                if cur.rowcount == 0:
                    conn.rollback()
                    raise RepositoryError(f"Message not found: {stored.id}")
            conn.commit()
        return stored

    def get_message(self, message_id: str) -> MessageLookup:
        rows = self._fetch_messages("SELECT * FROM messages WHERE id = %s", (message_id,))
        return Found(rows[0]) if rows else NotFound(message_id)

    def find_by_telegram_id(self, chat_id: int, telegram_message_id: int) -> MessageLookup:
        rows = self._fetch_messages(
            "SELECT * FROM messages WHERE chat_id = %s AND telegram_message_id = %s",
            (chat_id, telegram_message_id),
        )
        if rows:
            return Found(rows[0])
        return NotFound(f"{chat_id}:{telegram_message_id}")

    def check_file(
        self, file_unique_id: str, *, exclude_message_id: str | None = None
    ) -> FileCheck:
        query = "SELECT * FROM messages WHERE file_unique_id = %s AND NOT is_duplicate"
        params: list[Any] = [file_unique_id]
        if exclude_message_id is not None:
            query += " AND id <> %s"
            params.append(exclude_message_id)
        query += " ORDER BY created_at ASC LIMIT 1"
        rows = self._fetch_messages(query, params)
        return DuplicateFile(rows[0]) if rows else NewFile(file_unique_id)

    def get_media_group_messages(self, media_group_id: str) -> list[Message]:
        return self._fetch_messages(
            "SELECT * FROM messages WHERE media_group_id = %s ORDER BY created_at ASC",
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
        where = ["processing_state = ANY(%s)"]
        params: list[Any] = [[state.value for state in states]]
        if started_before is not None:
            where.append("processing_started_at < %s")
            params.append(started_before)
        if updated_before is not None:
            where.append("updated_at < %s")
            params.append(updated_before)
        if max_retry_count is not None:
            where.append("retry_count < %s")
            params.append(max_retry_count)

        query = f"SELECT * FROM messages WHERE {' AND '.join(where)} ORDER BY created_at ASC"
        if limit is not None:
            query += " LIMIT %s"
            params.append(limit)
        return self._fetch_messages(query, params)

    def append_audit_log(self, entry: AuditLogEntry) -> None:
        values = audit_values(entry)
        placeholders = ", ".join(["%s"] * len(AUDIT_COLUMNS))
        with self._get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"INSERT INTO audit_logs ({', '.join(AUDIT_COLUMNS)}) "
                    f"VALUES ({placeholders})",
                    [values[column] for column in AUDIT_COLUMNS],
                )
            conn.commit()

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
            where.append("message_id = %s")
            params.append(message_id)
        if media_group_id is not None:
            where.append("media_group_id = %s")
            params.append(media_group_id)
        query = "SELECT * FROM audit_logs"
        if where:
            query += f" WHERE {' AND '.join(where)}"
        query += " ORDER BY created_at ASC LIMIT %s"
        params.append(limit)
        with self._get_connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(query, params)
                rows = cur.fetchall()
        return [row_to_audit_entry(row) for row in rows]

    def get_processing_stats(self, *, stalled_before: datetime) -> ProcessingStats:
        with self._get_connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    "SELECT processing_state, COUNT(*) AS total "
                    "FROM messages GROUP BY processing_state"
                )
                by_state = {
                    row["processing_state"]: int(row["total"]) for row in cur.fetchall()
                }
                cur.execute(
                    """
                    SELECT
                        COUNT(*) AS total_messages,
                        COUNT(*) FILTER (WHERE TRIM(COALESCE(caption, '')) <> '')
                            AS with_caption,
                        COUNT(*) FILTER (WHERE analyzed_content IS NOT NULL)
                            AS with_analyzed_content,
                        COUNT(*) FILTER (WHERE needs_redownload) AS needs_redownload,
                        COUNT(*) FILTER (WHERE media_group_id IS NOT NULL)
                            AS in_media_groups,
                        COUNT(*) FILTER (
                            WHERE processing_state = %s AND processing_started_at < %s
                        ) AS stalled
                    FROM messages
                    """,
                    (ProcessingState.PROCESSING_CAPTION.value, stalled_before),
                )
                totals = cur.fetchone() or {}

        return ProcessingStats(
            total_messages=int(totals.get("total_messages") or 0),
            by_state=by_state,
            with_caption=int(totals.get("with_caption") or 0),
            with_analyzed_content=int(totals.get("with_analyzed_content") or 0),
            needs_redownload=int(totals.get("needs_redownload") or 0),
            in_media_groups=int(totals.get("in_media_groups") or 0),
            stalled=int(totals.get("stalled") or 0),
        )
