"""Tests for the PostgreSQL repository against a mocked connection pool."""

from datetime import UTC, datetime
from typing import Any

import psycopg2
import pytest
from pytest_mock import MockerFixture

from media_catalog.adapters.message_rows import message_values
from media_catalog.adapters.postgres_repository import PostgresRepository
from media_catalog.adapters.postgres_task_queue import PostgresTaskQueue
from media_catalog.domain.exceptions import RepositoryError
from media_catalog.domain.models import Message, ProcessingState
from media_catalog.domain.outcomes import DuplicateFile, Found, NewFile, NotFound


@pytest.fixture
def pg(mocker: MockerFixture) -> dict[str, Any]:
    """Patch the psycopg2 pool and return the mocks behind it."""

    connection = mocker.MagicMock()
    cursor = mocker.MagicMock()
    cursor_cm = mocker.MagicMock()
    cursor_cm.__enter__.return_value = cursor
    cursor_cm.__exit__.return_value = False
    connection.cursor.return_value = cursor_cm
    connection.get_transaction_status.return_value = 0

    pool = mocker.MagicMock()
    pool.getconn.return_value = connection
    pool_cls = mocker.patch(
        "media_catalog.adapters.postgres_repository.psycopg2_pool.ThreadedConnectionPool",
        return_value=pool,
    )
    return {"pool_cls": pool_cls, "pool": pool, "connection": connection, "cursor": cursor}


def _repo(settings=None) -> PostgresRepository:
    return PostgresRepository(
        host="db.internal",
        port=5432,
        database="media_catalog",
        user="catalog",
        password="secret",
        settings=settings,
    )


def _row(message: Message) -> dict[str, Any]:
    return message_values(message)


def test_pool_is_created_and_validated(pg) -> None:
    _repo()

    args, kwargs = pg["pool_cls"].call_args
    assert args == (1, 10)
    assert kwargs["host"] == "db.internal"
    assert "-c statement_timeout=10000" in kwargs["options"]
    assert "sslmode" not in kwargs
    pg["cursor"].execute.assert_called_once_with("SELECT 1")
    pg["pool"].putconn.assert_called_once_with(pg["connection"])


def test_pool_settings_come_from_settings(pg, settings) -> None:
    configured = settings.model_copy(
        update={
            "postgres_min_connections": 2,
            "postgres_max_connections": 4,
            "postgres_ssl_mode": "require",
        }
    )

    _repo(configured)

    args, kwargs = pg["pool_cls"].call_args
    assert args == (2, 4)
    assert kwargs["sslmode"] == "require"


def test_invalid_pool_bounds_are_rejected(pg, settings) -> None:
    configured = settings.model_copy(
        update={"postgres_min_connections": 5, "postgres_max_connections": 2}
    )

    with pytest.raises(RepositoryError, match="postgres_max_connections"):
        _repo(configured)

    pg["pool_cls"].assert_not_called()


def test_failed_validation_query_closes_pool(pg) -> None:
    pg["cursor"].execute.side_effect = psycopg2.OperationalError("connection refused")

    with pytest.raises(RepositoryError, match="validation query failed"):
        _repo()

    pg["pool"].closeall.assert_called_once()


def test_get_message_not_found(pg) -> None:
    repo = _repo()
    pg["cursor"].fetchall.return_value = []

    assert repo.get_message("missing") == NotFound("missing")


def test_find_by_telegram_id_maps_row(pg) -> None:
    repo = _repo()
    stored = Message(
        telegram_message_id=7,
        chat_id=-100,
        caption="Lamp #LMP010123",
        processing_state=ProcessingState.WAITING_CAPTION,
    )
    pg["cursor"].fetchall.return_value = [_row(stored)]

    lookup = repo.find_by_telegram_id(-100, 7)

    assert isinstance(lookup, Found)
    assert lookup.message == stored
    query, params = pg["cursor"].execute.call_args.args
    assert "chat_id = %s AND telegram_message_id = %s" in query
    assert params == [-100, 7]


def test_check_file_reports_original(pg) -> None:
    repo = _repo()
    original = Message(telegram_message_id=1, chat_id=1, file_unique_id="u-1")
    pg["cursor"].fetchall.return_value = [_row(original)]

    assert repo.check_file("u-1") == DuplicateFile(original)

    pg["cursor"].fetchall.return_value = []
    assert repo.check_file("u-2") == NewFile("u-2")


def test_save_message_missing_row_raises(pg) -> None:
    repo = _repo()
    pg["cursor"].rowcount = 0

    with pytest.raises(RepositoryError, match="Message not found"):
        repo.save_message(Message(telegram_message_id=1, chat_id=1))

    pg["connection"].rollback.assert_called()


def test_driver_errors_become_repository_errors(pg) -> None:
    repo = _repo()
    pg["cursor"].execute.side_effect = psycopg2.OperationalError("server closed")

    with pytest.raises(RepositoryError, match="PostgreSQL connection error"):
        repo.get_message("m-1")

    pg["pool"].putconn.assert_called_with(pg["connection"], close=True)


def test_list_messages_filters(pg) -> None:
    repo = _repo()
    pg["cursor"].fetchall.return_value = []
    cutoff = datetime(2024, 6, 1, tzinfo=UTC)

    repo.list_messages(
        (ProcessingState.ERROR,), updated_before=cutoff, max_retry_count=3, limit=5
    )

    query, params = pg["cursor"].execute.call_args.args
    assert "processing_state = ANY(%s)" in query
    assert "updated_at < %s" in query
    assert query.endswith("LIMIT %s")
    assert params == [["error"], cutoff, 3, 5]


def test_list_messages_without_states_skips_query(pg) -> None:
    repo = _repo()
    pg["cursor"].execute.reset_mock()

    assert repo.list_messages(()) == []
    pg["cursor"].execute.assert_not_called()


def test_processing_stats(pg) -> None:
    repo = _repo()
    pg["cursor"].fetchall.return_value = [
        {"processing_state": "completed", "total": 3},
        {"processing_state": "error", "total": 1},
    ]
    pg["cursor"].fetchone.return_value = {
        "total_messages": 4,
        "with_caption": 2,
        "with_analyzed_content": 3,
        "needs_redownload": 1,
        "in_media_groups": 2,
        "stalled": None,
    }

    stats = repo.get_processing_stats(stalled_before=datetime(2024, 6, 1, tzinfo=UTC))

    assert stats.total_messages == 4
    assert stats.by_state == {"completed": 3, "error": 1}
    assert stats.stalled == 0


def test_task_queue_is_cached(pg) -> None:
    repo = _repo()

    queue = repo.task_queue()

    assert isinstance(queue, PostgresTaskQueue)
    assert repo.task_queue() is queue
