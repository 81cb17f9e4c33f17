"""Tests for choosing the message store from settings."""

from pathlib import Path

import pytest
from pydantic import SecretStr

from media_catalog.adapters import repository_factory
from media_catalog.adapters.repository_factory import create_repository
from media_catalog.adapters.sqlite_repository import SQLiteRepository


def test_sqlite_store_creates_database_file(settings, tmp_path: Path) -> None:
    db_path = tmp_path / "nested" / "catalog.sqlite"

    repository = create_repository(settings.model_copy(update={"db_path": str(db_path)}))

    assert isinstance(repository, SQLiteRepository)
    assert db_path.exists()


def test_postgres_requires_password(settings) -> None:
    postgres = settings.model_copy(
        update={"database_type": "postgres", "postgres_password": None}
    )

    with pytest.raises(ValueError, match="POSTGRES_PASSWORD"):
        create_repository(postgres)


def test_postgres_store_receives_connection_settings(settings, mocker) -> None:
    postgres_cls = mocker.patch.object(repository_factory, "PostgresRepository")
    postgres = settings.model_copy(
        update={
            "database_type": "postgres",
            "postgres_host": "db.internal",
            "postgres_port": 6432,
            "postgres_database": "catalog",
            "postgres_user": "ingest",
            "postgres_password": SecretStr("s3cret"),
        }
    )

    repository = create_repository(postgres)

    assert repository is postgres_cls.return_value
    postgres_cls.assert_called_once_with(
        host="db.internal",
        port=6432,
        database="catalog",
        user="ingest",
        password="s3cret",
        settings=postgres,
    )


def test_unknown_backend_is_rejected(settings) -> None:
    unknown = settings.model_copy(update={"database_type": "clickhouse"})

    with pytest.raises(ValueError, match="expected one of postgres, sqlite"):
        create_repository(unknown)
