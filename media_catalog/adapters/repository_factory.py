"""Pick the message store named by ``DATABASE_TYPE``.

SQLite serves local runs and tests. PostgreSQL is the production store and
needs ``POSTGRES_PASSWORD``; its pool and timeouts come from the same settings.
"""

from collections.abc import Callable
from typing import Final, cast

from media_catalog.adapters.postgres_repository import PostgresRepository
from media_catalog.adapters.sqlite_repository import SQLiteRepository
from media_catalog.config.logging_config import get_logger
from media_catalog.config.settings import Settings
from media_catalog.domain.protocols import MessageRepositoryProtocol

logger = get_logger(__name__)


def _open_sqlite(settings: Settings) -> MessageRepositoryProtocol:
    logger.info("message_store_opened", backend="sqlite", path=settings.db_path)
    return cast(MessageRepositoryProtocol, SQLiteRepository(db_path=settings.db_path))


def _open_postgres(settings: Settings) -> MessageRepositoryProtocol:
    if not settings.postgres_password:
        raise ValueError("POSTGRES_PASSWORD must be set when DATABASE_TYPE=postgres")

    logger.info(
        "message_store_opened",
        backend="postgres",
        dsn=f"{settings.postgres_user}@{settings.postgres_host}:"
        f"{settings.postgres_port}/{settings.postgres_database}",
    )
    repository = PostgresRepository(
        host=settings.postgres_host,
        port=settings.postgres_port,
        database=settings.postgres_database,
        user=settings.postgres_user,
        password=settings.postgres_password.get_secret_value(),
        settings=settings,
    )
    return cast(MessageRepositoryProtocol, repository)


BACKENDS: Final[dict[str, Callable[[Settings], MessageRepositoryProtocol]]] = {
    "sqlite": _open_sqlite,
    "postgres": _open_postgres,
}


def create_repository(settings: Settings) -> MessageRepositoryProtocol:
    """Open the configured message store.

    Raises:
        ValueError: Unknown backend, or PostgreSQL without a password
        RepositoryError: If the store cannot be reached or its schema created
    """
    try:
        opener = BACKENDS[settings.database_type]
    except KeyError:
        supported = ", ".join(sorted(BACKENDS))
        raise ValueError(
            f"Unsupported database type: {settings.database_type} (expected one of {supported})"
        ) from None
    return opener(settings)
