"""Alembic environment for the media catalog PostgreSQL schema.

The connection URL is built from the same settings the application uses, so
``alembic upgrade head`` targets the configured database.
"""

from logging.config import fileConfig
from urllib.parse import quote_plus

from sqlalchemy import engine_from_config, pool

from alembic import context
from media_catalog.config.settings import Settings

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = None


def _database_url() -> str:
    settings = Settings()
    password = (
        settings.postgres_password.get_secret_value()
        if settings.postgres_password
        else ""
    )
    url = (
        f"postgresql+psycopg2://{quote_plus(settings.postgres_user)}:"
        f"{quote_plus(password)}@{settings.postgres_host}:{settings.postgres_port}/"
        f"{settings.postgres_database}"
    )
    if settings.postgres_ssl_mode:
        url += f"?sslmode={settings.postgres_ssl_mode}"
    return url


def run_migrations_offline() -> None:
    context.configure(
        url=_database_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    section = config.get_section(config.config_ini_section, {})
    section["sqlalchemy.url"] = _database_url()
    connectable = engine_from_config(
        section, prefix="sqlalchemy.", poolclass=pool.NullPool
    )
    with connectable.connect() as connection:
        context.configure(connection=connection, target_metadata=target_metadata)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
