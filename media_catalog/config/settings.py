"""Settings for the ingestion pipeline.

Secrets (bot token, OpenAI and Supabase keys, database password) come from the
environment or ``.env``. Everything else may also be set in ``config/main.yaml``
and further ``config/*.yaml`` files, each checked against
``config/schemas/<name>.schema.json`` when that schema exists. Precedence, from
strongest: explicit keyword arguments, environment, YAML, field defaults.
"""

import json
from collections.abc import Iterator
from pathlib import Path
from typing import Any, Final, Literal, cast

import pytz
import yaml
from jsonschema import ValidationError as JSONSchemaValidationError
from jsonschema import validate
from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from media_catalog.config.logging_config import get_logger
from media_catalog.domain.processing_constants import (
    DEFAULT_MAX_RETRY_COUNT,
    DEFAULT_PENDING_BATCH_SIZE,
    DEFAULT_STUCK_THRESHOLD_MINUTES,
)

POSTGRES_MIN_CONNECTIONS_DEFAULT: Final[int] = 1
POSTGRES_MAX_CONNECTIONS_DEFAULT: Final[int] = 10
POSTGRES_STATEMENT_TIMEOUT_MS_DEFAULT: Final[int] = 10_000
POSTGRES_CONNECT_TIMEOUT_SECONDS_DEFAULT: Final[int] = 10
POSTGRES_APPLICATION_NAME_DEFAULT: Final[str] = "media_catalog"

TELEGRAM_TIMEOUT_SECONDS_DEFAULT: Final[float] = 30.0

MAIN_CONFIG: Final[str] = "main"

# Settings field -> key path inside the merged YAML document.
YAML_KEYS: Final[dict[str, tuple[str, ...]]] = {
    "llm_model": ("llm", "model"),
    "llm_temperature": ("llm", "temperature"),
    "llm_timeout_seconds": ("llm", "timeout_seconds"),
    "llm_prompt_file": ("llm", "prompt_file"),
    "database_type": ("database", "type"),
    "db_path": ("database", "path"),
    "postgres_host": ("database", "postgres", "host"),
    "postgres_port": ("database", "postgres", "port"),
    "postgres_database": ("database", "postgres", "database"),
    "postgres_user": ("database", "postgres", "user"),
    "postgres_min_connections": ("database", "postgres", "min_connections"),
    "postgres_max_connections": ("database", "postgres", "max_connections"),
    "postgres_ssl_mode": ("database", "postgres", "ssl_mode"),
    "tz_default": ("processing", "tz_default"),
    "stuck_threshold_minutes": ("processing", "stuck_threshold_minutes"),
    "max_retry_count": ("processing", "max_retry_count"),
    "pending_batch_size": ("processing", "pending_batch_size"),
    "inline_caption_processing": ("processing", "inline_caption_processing"),
    "telegram_api_base_url": ("telegram", "api_base_url"),
    "telegram_timeout_seconds": ("telegram", "timeout_seconds"),
    "storage_backend": ("storage", "backend"),
    "storage_root": ("storage", "root"),
    "storage_bucket": ("storage", "bucket"),
    "storage_public_base_url": ("storage", "public_base_url"),
    "log_level": ("logging", "level"),
    "json_logs": ("logging", "json"),
}

logger = cast(Any, get_logger(__name__))


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Merge ``override`` into a copy of ``base``; nested mappings merge, lists are replaced."""
    merged = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = deep_merge(current, value)
        else:
            merged[key] = value
    return merged


def load_schema(schema_name: str, config_dir: Path = Path("config")) -> dict[str, Any]:
    """JSON Schema for ``schema_name``, or ``{}`` when absent or unreadable."""
    schema_path = config_dir / "schemas" / f"{schema_name}.schema.json"
    if not schema_path.is_file():
        return {}
    try:
        return cast(dict[str, Any], json.loads(schema_path.read_text(encoding="utf-8")))
    except (json.JSONDecodeError, OSError) as e:
        logger.warning("config_schema_load_failed", schema=schema_name, error=str(e))
        return {}


def validate_config_section(
    config: dict[str, Any],
    schema_name: str,
    file_path: str = "",
    config_dir: Path = Path("config"),
) -> None:
    """Check ``config`` against its schema; sections without one pass.

    Raises:
        ValueError: If the section violates its schema
    """
    schema = load_schema(schema_name, config_dir)
    if not schema:
        return
    try:
        validate(instance=config, schema=schema)
    except JSONSchemaValidationError as e:
        where = f" (file: {file_path})" if file_path else ""
        raise ValueError(f"Config validation failed for {schema_name}{where}: {e.message}") from e
    logger.debug("config_validation_succeeded", schema=schema_name)


def _config_files(config_dir: Path) -> Iterator[Path]:
    """``main.yaml`` first, then the remaining YAML files alphabetically."""
    if not config_dir.is_dir():
        return
    main_path = config_dir / f"{MAIN_CONFIG}.yaml"
    if main_path.is_file():
        yield main_path
    yield from sorted(p for p in config_dir.glob("*.yaml") if p != main_path)


def load_all_configs(config_dir: Path = Path("config")) -> dict[str, Any]:
    """Merge every YAML file under ``config_dir``; later files win.

    Unreadable or malformed YAML is logged and skipped. A file that parses
    but violates its schema stops startup.

    Raises:
        ValueError: If a file fails schema validation
    """
    merged: dict[str, Any] = {}
    loaded = 0
    for path in _config_files(config_dir):
        try:
            section = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except (yaml.YAMLError, OSError) as e:
            logger.warning("config_file_load_failed", path=str(path), error=str(e))
            continue
        try:
            validate_config_section(section, path.stem, str(path), config_dir)
        except ValueError as e:
            logger.error("config_validation_failed", path=str(path), error=str(e))
            raise
        merged = deep_merge(merged, section)
        loaded += 1
        logger.debug("config_file_loaded", path=str(path), schema=path.stem)

    logger.info("config_load_complete", file_count=loaded)
    return merged


def _lookup(document: dict[str, Any], keys: tuple[str, ...]) -> Any:
    node: Any = document
    for key in keys:
        if not isinstance(node, dict):
            return None
        node = node.get(key)
    return node


class Settings(BaseSettings):
    """Pipeline settings; see the module docstring for where values come from."""

    model_config = SettingsConfigDict(
        env_file=".env" if Path(".env").exists() else None,
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        validate_assignment=True,
    )

    # === SECRETS (from .env) ===

    openai_api_key: SecretStr | None = Field(
        default=None,
        description="OpenAI API key; without it the AI fallback is disabled",
    )
    telegram_bot_token: SecretStr | None = Field(
        default=None, description="Bot API token used to download media"
    )
    telegram_webhook_secret: SecretStr | None = Field(
        default=None,
        description="Expected X-Telegram-Bot-Api-Secret-Token header value",
    )
    postgres_password: SecretStr | None = Field(
        default=None, description="PostgreSQL password (from .env, optional)"
    )
    supabase_url: str | None = Field(default=None, description="Supabase project URL")
    supabase_service_key: SecretStr | None = Field(
        default=None, description="Supabase service role key"
    )
    admin_api_key: SecretStr | None = Field(
        default=None, description="API key required by /admin routes"
    )

    # === NON-SENSITIVE CONFIG (from config/main.yaml or defaults) ===

    # LLM configuration
    llm_model: str = Field(default="gpt-4o-mini", description="OpenAI model to use")
    llm_temperature: float = Field(default=0.3, description="LLM temperature")
    llm_timeout_seconds: int = Field(default=30, description="LLM request timeout")
    llm_prompt_file: str = Field(
        default="config/prompts/caption.yaml",
        description="Prompt file for caption extraction",
    )

    # Database configuration
    database_type: Literal["sqlite", "postgres"] = Field(
        default="sqlite", description="Database type: sqlite or postgres"
    )
    db_path: str = Field(
        default="data/media_catalog.db", description="SQLite database path"
    )
    postgres_host: str = Field(default="localhost", description="PostgreSQL host")
    postgres_port: int = Field(default=5432, description="PostgreSQL port")
    postgres_database: str = Field(
        default="media_catalog", description="PostgreSQL database name"
    )
    postgres_user: str = Field(default="postgres", description="PostgreSQL user")
    postgres_min_connections: int = Field(
        default=POSTGRES_MIN_CONNECTIONS_DEFAULT,
        description="Minimum number of connections in PostgreSQL pool",
    )
    postgres_max_connections: int = Field(
        default=POSTGRES_MAX_CONNECTIONS_DEFAULT,
        description="Maximum number of connections in PostgreSQL pool",
    )
    postgres_statement_timeout_ms: int = Field(
        default=POSTGRES_STATEMENT_TIMEOUT_MS_DEFAULT,
        description="PostgreSQL statement timeout in milliseconds",
    )
    postgres_connect_timeout_seconds: int = Field(
        default=POSTGRES_CONNECT_TIMEOUT_SECONDS_DEFAULT,
        description="PostgreSQL connection timeout in seconds",
    )
    postgres_application_name: str = Field(
        default=POSTGRES_APPLICATION_NAME_DEFAULT,
        description="Application name for PostgreSQL connections",
    )
    postgres_ssl_mode: str | None = Field(
        default=None,
        description="Optional SSL mode for PostgreSQL connections (e.g., require)",
    )

    # Processing configuration
    tz_default: str = Field(
        default="UTC", description="Timezone whose calendar day is 'today' for dates"
    )
    stuck_threshold_minutes: int = Field(
        default=DEFAULT_STUCK_THRESHOLD_MINUTES,
        ge=1,
        description="Minutes before an unfinished message counts as stuck",
    )
    max_retry_count: int = Field(
        default=DEFAULT_MAX_RETRY_COUNT,
        ge=1,
        description="Failures after which a message is no longer retried",
    )
    pending_batch_size: int = Field(
        default=DEFAULT_PENDING_BATCH_SIZE,
        ge=1,
        description="Messages processed per pending-batch run",
    )
    inline_caption_processing: bool = Field(
        default=True,
        description="Analyze captions inside the webhook request after enqueueing",
    )

    # Telegram Bot API
    telegram_api_base_url: str = Field(
        default="https://api.telegram.org", description="Bot API base URL"
    )
    telegram_timeout_seconds: float = Field(
        default=TELEGRAM_TIMEOUT_SECONDS_DEFAULT,
        description="Bot API request timeout",
    )

    # Storage configuration
    storage_backend: Literal["local", "supabase"] = Field(
        default="local", description="Media storage backend"
    )
    storage_root: str = Field(
        default="data/media", description="Directory used by the local backend"
    )
    storage_bucket: str = Field(
        default="telegram-media", description="Supabase storage bucket"
    )
    storage_public_base_url: str | None = Field(
        default=None, description="Public URL prefix for locally stored media"
    )

    # Observability
    log_level: str = Field(default="INFO", description="Logging level")
    json_logs: bool = Field(default=False, description="Render logs as JSON")

    def __init__(self, **data: Any):
        super().__init__(**data)
        self._apply_yaml(load_all_configs())

    def _apply_yaml(self, document: dict[str, Any]) -> None:
        """Fill fields that neither the caller nor the environment set.

        Assignment is validated, so a bad YAML value fails like a bad env var.
        """
        explicit = set(self.model_fields_set)
        for field_name, keys in YAML_KEYS.items():
            value = _lookup(document, keys)
            if value is not None and field_name not in explicit:
                setattr(self, field_name, value)

    @field_validator("tz_default")
    @classmethod
    def _validate_timezone(cls, value: str) -> str:
        try:
            pytz.timezone(value)
        except pytz.UnknownTimeZoneError as exc:
            raise ValueError(f"Unknown timezone: {value}") from exc
        return value

    @property
    def timezone(self) -> pytz.BaseTzInfo:
        return pytz.timezone(self.tz_default)

    @property
    def ai_enabled(self) -> bool:
        return bool(self.openai_api_key and self.openai_api_key.get_secret_value().strip())


_settings: Settings | None = None


def get_settings() -> Settings:
    """Process-wide settings, built on first use."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
