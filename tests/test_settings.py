"""Tests for configuration loading and Settings."""

import json
from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from media_catalog.config import settings as settings_module
from media_catalog.config.settings import (
    Settings,
    deep_merge,
    get_settings,
    load_all_configs,
    load_schema,
    validate_config_section,
)

REQUIRED_NAME_SCHEMA = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "properties": {"name": {"type": "string"}},
    "required": ["name"],
}


def _write_schema(config_dir: Path, name: str, schema: dict) -> None:
    schema_dir = config_dir / "schemas"
    schema_dir.mkdir(parents=True, exist_ok=True)
    with open(schema_dir / f"{name}.schema.json", "w", encoding="utf-8") as f:
        json.dump(schema, f)


def _write_yaml(path: Path, content: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        yaml.dump(content, f)


@pytest.fixture
def isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Run Settings against an empty config directory and a clean environment."""
    monkeypatch.chdir(tmp_path)
    for name in (
        "OPENAI_API_KEY",
        "LLM_MODEL",
        "TZ_DEFAULT",
        "MAX_RETRY_COUNT",
        "DATABASE_TYPE",
    ):
        monkeypatch.delenv(name, raising=False)
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    return config_dir


def test_deep_merge_nested() -> None:
    base = {"processing": {"tz_default": "UTC", "max_retry_count": 3}}
    override = {"processing": {"max_retry_count": 5}, "logging": {"level": "DEBUG"}}

    assert deep_merge(base, override) == {
        "processing": {"tz_default": "UTC", "max_retry_count": 5},
        "logging": {"level": "DEBUG"},
    }
    assert base == {"processing": {"tz_default": "UTC", "max_retry_count": 3}}


def test_deep_merge_lists_replaced() -> None:
    assert deep_merge({"items": [1, 2, 3]}, {"items": [4]}) == {"items": [4]}


def test_load_schema_existing(tmp_path: Path) -> None:
    _write_schema(tmp_path, "test", REQUIRED_NAME_SCHEMA)

    assert load_schema("test", tmp_path) == REQUIRED_NAME_SCHEMA


def test_load_schema_missing(tmp_path: Path) -> None:
    assert load_schema("nonexistent_schema_xyz", tmp_path) == {}


def test_load_schema_invalid_json_returns_empty(tmp_path: Path) -> None:
    schema_dir = tmp_path / "schemas"
    schema_dir.mkdir()
    (schema_dir / "broken.schema.json").write_text("{not json", encoding="utf-8")

    assert load_schema("broken", tmp_path) == {}


def test_validate_config_section_valid(tmp_path: Path) -> None:
    _write_schema(tmp_path, "test", REQUIRED_NAME_SCHEMA)

    validate_config_section({"name": "catalog"}, "test", config_dir=tmp_path)


def test_validate_config_section_invalid(tmp_path: Path) -> None:
    _write_schema(tmp_path, "test", REQUIRED_NAME_SCHEMA)

    with pytest.raises(ValueError, match="Config validation failed for test"):
        validate_config_section(
            {"wrong_field": "x"}, "test", "config/test.yaml", tmp_path
        )


def test_validate_config_section_without_schema_is_noop(tmp_path: Path) -> None:
    validate_config_section({"anything": 1}, "unknown", config_dir=tmp_path)


def test_repository_schema_rejects_unknown_processing_key() -> None:
    config_dir = Path(__file__).resolve().parents[1] / "config"

    with pytest.raises(ValueError, match="Config validation failed for main"):
        validate_config_section(
            {"processing": {"unknown_key": 1}}, "main", config_dir=config_dir
        )


def test_load_all_configs_empty_directory(tmp_path: Path) -> None:
    assert load_all_configs(tmp_path / "missing") == {}


def test_load_all_configs_merges_main_and_overrides(tmp_path: Path) -> None:
    _write_yaml(
        tmp_path / "main.yaml",
        {"processing": {"tz_default": "UTC", "max_retry_count": 3}},
    )
    _write_yaml(tmp_path / "overrides.yaml", {"processing": {"max_retry_count": 7}})

    assert load_all_configs(tmp_path) == {
        "processing": {"tz_default": "UTC", "max_retry_count": 7}
    }


def test_load_all_configs_raises_on_invalid_section(tmp_path: Path) -> None:
    _write_schema(tmp_path, "storage", REQUIRED_NAME_SCHEMA)
    _write_yaml(tmp_path / "storage.yaml", {"backend": "local"})

    with pytest.raises(ValueError, match="Config validation failed for storage"):
        load_all_configs(tmp_path)


def test_settings_defaults(isolated_config: Path) -> None:
    settings = Settings()

    assert settings.database_type == "sqlite"
    assert settings.tz_default == "UTC"
    assert settings.storage_backend == "local"
    assert settings.inline_caption_processing is True
    assert settings.ai_enabled is False
    assert settings.timezone.zone == "UTC"


def test_settings_reads_yaml_sections(isolated_config: Path) -> None:
    _write_yaml(
        isolated_config / "main.yaml",
        {
            "llm": {"model": "gpt-yaml", "timeout_seconds": 12},
            "database": {"type": "postgres", "postgres": {"host": "db.internal"}},
            "processing": {
                "tz_default": "Europe/Moscow",
                "stuck_threshold_minutes": 20,
                "inline_caption_processing": False,
            },
            "storage": {"backend": "supabase", "bucket": "photos"},
            "logging": {"level": "DEBUG", "json": True},
        },
    )

    settings = Settings()

    assert settings.llm_model == "gpt-yaml"
    assert settings.llm_timeout_seconds == 12
    assert settings.database_type == "postgres"
    assert settings.postgres_host == "db.internal"
    assert settings.timezone.zone == "Europe/Moscow"
    assert settings.stuck_threshold_minutes == 20
    assert settings.inline_caption_processing is False
    assert settings.storage_backend == "supabase"
    assert settings.storage_bucket == "photos"
    assert settings.log_level == "DEBUG"
    assert settings.json_logs is True


def test_explicit_and_env_values_win_over_yaml(
    isolated_config: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    _write_yaml(
        isolated_config / "main.yaml",
        {"llm": {"model": "gpt-yaml"}, "processing": {"max_retry_count": 9}},
    )
    monkeypatch.setenv("LLM_MODEL", "gpt-env")

    settings = Settings(max_retry_count=2)

    assert settings.llm_model == "gpt-env"
    assert settings.max_retry_count == 2


def test_unknown_timezone_rejected(isolated_config: Path) -> None:
    with pytest.raises(ValidationError, match="Unknown timezone"):
        Settings(tz_default="Mars/Olympus_Mons")


def test_non_positive_retry_count_rejected(isolated_config: Path) -> None:
    with pytest.raises(ValidationError):
        Settings(max_retry_count=0)


def test_ai_enabled_requires_non_blank_key(isolated_config: Path) -> None:
    assert Settings(openai_api_key="   ").ai_enabled is False
    assert Settings(openai_api_key="sk-test").ai_enabled is True


def test_get_settings_is_cached(
    isolated_config: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(settings_module, "_settings", None)

    first = get_settings()

    assert get_settings() is first


def test_invalid_yaml_value_is_rejected(isolated_config: Path) -> None:
    _write_yaml(isolated_config / "main.yaml", {"processing": {"tz_default": "Mars/Olympus"}})

    with pytest.raises(ValidationError, match="Unknown timezone"):
        Settings()


def test_malformed_yaml_file_is_skipped(isolated_config: Path) -> None:
    (isolated_config / "main.yaml").write_text("llm: [unclosed", encoding="utf-8")
    _write_yaml(isolated_config / "storage.yaml", {"storage": {"bucket": "catalog-media"}})

    assert load_all_configs(isolated_config) == {"storage": {"bucket": "catalog-media"}}
