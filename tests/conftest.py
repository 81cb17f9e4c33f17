"""Pytest configuration and shared fixtures."""

from __future__ import annotations

from collections.abc import Callable, Generator
from datetime import UTC, date, datetime
from pathlib import Path
from typing import Any

import pytest
from pydantic import SecretStr

from media_catalog.adapters.media_storage import LocalMediaStorage
from media_catalog.adapters.sqlite_repository import SQLiteRepository
from media_catalog.config.logging_config import unbind_context
from media_catalog.config.settings import Settings
from media_catalog.domain.exceptions import LLMAPIError, TelegramAPIError
from media_catalog.domain.models import Message, ProcessingState
from media_catalog.observability.tracing import CORRELATION_ID_KEY
from media_catalog.use_cases.pipeline_factories import PipelineServices, build_services

FIXED_TODAY = date(2024, 6, 1)


class FakeLLMClient:
    """Caption LLM client returning canned replies."""

    def __init__(self, reply: str = "{}", error: Exception | None = None) -> None:
        self.reply = reply
        self.error = error
        self.calls: list[str] = []

    def extract_caption_fields(self, caption: str) -> str:
        self.calls.append(caption)
        if self.error is not None:
            raise self.error
        return self.reply


class FakeTelegramClient:
    """Bot API client that serves generated bytes for any file."""

    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.downloads: list[str] = []

    def get_file_path(self, file_id: str) -> str:
        if self.fail:
            raise TelegramAPIError(f"getFile failed for {file_id}")
        return f"files/{file_id}.bin"

    def download_file(self, file_path: str) -> bytes:
        self.downloads.append(file_path)
        return f"bytes:{file_path}".encode()


@pytest.fixture(autouse=True)
def _clear_correlation_context() -> Generator[None, None, None]:
    yield
    unbind_context(CORRELATION_ID_KEY)


@pytest.fixture
def fixed_today() -> date:
    return FIXED_TODAY


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings pointing every store at the test's temp directory."""

    return Settings(
        database_type="sqlite",
        db_path=str(tmp_path / "test.sqlite"),
        storage_backend="local",
        storage_root=str(tmp_path / "media"),
        openai_api_key=None,
        telegram_bot_token=None,
        telegram_webhook_secret=None,
        admin_api_key=SecretStr("admin-key"),
        tz_default="UTC",
        max_retry_count=3,
        stuck_threshold_minutes=15,
        inline_caption_processing=True,
    )


@pytest.fixture
def repo(tmp_path: Path) -> Generator[SQLiteRepository, None, None]:
    repository = SQLiteRepository(str(tmp_path / "repo.sqlite"))
    yield repository
    repository.close()


@pytest.fixture
def storage(tmp_path: Path) -> LocalMediaStorage:
    return LocalMediaStorage(tmp_path / "media", "https://cdn.example.test/media")


@pytest.fixture
def fake_llm() -> FakeLLMClient:
    return FakeLLMClient()


@pytest.fixture
def failing_llm() -> FakeLLMClient:
    return FakeLLMClient(error=LLMAPIError("OpenAI request timed out"))


@pytest.fixture
def fake_telegram() -> FakeTelegramClient:
    return FakeTelegramClient()


@pytest.fixture
def build(
    settings: Settings,
    repo: SQLiteRepository,
    storage: LocalMediaStorage,
    fake_telegram: FakeTelegramClient,
) -> Callable[..., PipelineServices]:
    """Wire the pipeline around the test repository and fakes."""

    def _build(**overrides: Any) -> PipelineServices:
        kwargs: dict[str, Any] = {
            "repository": repo,
            "telegram_client": fake_telegram,
            "storage": storage,
        }
        kwargs.update(overrides)
        return build_services(settings, **kwargs)

    return _build


@pytest.fixture
def services(build: Callable[..., PipelineServices]) -> PipelineServices:
    return build()


@pytest.fixture
def make_message(repo: SQLiteRepository) -> Callable[..., Message]:
    """Insert a message row directly, bypassing the webhook."""

    counter = {"next": 1000}

    def _make(**overrides: Any) -> Message:
        counter["next"] += 1
        data: dict[str, Any] = {
            "telegram_message_id": counter["next"],
            "chat_id": -100123,
            "chat_type": "channel",
            "media_type": "photo",
            "file_id": f"file-{counter['next']}",
            "file_unique_id": f"uniq-{counter['next']}",
            "mime_type": "image/jpeg",
            "processing_state": ProcessingState.INITIALIZED,
        }
        data.update(overrides)
        return repo.insert_message(Message(**data))

    return _make


def photo_update(
    message_id: int,
    *,
    caption: str | None = None,
    media_group_id: str | None = None,
    file_unique_id: str | None = None,
    chat_id: int = -100123,
    update_id: int | None = None,
    edit_date: int | None = None,
) -> dict[str, Any]:
    """Build a Bot API update carrying a photo."""

    unique = file_unique_id or f"uniq-{message_id}"
    body: dict[str, Any] = {
        "message_id": message_id,
        "chat": {"id": chat_id, "type": "channel", "title": "Inventory"},
        "date": int(datetime(2024, 5, 1, tzinfo=UTC).timestamp()),
        "photo": [
            {"file_id": f"small-{unique}", "file_unique_id": f"s-{unique}", "width": 90, "height": 90},
            {"file_id": f"file-{unique}", "file_unique_id": unique, "width": 1280, "height": 960, "file_size": 2048},
        ],
    }
    if caption is not None:
        body["caption"] = caption
    if media_group_id is not None:
        body["media_group_id"] = media_group_id
    if edit_date is not None:
        body["edit_date"] = edit_date
    key = "edited_channel_post" if edit_date is not None else "channel_post"
    return {"update_id": update_id or message_id, key: body}


@pytest.fixture
def photo_update_factory() -> Callable[..., dict[str, Any]]:
    return photo_update
