"""Row mapping shared by the SQLite and PostgreSQL repositories."""

from __future__ import annotations

import json
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any, Final

from media_catalog.domain.models import (
    AnalyzedContent,
    AuditEventType,
    AuditLogEntry,
    ContentDisposition,
    MediaType,
    Message,
    ProcessingState,
)

MESSAGE_COLUMNS: Final[tuple[str, ...]] = (
    "id",
    "telegram_message_id",
    "chat_id",
    "chat_type",
    "chat_title",
    "media_group_id",
    "caption",
    "media_type",
    "file_id",
    "file_unique_id",
    "mime_type",
    "file_size",
    "width",
    "height",
    "duration",
    "storage_path",
    "public_url",
    "content_disposition",
    "is_duplicate",
    "duplicate_reference_id",
    "needs_redownload",
    "is_original_caption",
    "group_caption_synced",
    "analyzed_content",
    "processing_state",
    "processing_started_at",
    "processing_completed_at",
    "is_edited",
    "edit_date",
    "error_message",
    "retry_count",
    "correlation_id",
    "created_at",
    "updated_at",
)

MUTABLE_MESSAGE_COLUMNS: Final[tuple[str, ...]] = tuple(
    column
    for column in MESSAGE_COLUMNS
    if column not in {"id", "telegram_message_id", "chat_id", "created_at"}
)

AUDIT_COLUMNS: Final[tuple[str, ...]] = (
    "id",
    "event_type",
    "message_id",
    "media_group_id",
    "correlation_id",
    "previous_state",
    "new_state",
    "metadata",
    "error_message",
    "created_at",
)


def message_values(message: Message) -> dict[str, Any]:
    """Column values for ``message`` with enums flattened and JSON encoded."""
    values = message.model_dump(mode="python")
    values["analyzed_content"] = (
        message.analyzed_content.model_dump_json()
        if message.analyzed_content is not None
        else None
    )
    values["media_type"] = message.media_type.value if message.media_type else None
    values["content_disposition"] = (
        message.content_disposition.value if message.content_disposition else None
    )
    values["processing_state"] = message.processing_state.value
    return {column: values[column] for column in MESSAGE_COLUMNS}


def audit_values(entry: AuditLogEntry) -> dict[str, Any]:
    return {
        "id": entry.id,
        "event_type": entry.event_type.value,
        "message_id": entry.message_id,
        "media_group_id": entry.media_group_id,
        "correlation_id": entry.correlation_id,
        "previous_state": entry.previous_state.value if entry.previous_state else None,
        "new_state": entry.new_state.value if entry.new_state else None,
        "metadata": json.dumps(entry.metadata, default=str),
        "error_message": entry.error_message,
        "created_at": entry.created_at,
    }


def parse_timestamp(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _parse_json(value: Any) -> Any:
    if value is None or value == "":
        return None
    if isinstance(value, str | bytes):
        return json.loads(value)
    return value


def row_to_message(row: Mapping[str, Any]) -> Message:
    """Build a Message from a sqlite3.Row or RealDictCursor row."""
    content_raw = _parse_json(row["analyzed_content"])
    media_type = row["media_type"]
    disposition = row["content_disposition"]
    return Message(
        id=str(row["id"]),
        telegram_message_id=int(row["telegram_message_id"]),
        chat_id=int(row["chat_id"]),
        chat_type=row["chat_type"],
        chat_title=row["chat_title"],
        media_group_id=row["media_group_id"],
        caption=row["caption"],
        media_type=MediaType(media_type) if media_type else None,
        file_id=row["file_id"],
        file_unique_id=row["file_unique_id"],
        mime_type=row["mime_type"],
        file_size=row["file_size"],
        width=row["width"],
        height=row["height"],
        duration=row["duration"],
        storage_path=row["storage_path"],
        public_url=row["public_url"],
        content_disposition=ContentDisposition(disposition) if disposition else None,
        is_duplicate=bool(row["is_duplicate"]),
        duplicate_reference_id=row["duplicate_reference_id"],
        needs_redownload=bool(row["needs_redownload"]),
        is_original_caption=bool(row["is_original_caption"]),
        group_caption_synced=bool(row["group_caption_synced"]),
        analyzed_content=(
            AnalyzedContent.model_validate(content_raw) if content_raw else None
        ),
        processing_state=ProcessingState(row["processing_state"]),
        processing_started_at=parse_timestamp(row["processing_started_at"]),
        processing_completed_at=parse_timestamp(row["processing_completed_at"]),
        is_edited=bool(row["is_edited"]),
        edit_date=parse_timestamp(row["edit_date"]),
        error_message=row["error_message"],
        retry_count=int(row["retry_count"] or 0),
        correlation_id=row["correlation_id"],
        created_at=parse_timestamp(row["created_at"]),
        updated_at=parse_timestamp(row["updated_at"]),
    )


def row_to_audit_entry(row: Mapping[str, Any]) -> AuditLogEntry:
    previous = row["previous_state"]
    new = row["new_state"]
    return AuditLogEntry(
        id=str(row["id"]),
        event_type=AuditEventType(row["event_type"]),
        message_id=row["message_id"],
        media_group_id=row["media_group_id"],
        correlation_id=row["correlation_id"],
        previous_state=ProcessingState(previous) if previous else None,
        new_state=ProcessingState(new) if new else None,
        metadata=_parse_json(row["metadata"]) or {},
        error_message=row["error_message"],
        created_at=parse_timestamp(row["created_at"]),
    )
