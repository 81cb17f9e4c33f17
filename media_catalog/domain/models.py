"""Domain models for the media catalog.

All models use Pydantic v2 for validation and serialization.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from media_catalog.domain.processing_constants import (
    AI_CONFIDENCE,
    MANUAL_CONFIDENCE,
)


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


def _ensure_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class ProcessingState(str, Enum):
    """Lifecycle of a single ingested media message."""

    INITIALIZED = "initialized"
    WAITING_CAPTION = "waiting_caption"
    HAS_CAPTION = "has_caption"
    PROCESSING_CAPTION = "processing_caption"
    READY_FOR_SYNC = "ready_for_sync"
    PENDING = "pending"
    COMPLETED = "completed"
    ERROR = "error"


class MediaType(str, Enum):
    """Kind of media attached to a message."""

    PHOTO = "photo"
    VIDEO = "video"
    DOCUMENT = "document"


class ParsingMethod(str, Enum):
    """How the analyzed content was produced."""

    MANUAL = "manual"
    AI = "ai"


class ContentDisposition(str, Enum):
    """HTTP content disposition used for stored media objects."""

    INLINE = "inline"
    ATTACHMENT = "attachment"


class AuditEventType(str, Enum):
    """Event types written to the append-only audit log."""

    MESSAGE_CREATED = "message_created"
    MESSAGE_UPDATED = "message_updated"
    MESSAGE_EDITED = "message_edited"
    DUPLICATE_FILE_DETECTED = "duplicate_file_detected"
    STATE_TRANSITION = "state_transition"
    CAPTION_ANALYZED = "caption_analyzed"
    AI_ANALYSIS_FAILED = "ai_analysis_failed"
    MEDIA_GROUP_SYNCED = "media_group_synced"
    GROUP_SYNC_FAILED = "GROUP_SYNC_FAILED"
    STUCK_MESSAGES_RESET = "stuck_messages_reset"
    MAX_RETRIES_REACHED = "max_retries_reached"
    MEDIA_REDOWNLOADED = "media_redownloaded"
    CONTENT_DISPOSITION_FIXED = "content_disposition_fixed"
    REPAIR_FAILED = "repair_failed"
    WEBHOOK_IGNORED = "webhook_ignored"


class ParsingMetadata(BaseModel):
    """Parse-quality metadata attached to every analysis result."""

    method: ParsingMethod = Field(..., description="manual or ai")
    confidence: float = Field(..., ge=0.0, le=1.0)
    timestamp: datetime | None = Field(
        default=None, description="When the result was stored (UTC)"
    )
    missing_fields: list[str] = Field(default_factory=list)
    partial_success: bool = False
    ai_filled_fields: list[str] = Field(
        default_factory=list, description="Fields contributed by the AI pass"
    )
    error: str | None = Field(
        default=None, description="Internal failure recorded during parsing"
    )

    @field_validator("timestamp")
    @classmethod
    def _ensure_timezone(cls, value: datetime | None) -> datetime | None:
        return _ensure_utc(value)


class AnalyzedContent(BaseModel):
    """Structured product data extracted from a caption."""

    product_name: str = Field(default="", description="Never empty on success")
    product_code: str | None = Field(default=None, description="Code after '#'")
    vendor_uid: str | None = Field(default=None, description="1-4 letter vendor")
    purchase_date: str | None = Field(default=None, description="YYYY-MM-DD")
    quantity: int | None = Field(default=None, gt=0, lt=10000)
    notes: str | None = None
    parsing_metadata: ParsingMetadata

    @classmethod
    def empty(cls, method: ParsingMethod = ParsingMethod.MANUAL) -> "AnalyzedContent":
        confidence = MANUAL_CONFIDENCE if method is ParsingMethod.MANUAL else AI_CONFIDENCE
        return cls(
            parsing_metadata=ParsingMetadata(
                method=method,
                confidence=confidence,
                missing_fields=["caption"],
            )
        )

    def stamped(self, timestamp: datetime) -> "AnalyzedContent":
        """Return a copy whose metadata carries ``timestamp``."""
        metadata = self.parsing_metadata.model_copy(
            update={"timestamp": _ensure_utc(timestamp)}
        )
        return self.model_copy(update={"parsing_metadata": metadata})


class Message(BaseModel):
    """One ingested media item and its processing bookkeeping."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    telegram_message_id: int = Field(..., description="Message id within the chat")
    chat_id: int
    chat_type: str | None = None
    chat_title: str | None = None
    media_group_id: str | None = None
    caption: str | None = None

    media_type: MediaType | None = None
    file_id: str | None = None
    file_unique_id: str | None = None
    mime_type: str | None = None
    file_size: int | None = None
    width: int | None = None
    height: int | None = None
    duration: int | None = None
    storage_path: str | None = None
    public_url: str | None = None
    content_disposition: ContentDisposition | None = None
    is_duplicate: bool = False
    duplicate_reference_id: str | None = None
    needs_redownload: bool = False

    is_original_caption: bool = False
    group_caption_synced: bool = False
    analyzed_content: AnalyzedContent | None = None

    processing_state: ProcessingState = ProcessingState.INITIALIZED
    processing_started_at: datetime | None = None
    processing_completed_at: datetime | None = None

    is_edited: bool = False
    edit_date: datetime | None = None
    error_message: str | None = None
    retry_count: int = Field(default=0, ge=0)

    correlation_id: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @field_validator(
        "processing_started_at",
        "processing_completed_at",
        "edit_date",
        "created_at",
        "updated_at",
    )
    @classmethod
    def _ensure_timezone(cls, value: datetime | None) -> datetime | None:
        return _ensure_utc(value)

    @property
    def has_caption(self) -> bool:
        return bool(self.caption and self.caption.strip())

    @property
    def edit_marker(self) -> str:
        """Stable token identifying the current revision of the caption."""
        if self.edit_date is None:
            return "original"
        return str(int(self.edit_date.timestamp()))


class AuditLogEntry(BaseModel):
    """Append-only record of a state transition, sync, or failure."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    event_type: AuditEventType
    message_id: str | None = None
    media_group_id: str | None = None
    correlation_id: str | None = None
    previous_state: ProcessingState | None = None
    new_state: ProcessingState | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    error_message: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)

    @field_validator("created_at")
    @classmethod
    def _ensure_timezone(cls, value: datetime) -> datetime:
        return value.replace(tzinfo=UTC) if value.tzinfo is None else value


class LLMCallMetadata(BaseModel):
    """Metadata for LLM API calls."""

    prompt_hash: str = Field(..., description="SHA256 of system prompt")
    prompt_version: str | None = None
    model: str
    tokens_in: int
    tokens_out: int
    cost_usd: float
    latency_ms: int
    ts: datetime = Field(default_factory=_utcnow)


class SyncResult(BaseModel):
    """Outcome of fanning one caption's content out to its group."""

    media_group_id: str
    source_message_id: str | None = None
    updated_count: int = 0
    skipped_count: int = 0
    failed_count: int = 0
    errors: list[str] = Field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors


class RepairResult(BaseModel):
    """Shape returned by every admin repair operation."""

    success: bool
    counts: dict[str, int] = Field(default_factory=dict)
    errors: list[str] = Field(default_factory=list)


class ProcessingStats(BaseModel):
    """Aggregate counters for the admin dashboard."""

    total_messages: int = 0
    by_state: dict[str, int] = Field(default_factory=dict)
    with_caption: int = 0
    with_analyzed_content: int = 0
    needs_redownload: int = 0
    in_media_groups: int = 0
    stalled: int = 0
