"""Webhook ingestion use case.

Turns inbound Telegram updates into message rows. New messages are checked
against already stored files, persisted, and routed by caption: captioned
messages get an outbox task for analysis, uncaptioned group members are
synced from their group. Edits re-enter the pipeline from ``pending``.
"""

from dataclasses import dataclass
from typing import Any

from media_catalog.config.logging_config import get_logger
from media_catalog.domain.exceptions import DataIntegrityError, ExternalServiceError
from media_catalog.domain.models import (
    AuditEventType,
    AuditLogEntry,
    Message,
    ProcessingState,
)
from media_catalog.domain.outcomes import DuplicateFile, Found, NewFile, NotFound
from media_catalog.domain.processing_constants import DEFAULT_MAX_RETRY_COUNT
from media_catalog.domain.protocols import MessageRepositoryProtocol
from media_catalog.domain.task_queue import TaskCreate
from media_catalog.domain.telegram_updates import (
    InboundUpdate,
    MediaAttachment,
    TelegramMessagePayload,
    extract_media,
    media_type_of,
    parse_update,
)
from media_catalog.observability.metrics import WEBHOOK_UPDATES_TOTAL
from media_catalog.observability.tracing import correlation_scope, current_correlation_id
from media_catalog.ports.task_queue import TaskQueuePort
from media_catalog.services.mime_types import content_disposition_for, storage_path_for
from media_catalog.services.processing_state import ProcessingStateMachine
from media_catalog.use_cases.analyze_caption import CaptionAnalysisService
from media_catalog.use_cases.media_transfer import MediaTransfer
from media_catalog.use_cases.sync_media_group import MediaGroupSynchronizer

logger = get_logger(__name__)


@dataclass(slots=True)
class WebhookResult:
    """Acknowledgement returned to the chat platform."""

    success: bool
    action: str
    message_id: str | None = None
    correlation_id: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "action": self.action,
            "message_id": self.message_id,
            "correlation_id": self.correlation_id,
            "error": self.error,
        }


def _media_columns(media: MediaAttachment) -> dict[str, Any]:
    return {
        "media_type": media_type_of(media),
        "file_id": media.file_id,
        "file_unique_id": media.file_unique_id,
        "mime_type": media.mime_type,
        "file_size": media.file_size,
        "width": media.width,
        "height": media.height,
        "duration": media.duration,
        "storage_path": storage_path_for(media.file_unique_id, media.mime_type),
        "content_disposition": content_disposition_for(media.mime_type),
    }


class IngestionGateway:
    """Entry point for Telegram webhook updates.

    Args:
        repository: Message store
        state_machine: Lifecycle transitions
        synchronizer: Media group fan-out
        analysis_service: Caption analysis
        task_queue: Outbox for caption analysis tasks
        media_transfer: Downloads and stores media; None leaves files marked
            for redownload
        max_retry_count: Failures after which a message is acknowledged
            without processing
        inline_processing: Analyze captions within the request after the
            task is recorded
    """

    def __init__(
        self,
        repository: MessageRepositoryProtocol,
        state_machine: ProcessingStateMachine,
        synchronizer: MediaGroupSynchronizer,
        analysis_service: CaptionAnalysisService,
        task_queue: TaskQueuePort,
        *,
        media_transfer: MediaTransfer | None = None,
        max_retry_count: int = DEFAULT_MAX_RETRY_COUNT,
        inline_processing: bool = True,
    ) -> None:
        self._repository = repository
        self._state_machine = state_machine
        self._synchronizer = synchronizer
        self._analysis_service = analysis_service
        self._task_queue = task_queue
        self._media_transfer = media_transfer
        self._max_retry_count = max_retry_count
        self._inline_processing = inline_processing

    def handle_update(
        self, raw: Any, *, correlation_id: str | None = None
    ) -> WebhookResult:
        """Validate and ingest one webhook body.

        Raises:
            DataIntegrityError: Malformed payload; nothing was written
            RepositoryError: Store unavailable
        """
        with correlation_scope(correlation_id) as cid:
            update = parse_update(raw)
            result = self._dispatch(update)
            result.correlation_id = cid
            WEBHOOK_UPDATES_TOTAL.labels(kind=update.kind.value, action=result.action).inc()
            logger.info(
                "webhook_update_handled",
                update_id=update.update_id,
                kind=update.kind.value,
                action=result.action,
                message_id=result.message_id,
            )
            return result

    def _dispatch(self, update: InboundUpdate) -> WebhookResult:
        payload = update.message
        if payload is None:
            self._audit_ignored(update, reason="chat_member_update")
            return WebhookResult(success=True, action="ignored")

        media = extract_media(payload)
        if media is None:
            self._audit_ignored(update, reason="no_media")
            return WebhookResult(success=True, action="ignored")

        match self._repository.find_by_telegram_id(payload.chat.id, payload.message_id):
            case Found(message=existing):
                if existing.retry_count >= self._max_retry_count:
                    return self._reject_exhausted(existing)
                if update.is_edit:
                    return self._handle_edit(existing, payload, media)
                logger.info("webhook_duplicate_delivery", message_id=existing.id)
                return WebhookResult(
                    success=True, action="duplicate_delivery", message_id=existing.id
                )
            case NotFound():
                return self._handle_new(update, payload, media)

    def _handle_new(
        self,
        update: InboundUpdate,
        payload: TelegramMessagePayload,
        media: MediaAttachment,
    ) -> WebhookResult:
        message = Message(
            telegram_message_id=payload.message_id,
            chat_id=payload.chat.id,
            chat_type=payload.chat.type,
            chat_title=payload.chat.title,
            media_group_id=payload.media_group_id,
            caption=payload.caption,
            is_edited=update.is_edit,
            edit_date=payload.edited_at,
            correlation_id=current_correlation_id(),
            **_media_columns(media),
        )

        match self._repository.check_file(media.file_unique_id):
            case DuplicateFile(original=original):
                message = message.model_copy(
                    update={
                        "is_duplicate": True,
                        "duplicate_reference_id": original.id,
                        "storage_path": original.storage_path,
                        "public_url": original.public_url,
                        "content_disposition": original.content_disposition,
                        "needs_redownload": original.needs_redownload,
                    }
                )
            case NewFile():
                message = message.model_copy(
                    update={"needs_redownload": self._media_transfer is None}
                )

        message = self._repository.insert_message(message)
        self._audit(
            AuditEventType.MESSAGE_CREATED,
            message,
            metadata={
                "update_kind": update.kind.value,
                "media_type": message.media_type.value if message.media_type else None,
                "has_caption": message.has_caption,
                "is_duplicate": message.is_duplicate,
            },
        )

        if message.is_duplicate:
            self._audit(
                AuditEventType.DUPLICATE_FILE_DETECTED,
                message,
                metadata={
                    "file_unique_id": message.file_unique_id,
                    "original_message_id": message.duplicate_reference_id,
                },
            )
        elif self._media_transfer is not None:
            stored = self._store_media(self._media_transfer, message)
            if stored is None:
                return WebhookResult(
                    success=True,
                    action="created",
                    message_id=message.id,
                    error="media download failed",
                )
            message = stored

        return self._route(message, action="created")

    def _handle_edit(
        self,
        existing: Message,
        payload: TelegramMessagePayload,
        media: MediaAttachment,
    ) -> WebhookResult:
        updates: dict[str, Any] = {
            "caption": payload.caption,
            "is_edited": True,
            "edit_date": payload.edited_at,
            "analyzed_content": None,
            "group_caption_synced": False,
            "error_message": None,
        }
        media_changed = media.file_unique_id != existing.file_unique_id
        if media_changed:
            updates.update(_media_columns(media))
            updates.update(
                {
                    "is_duplicate": False,
                    "duplicate_reference_id": None,
                    "public_url": None,
                    "needs_redownload": True,
                }
            )
        if existing.media_group_id and not (payload.caption or "").strip():
            updates["is_original_caption"] = False

        message = self._state_machine.transition(
            existing,
            ProcessingState.PENDING,
            updates=updates,
            reason="message_edited",
            event_type=AuditEventType.MESSAGE_EDITED,
            metadata={
                "previous_caption": existing.caption,
                "caption": payload.caption,
                "media_changed": media_changed,
            },
        )

        if existing.media_group_id and (existing.is_original_caption or message.has_caption):
            self._synchronizer.invalidate_siblings(message, demote=message.has_caption)

        if media_changed and self._media_transfer is not None:
            stored = self._store_media(self._media_transfer, message)
            if stored is None:
                return WebhookResult(
                    success=True,
                    action="edited",
                    message_id=message.id,
                    error="media download failed",
                )
            message = stored

        return self._route(message, action="edited")

    def _route(self, message: Message, *, action: str) -> WebhookResult:
        """Send a stored message down the caption or group path."""
        if message.has_caption:
            updates: dict[str, Any] = {}
            if message.media_group_id and not message.is_original_caption:
                self._synchronizer.claim_original_caption(message)
                updates["is_original_caption"] = True
            message = self._state_machine.transition(
                message,
                ProcessingState.HAS_CAPTION,
                updates=updates,
                reason="caption_present",
            )
            task = self._task_queue.enqueue(
                TaskCreate.caption_analysis(
                    message.id,
                    message.edit_marker,
                    correlation_id=current_correlation_id(),
                )
            )
            if self._inline_processing:
                processed = self._analysis_service.process_message(message.id)
                self._task_queue.complete(task.task_id)
                if processed is not None:
                    message = processed
        elif message.media_group_id:
            message = self._synchronizer.join_group(message)
        else:
            message = self._state_machine.transition(
                message, ProcessingState.WAITING_CAPTION, reason="caption_missing"
            )

        return WebhookResult(
            success=message.processing_state is not ProcessingState.ERROR,
            action=action,
            message_id=message.id,
            error=message.error_message,
        )

    def _store_media(
        self, transfer: MediaTransfer, message: Message
    ) -> Message | None:
        """Download and store media; on failure mark the message for redownload."""
        try:
            updates = transfer.fetch_and_store(message)
        except (ExternalServiceError, DataIntegrityError) as exc:
            self._state_machine.mark_error(
                message,
                f"Media download failed: {exc}",
                updates={"needs_redownload": True},
                reason="media_download_failed",
            )
            return None
        return self._state_machine.transition(
            message, message.processing_state, updates=updates, reason="media_stored"
        )

    def _reject_exhausted(self, message: Message) -> WebhookResult:
        self._audit(
            AuditEventType.MAX_RETRIES_REACHED,
            message,
            metadata={
                "retry_count": message.retry_count,
                "max_retry_count": self._max_retry_count,
            },
            error_message=message.error_message,
        )
        logger.warning(
            "webhook_max_retries_reached",
            message_id=message.id,
            retry_count=message.retry_count,
        )
        return WebhookResult(
            success=True, action="max_retries_reached", message_id=message.id
        )

    def _audit_ignored(self, update: InboundUpdate, *, reason: str) -> None:
        self._repository.append_audit_log(
            AuditLogEntry(
                event_type=AuditEventType.WEBHOOK_IGNORED,
                correlation_id=current_correlation_id(),
                metadata={
                    "update_id": update.update_id,
                    "update_kind": update.kind.value,
                    "reason": reason,
                },
            )
        )

    def _audit(
        self,
        event_type: AuditEventType,
        message: Message,
        *,
        metadata: dict[str, Any],
        error_message: str | None = None,
    ) -> None:
        self._repository.append_audit_log(
            AuditLogEntry(
                event_type=event_type,
                message_id=message.id,
                media_group_id=message.media_group_id,
                correlation_id=current_correlation_id(),
                new_state=message.processing_state,
                metadata=metadata,
                error_message=error_message,
            )
        )
