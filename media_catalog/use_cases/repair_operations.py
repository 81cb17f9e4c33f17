"""Admin repair operations.

Every operation runs in its own correlation scope and returns a
``RepairResult`` (success flag, counters, error list) instead of raising for
per-message failures.
"""

from datetime import timedelta

from media_catalog.config.logging_config import get_logger
from media_catalog.domain.exceptions import MediaCatalogError
from media_catalog.domain.models import (
    AuditEventType,
    AuditLogEntry,
    Message,
    ProcessingState,
    ProcessingStats,
    RepairResult,
)
from media_catalog.domain.outcomes import Found, NotFound
from media_catalog.domain.processing_constants import (
    DEFAULT_MAX_RETRY_COUNT,
    DEFAULT_PENDING_BATCH_SIZE,
    DEFAULT_STUCK_THRESHOLD_MINUTES,
)
from media_catalog.domain.protocols import MessageRepositoryProtocol
from media_catalog.domain.task_queue import TaskType
from media_catalog.observability.tracing import correlation_scope, current_correlation_id
from media_catalog.ports.task_queue import TaskQueuePort
from media_catalog.services.processing_state import ProcessingStateMachine
from media_catalog.use_cases.analyze_caption import CaptionAnalysisService
from media_catalog.use_cases.media_transfer import MediaTransfer
from media_catalog.use_cases.sync_media_group import (
    MediaGroupSynchronizer,
    find_caption_holder,
)

logger = get_logger(__name__)


class RepairOperations:
    """Operations behind the admin dashboard's repair actions."""

    def __init__(
        self,
        repository: MessageRepositoryProtocol,
        state_machine: ProcessingStateMachine,
        analysis_service: CaptionAnalysisService,
        synchronizer: MediaGroupSynchronizer,
        *,
        media_transfer: MediaTransfer | None = None,
        task_queue: TaskQueuePort | None = None,
        stuck_threshold: timedelta = timedelta(minutes=DEFAULT_STUCK_THRESHOLD_MINUTES),
        max_retry_count: int = DEFAULT_MAX_RETRY_COUNT,
        pending_batch_size: int = DEFAULT_PENDING_BATCH_SIZE,
    ) -> None:
        self._repository = repository
        self._state_machine = state_machine
        self._analysis_service = analysis_service
        self._synchronizer = synchronizer
        self._media_transfer = media_transfer
        self._task_queue = task_queue
        self._stuck_threshold = stuck_threshold
        self._max_retry_count = max_retry_count
        self._pending_batch_size = pending_batch_size

    def reset_stuck_messages(self) -> RepairResult:
        """Return stalled messages to ``pending`` so the next batch retries them.

        Caption tasks whose worker lease outlived the threshold go back to the
        queue as well.
        """
        released = 0
        with correlation_scope():
            report = self._state_machine.reset_stuck(
                threshold=self._stuck_threshold,
                max_retry_count=self._max_retry_count,
            )
            if self._task_queue is not None:
                released = self._task_queue.release_expired(
                    TaskType.CAPTION_ANALYSIS,
                    self._state_machine.now() - self._stuck_threshold,
                )
        return RepairResult(
            success=True,
            counts={
                "stuck_reset": report.stuck_reset,
                "orphans_requeued": report.orphans_requeued,
                "errors_requeued": report.errors_requeued,
                "total": report.total,
                "tasks_released": released,
            },
        )

    def process_pending_messages(self, batch_size: int | None = None) -> RepairResult:
        """Analyze up to ``batch_size`` pending messages, oldest first."""
        limit = self._pending_batch_size if batch_size is None else batch_size
        if limit <= 0:
            raise ValueError("batch_size must be positive")

        counts = {"processed": 0, "completed": 0, "failed": 0, "waiting": 0}
        errors: list[str] = []
        with correlation_scope():
            pending = self._repository.list_messages(
                (ProcessingState.PENDING,), limit=limit
            )
            for message in pending:
                counts["processed"] += 1
                try:
                    result = self._analysis_service.process_message(message.id)
                except MediaCatalogError as exc:
                    counts["failed"] += 1
                    errors.append(f"{message.id}: {exc}")
                    self._audit_failure("process_pending", message, exc)
                    continue

                state = result.processing_state if result else None
                if state is ProcessingState.COMPLETED:
                    counts["completed"] += 1
                elif state is ProcessingState.ERROR:
                    counts["failed"] += 1
                    errors.append(f"{message.id}: {result.error_message if result else ''}")
                else:
                    counts["waiting"] += 1

        logger.info("pending_messages_processed", batch_size=limit, **counts)
        return RepairResult(success=not errors, counts=counts, errors=errors)

    def sync_media_group_content(
        self, group_id: str, source_message_id: str, force: bool = False
    ) -> RepairResult:
        """Re-run the fan-out of ``group_id`` from ``source_message_id``."""
        result = self._synchronizer.sync(group_id, source_message_id, force=force)
        return RepairResult(
            success=result.success,
            counts={
                "updated": result.updated_count,
                "skipped": result.skipped_count,
                "failed": result.failed_count,
            },
            errors=result.errors,
        )

    def sync_pending_media_groups(self, batch_size: int | None = None) -> RepairResult:
        """Re-run the fan-out for groups whose siblings are still waiting.

        Siblings sitting in ``ready_for_sync`` past the stuck threshold are
        retried from their group's caption holder. Groups without an analyzed
        holder are counted as waiting.
        """
        limit = self._pending_batch_size if batch_size is None else batch_size
        if limit <= 0:
            raise ValueError("batch_size must be positive")

        counts = {"groups": 0, "updated": 0, "skipped": 0, "failed": 0, "waiting": 0}
        errors: list[str] = []
        with correlation_scope():
            waiting = self._repository.list_messages(
                (ProcessingState.READY_FOR_SYNC,),
                updated_before=self._state_machine.now() - self._stuck_threshold,
                limit=limit,
            )
            group_ids = list(
                dict.fromkeys(m.media_group_id for m in waiting if m.media_group_id)
            )
            for group_id in group_ids:
                counts["groups"] += 1
                members = self._repository.get_media_group_messages(group_id)
                holder = find_caption_holder(members)
                if holder is None or holder.analyzed_content is None:
                    counts["waiting"] += 1
                    continue
                result = self._synchronizer.sync(group_id, holder.id)
                counts["updated"] += result.updated_count
                counts["skipped"] += result.skipped_count
                counts["failed"] += result.failed_count
                errors.extend(result.errors)

        logger.info("pending_media_groups_synced", batch_size=limit, **counts)
        return RepairResult(success=not errors, counts=counts, errors=errors)

    def fix_content_disposition(self, message_id: str) -> RepairResult:
        """Re-upload a stored object with the disposition its MIME type calls for."""
        with correlation_scope():
            message = self._lookup(message_id)
            if isinstance(message, RepairResult):
                return message
            if self._media_transfer is None:
                return RepairResult(
                    success=False, errors=["Media storage is not configured"]
                )

            previous = message.content_disposition
            try:
                updates = self._media_transfer.restore_disposition(message)
            except MediaCatalogError as exc:
                self._audit_failure("fix_content_disposition", message, exc)
                return RepairResult(success=False, counts={"fixed": 0}, errors=[str(exc)])

            self._state_machine.transition(
                message,
                message.processing_state,
                updates=updates,
                reason="content_disposition_fixed",
                event_type=AuditEventType.CONTENT_DISPOSITION_FIXED,
                metadata={
                    "previous": previous.value if previous else None,
                    "current": updates["content_disposition"].value,
                    "storage_path": message.storage_path,
                },
            )
        return RepairResult(success=True, counts={"fixed": 1})

    def redownload_media(self, message_id: str) -> RepairResult:
        """Fetch the file again from the Bot API and store it."""
        with correlation_scope():
            message = self._lookup(message_id)
            if isinstance(message, RepairResult):
                return message
            if self._media_transfer is None:
                return RepairResult(
                    success=False, errors=["Telegram download is not configured"]
                )

            try:
                updates = self._media_transfer.fetch_and_store(message)
            except MediaCatalogError as exc:
                self._audit_failure("redownload_media", message, exc)
                return RepairResult(
                    success=False, counts={"redownloaded": 0}, errors=[str(exc)]
                )

            target = message.processing_state
            if target is ProcessingState.ERROR:
                target = ProcessingState.PENDING
                updates["error_message"] = None
            self._state_machine.transition(
                message,
                target,
                updates=updates,
                reason="media_redownloaded",
                event_type=AuditEventType.MEDIA_REDOWNLOADED,
                metadata={"storage_path": updates["storage_path"]},
            )
        return RepairResult(success=True, counts={"redownloaded": 1})

    def get_processing_stats(self) -> ProcessingStats:
        stalled_before = self._state_machine.now() - self._stuck_threshold
        return self._repository.get_processing_stats(stalled_before=stalled_before)

    def _lookup(self, message_id: str) -> Message | RepairResult:
        match self._repository.get_message(message_id):
            case Found(message=message):
                return message
            case NotFound(key=key):
                return RepairResult(success=False, errors=[f"Message not found: {key}"])

    def _audit_failure(self, operation: str, message: Message, exc: Exception) -> None:
        logger.warning(
            "repair_operation_failed",
            operation=operation,
            message_id=message.id,
            error=str(exc),
        )
        self._repository.append_audit_log(
            AuditLogEntry(
                event_type=AuditEventType.REPAIR_FAILED,
                message_id=message.id,
                media_group_id=message.media_group_id,
                correlation_id=current_correlation_id(),
                previous_state=message.processing_state,
                metadata={"operation": operation},
                error_message=str(exc),
            )
        )
