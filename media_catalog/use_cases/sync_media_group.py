"""Media group synchronization use case.

A media group is one multi-attachment Telegram post. Exactly one member, the
original-caption holder, owns the authoritative analyzed content; every other
member receives a copy of it. Sibling updates are independent writes, so a
crash mid fan-out leaves a partially synced group that the next sync heals.
"""

from collections.abc import Sequence

from media_catalog.config.logging_config import get_logger
from media_catalog.domain.exceptions import MediaCatalogError, RepositoryError
from media_catalog.domain.models import (
    AnalyzedContent,
    AuditEventType,
    AuditLogEntry,
    Message,
    ProcessingState,
    SyncResult,
)
from media_catalog.domain.outcomes import Found, NotFound
from media_catalog.domain.protocols import MessageRepositoryProtocol
from media_catalog.observability.metrics import GROUP_SIBLING_UPDATES_TOTAL
from media_catalog.observability.tracing import correlation_scope, current_correlation_id
from media_catalog.services.processing_state import (
    ProcessingStateMachine,
    can_transition,
)

logger = get_logger(__name__)


def find_caption_holder(members: Sequence[Message]) -> Message | None:
    """Return the original-caption holder, oldest first if several claim it."""
    for member in members:
        if member.is_original_caption:
            return member
    return None


class MediaGroupSynchronizer:
    """Propagates the holder's analyzed content to the rest of its group.

    Args:
        repository: Message store
        state_machine: Applies and audits sibling state changes
    """

    def __init__(
        self,
        repository: MessageRepositoryProtocol,
        state_machine: ProcessingStateMachine,
    ) -> None:
        self._repository = repository
        self._state_machine = state_machine

    def claim_original_caption(self, message: Message) -> None:
        """Make ``message`` the group's caption holder.

        Every other member loses the holder flag, is marked not synced, and
        waits in ``ready_for_sync`` when its state allows it. The caller
        persists ``is_original_caption=True`` on ``message`` itself.
        """
        if not message.media_group_id:
            return
        self.invalidate_siblings(message, demote=True)

    def invalidate_siblings(self, message: Message, *, demote: bool = False) -> int:
        """Mark every sibling of ``message`` as needing a re-sync.

        Returns:
            Number of siblings changed
        """
        if not message.media_group_id:
            return 0

        changed = 0
        for sibling in self._repository.get_media_group_messages(message.media_group_id):
            if sibling.id == message.id:
                continue
            updates: dict[str, object] = {}
            if sibling.group_caption_synced:
                updates["group_caption_synced"] = False
            if demote and sibling.is_original_caption:
                updates["is_original_caption"] = False

            state = sibling.processing_state
            target = (
                ProcessingState.READY_FOR_SYNC
                if state is not ProcessingState.READY_FOR_SYNC
                and not sibling.has_caption
                and can_transition(state, ProcessingState.READY_FOR_SYNC)
                else state
            )
            if not updates and target is state:
                continue

            self._state_machine.transition(
                sibling,
                target,
                updates=updates,
                reason="group_caption_changed",
                metadata={"caption_holder_id": message.id},
            )
            changed += 1

        if changed:
            logger.info(
                "media_group_siblings_invalidated",
                group_id=message.media_group_id,
                holder_id=message.id,
                siblings=changed,
            )
        return changed

    def join_group(self, message: Message) -> Message:
        """Attach an uncaptioned member to its group.

        Copies the holder's content right away when the group already has
        it; otherwise the member waits for the holder's analysis.
        """
        if not message.media_group_id:
            return message

        members = self._repository.get_media_group_messages(message.media_group_id)
        holder = find_caption_holder([m for m in members if m.id != message.id])
        if holder is not None and holder.analyzed_content is not None:
            return self._state_machine.transition(
                message,
                ProcessingState.COMPLETED,
                updates={
                    "analyzed_content": holder.analyzed_content,
                    "group_caption_synced": True,
                    "is_original_caption": False,
                },
                reason="joined_group",
                event_type=AuditEventType.MEDIA_GROUP_SYNCED,
                metadata={"source_message_id": holder.id},
            )

        if message.processing_state in (ProcessingState.PENDING, ProcessingState.ERROR):
            return self._state_machine.transition(
                message,
                ProcessingState.READY_FOR_SYNC,
                reason="awaiting_group_content",
            )
        return message

    def sync(
        self,
        group_id: str,
        source_message_id: str,
        analyzed_content: AnalyzedContent | None = None,
        *,
        force: bool = False,
    ) -> SyncResult:
        """Copy the holder's content to every sibling in ``group_id``.

        Args:
            group_id: Media group identifier
            source_message_id: Message that triggered the sync
            analyzed_content: Content to propagate when the source is the
                holder; defaults to the holder's stored content
            force: Rewrite siblings that are already synced

        Returns:
            Per-group counts; failed siblings are reported, not raised
        """
        with correlation_scope():
            return self._sync(group_id, source_message_id, analyzed_content, force)

    def _sync(
        self,
        group_id: str,
        source_message_id: str,
        analyzed_content: AnalyzedContent | None,
        force: bool,
    ) -> SyncResult:
        result = SyncResult(media_group_id=group_id, source_message_id=source_message_id)
        members = self._repository.get_media_group_messages(group_id)

        source = next((m for m in members if m.id == source_message_id), None)
        if source is None:
            match self._repository.get_message(source_message_id):
                case Found(message=found):
                    result.errors.append(
                        f"Message {found.id} belongs to group {found.media_group_id}, "
                        f"not {group_id}"
                    )
                case NotFound(key=key):
                    result.errors.append(f"Source message not found: {key}")
            logger.warning(
                "media_group_sync_rejected", group_id=group_id, error=result.errors[-1]
            )
            return result

        holder = self._resolve_holder(members, source)
        content = (
            analyzed_content
            if holder.id == source.id and analyzed_content is not None
            else holder.analyzed_content
        )
        if content is None:
            result.errors.append(f"No analyzed content available in group {group_id}")
            logger.info("media_group_sync_no_content", group_id=group_id)
            return result

        for sibling in members:
            if sibling.id == holder.id:
                continue
            if (
                not force
                and sibling.group_caption_synced
                and not sibling.is_original_caption
                and sibling.analyzed_content == content
            ):
                result.skipped_count += 1
                continue
            if not can_transition(sibling.processing_state, ProcessingState.COMPLETED):
                # Sibling has its own caption under analysis.
                result.skipped_count += 1
                continue

            try:
                self._state_machine.transition(
                    sibling,
                    ProcessingState.COMPLETED,
                    updates={
                        "analyzed_content": content,
                        "group_caption_synced": True,
                        "is_original_caption": False,
                    },
                    reason="group_sync",
                    event_type=AuditEventType.MEDIA_GROUP_SYNCED,
                    metadata={"source_message_id": holder.id, "force": force},
                )
            except MediaCatalogError as exc:
                result.failed_count += 1
                result.errors.append(f"{sibling.id}: {exc}")
                GROUP_SIBLING_UPDATES_TOTAL.labels(outcome="failed").inc()
                self._record_sibling_failure(group_id, holder, sibling, exc)
                continue

            result.updated_count += 1
            GROUP_SIBLING_UPDATES_TOTAL.labels(outcome="updated").inc()

        self._repository.append_audit_log(
            AuditLogEntry(
                event_type=AuditEventType.MEDIA_GROUP_SYNCED,
                message_id=source_message_id,
                media_group_id=group_id,
                correlation_id=current_correlation_id(),
                metadata={
                    "caption_holder_id": holder.id,
                    "updated_count": result.updated_count,
                    "skipped_count": result.skipped_count,
                    "failed_count": result.failed_count,
                    "force": force,
                    "analyzed_content": content.model_dump(mode="json"),
                },
            )
        )
        logger.info(
            "media_group_synced",
            group_id=group_id,
            source_message_id=source_message_id,
            caption_holder_id=holder.id,
            updated_count=result.updated_count,
            skipped_count=result.skipped_count,
            failed_count=result.failed_count,
            force=force,
        )
        return result

    def _resolve_holder(self, members: Sequence[Message], source: Message) -> Message:
        """Pick the holder and repair the flag so exactly one member carries it."""
        holders = [m for m in members if m.is_original_caption]
        if source.is_original_caption or not holders:
            holder = source
        else:
            holder = holders[0]

        for extra in holders:
            if extra.id != holder.id:
                self._state_machine.transition(
                    extra,
                    extra.processing_state,
                    updates={"is_original_caption": False},
                    reason="duplicate_caption_holder",
                )
        if not holder.is_original_caption:
            holder = self._state_machine.transition(
                holder,
                holder.processing_state,
                updates={"is_original_caption": True},
                reason="caption_holder_assigned",
            )
        return holder

    def _record_sibling_failure(
        self, group_id: str, holder: Message, sibling: Message, exc: Exception
    ) -> None:
        logger.warning(
            "media_group_sibling_sync_failed",
            group_id=group_id,
            message_id=sibling.id,
            error=str(exc),
        )
        try:
            self._repository.append_audit_log(
                AuditLogEntry(
                    event_type=AuditEventType.GROUP_SYNC_FAILED,
                    message_id=sibling.id,
                    media_group_id=group_id,
                    correlation_id=current_correlation_id(),
                    previous_state=sibling.processing_state,
                    metadata={"source_message_id": holder.id},
                    error_message=str(exc),
                )
            )
        except RepositoryError:
            logger.exception(
                "group_sync_failure_audit_failed", group_id=group_id, message_id=sibling.id
            )
