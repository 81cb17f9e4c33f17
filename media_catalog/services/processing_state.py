"""Message processing lifecycle.

The transition table below is the single authority on which processing state
changes are legal. ``ProcessingStateMachine`` applies a transition to a
message, stamps the lifecycle timestamps, persists the row and appends the
audit entry in one call, and implements the stuck-message sweep.

    initialized -> has_caption -> processing_caption -> completed
               \\-> waiting_caption       (solo message without caption)
               \\-> ready_for_sync        (group member waiting on content)
    any non-terminal state -> error
    any state -> pending                  (edit, reprocess, stuck reset)
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, Final

from media_catalog.config.logging_config import get_logger
from media_catalog.domain.exceptions import InvalidStateTransitionError
from media_catalog.domain.models import (
    AuditEventType,
    AuditLogEntry,
    Message,
    ProcessingState,
)
from media_catalog.domain.protocols import MessageRepositoryProtocol
from media_catalog.observability.metrics import STUCK_RESETS_TOTAL
from media_catalog.observability.tracing import current_correlation_id

logger = get_logger(__name__)

S = ProcessingState

ALLOWED_TRANSITIONS: Final[dict[ProcessingState, frozenset[ProcessingState]]] = {
    S.INITIALIZED: frozenset(
        {S.HAS_CAPTION, S.WAITING_CAPTION, S.READY_FOR_SYNC, S.COMPLETED, S.ERROR}
    ),
    S.WAITING_CAPTION: frozenset(
        {S.HAS_CAPTION, S.READY_FOR_SYNC, S.COMPLETED, S.ERROR}
    ),
    S.HAS_CAPTION: frozenset({S.PROCESSING_CAPTION, S.ERROR}),
    S.PENDING: frozenset(
        {
            S.PROCESSING_CAPTION,
            S.HAS_CAPTION,
            S.WAITING_CAPTION,
            S.READY_FOR_SYNC,
            S.COMPLETED,
            S.ERROR,
        }
    ),
    S.PROCESSING_CAPTION: frozenset({S.COMPLETED, S.ERROR}),
    S.READY_FOR_SYNC: frozenset({S.COMPLETED, S.ERROR}),
    S.COMPLETED: frozenset({S.READY_FOR_SYNC}),
    S.ERROR: frozenset({S.READY_FOR_SYNC, S.COMPLETED}),
}
"""Forward transitions. ``pending`` is reachable from every state."""

TERMINAL_STATES: Final[frozenset[ProcessingState]] = frozenset({S.COMPLETED})
IN_FLIGHT_STATES: Final[tuple[ProcessingState, ...]] = (S.PROCESSING_CAPTION,)
ORPHAN_STATES: Final[tuple[ProcessingState, ...]] = (S.HAS_CAPTION,)
"""Captioned messages whose analysis was never started."""


def can_transition(current: ProcessingState, target: ProcessingState) -> bool:
    if target is S.PENDING or current is target:
        return True
    return target in ALLOWED_TRANSITIONS[current]


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


@dataclass(slots=True)
class StuckResetReport:
    stuck_reset: int = 0
    errors_requeued: int = 0
    orphans_requeued: int = 0
    message_ids: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.stuck_reset + self.errors_requeued + self.orphans_requeued


class ProcessingStateMachine:
    """Applies, persists and audits processing state changes.

    Args:
        repository: Message store
        clock: Returns the current UTC time
    """

    def __init__(
        self,
        repository: MessageRepositoryProtocol,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._repository = repository
        self._clock = clock or _utcnow

    def now(self) -> datetime:
        return self._clock()

    def transition(
        self,
        message: Message,
        target: ProcessingState,
        *,
        updates: dict[str, Any] | None = None,
        error: str | None = None,
        reason: str | None = None,
        event_type: AuditEventType = AuditEventType.STATE_TRANSITION,
        metadata: dict[str, Any] | None = None,
    ) -> Message:
        """Move ``message`` to ``target`` and persist it.

        Args:
            message: Current stored version of the message
            target: Desired processing state
            updates: Extra column values written in the same save
            error: Error text, required when ``target`` is ``error``
            reason: Short machine-readable cause stored in the audit entry
            event_type: Audit event recorded for the change
            metadata: Extra audit metadata

        Returns:
            The saved message

        Raises:
            InvalidStateTransitionError: Transition not in the table
            RepositoryError: Persisting failed
        """
        current = message.processing_state
        if not can_transition(current, target):
            raise InvalidStateTransitionError(current.value, target.value)

        now = self.now()
        changes: dict[str, Any] = dict(updates or {})
        changes["processing_state"] = target

        if target is S.PROCESSING_CAPTION:
            changes["processing_started_at"] = now
            changes["processing_completed_at"] = None
            changes.setdefault("error_message", None)
        elif target is S.COMPLETED:
            changes["processing_completed_at"] = now
            changes.setdefault("error_message", None)
        elif target is S.PENDING:
            changes["processing_started_at"] = None
            changes["processing_completed_at"] = None
        elif target is S.ERROR:
            changes["error_message"] = error or "Unknown error"
            changes["retry_count"] = message.retry_count + 1

        updated = message.model_copy(update=changes)
        saved = self._repository.save_message(updated)

        if current is not target or event_type is not AuditEventType.STATE_TRANSITION:
            audit_metadata = dict(metadata or {})
            if reason:
                audit_metadata["reason"] = reason
            self._repository.append_audit_log(
                AuditLogEntry(
                    event_type=event_type,
                    message_id=saved.id,
                    media_group_id=saved.media_group_id,
                    correlation_id=current_correlation_id() or saved.correlation_id,
                    previous_state=current,
                    new_state=target,
                    metadata=audit_metadata,
                    error_message=error if target is S.ERROR else None,
                    created_at=now,
                )
            )
            logger.debug(
                "processing_state_changed",
                message_id=saved.id,
                previous_state=current.value,
                new_state=target.value,
                reason=reason,
            )
        return saved

    def mark_error(
        self,
        message: Message,
        error: str,
        *,
        updates: dict[str, Any] | None = None,
        reason: str | None = None,
        event_type: AuditEventType = AuditEventType.STATE_TRANSITION,
        metadata: dict[str, Any] | None = None,
    ) -> Message:
        """Record a failure: ``error`` state, message text, retry count + 1."""
        logger.warning(
            "message_processing_failed",
            message_id=message.id,
            state=message.processing_state.value,
            error=error,
        )
        return self.transition(
            message,
            S.ERROR,
            error=error,
            updates=updates,
            reason=reason,
            event_type=event_type,
            metadata=metadata,
        )

    def find_stuck(self, threshold: timedelta) -> list[Message]:
        """Messages in flight whose processing started before now - threshold."""
        cutoff = self.now() - threshold
        return self._repository.list_messages(IN_FLIGHT_STATES, started_before=cutoff)

    def reset_stuck(
        self, *, threshold: timedelta, max_retry_count: int
    ) -> StuckResetReport:
        """Return stalled, orphaned, and retryable failed messages to ``pending``.

        - ``processing_caption`` with ``processing_started_at`` older than the
          threshold (crashed or hung analysis)
        - ``has_caption`` not touched within the threshold (analysis never
          started)
        - ``error`` not touched within the threshold and below
          ``max_retry_count`` failures

        Messages changed within the threshold are left alone.
        """
        report = StuckResetReport()
        cutoff = self.now() - threshold

        groups: list[tuple[str, list[Message]]] = [
            (
                "stuck",
                self._repository.list_messages(IN_FLIGHT_STATES, started_before=cutoff),
            ),
            (
                "orphan",
                self._repository.list_messages(ORPHAN_STATES, updated_before=cutoff),
            ),
            (
                "error",
                self._repository.list_messages(
                    (S.ERROR,),
                    updated_before=cutoff,
                    max_retry_count=max_retry_count,
                ),
            ),
        ]

        for kind, messages in groups:
            for message in messages:
                self.transition(
                    message,
                    S.PENDING,
                    reason=f"{kind}_reset",
                    event_type=AuditEventType.STUCK_MESSAGES_RESET,
                    metadata={
                        "processing_started_at": (
                            message.processing_started_at.isoformat()
                            if message.processing_started_at
                            else None
                        ),
                        "threshold_seconds": int(threshold.total_seconds()),
                        "retry_count": message.retry_count,
                    },
                )
                report.message_ids.append(message.id)
                if kind == "stuck":
                    report.stuck_reset += 1
                elif kind == "orphan":
                    report.orphans_requeued += 1
                else:
                    report.errors_requeued += 1

        STUCK_RESETS_TOTAL.inc(report.total)
        logger.info(
            "stuck_messages_reset",
            stuck_reset=report.stuck_reset,
            orphans_requeued=report.orphans_requeued,
            errors_requeued=report.errors_requeued,
            threshold_seconds=int(threshold.total_seconds()),
        )
        return report
