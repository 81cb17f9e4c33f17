"""Protocol definitions for dependency inversion.

These abstract interfaces define contracts that adapters must implement.
"""

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from media_catalog.domain.models import (
    AuditLogEntry,
    ContentDisposition,
    Message,
    ProcessingState,
    ProcessingStats,
)
from media_catalog.domain.outcomes import FileCheck, MessageLookup
from media_catalog.ports.task_queue import TaskQueuePort


class MessageRepositoryProtocol(Protocol):
    """Persistence for messages, audit entries and the outbox."""

    def insert_message(self, message: Message) -> Message:
        """Insert a new message row.

        Raises:
            RepositoryError: On storage errors, including a conflicting
                (chat_id, telegram_message_id) pair
        """
        ...

    def save_message(self, message: Message) -> Message:
        """Persist every mutable column of an existing message.

        Returns:
            The stored message with a refreshed ``updated_at``

        Raises:
            RepositoryError: On storage errors or unknown message id
        """
        ...

    def get_message(self, message_id: str) -> MessageLookup:
        """Look up a message by its system id."""
        ...

    def find_by_telegram_id(self, chat_id: int, telegram_message_id: int) -> MessageLookup:
        """Look up a message by its chat-local Telegram identity."""
        ...

    def check_file(
        self, file_unique_id: str, *, exclude_message_id: str | None = None
    ) -> FileCheck:
        """Return the earliest non-duplicate message storing ``file_unique_id``."""
        ...

    def get_media_group_messages(self, media_group_id: str) -> list[Message]:
        """Return all messages of a group ordered by creation time."""
        ...

    def list_messages(
        self,
        states: Sequence[ProcessingState],
        *,
        started_before: datetime | None = None,
        updated_before: datetime | None = None,
        max_retry_count: int | None = None,
        limit: int | None = None,
    ) -> list[Message]:
        """Return messages in ``states`` ordered by creation time.

        Args:
            states: Processing states to match
            started_before: Only messages whose processing_started_at is older
            updated_before: Only messages whose updated_at is older
            max_retry_count: Only messages with retry_count below this value
            limit: Maximum rows to return
        """
        ...

    def append_audit_log(self, entry: AuditLogEntry) -> None:
        """Append an audit entry. Entries are never updated."""
        ...

    def get_audit_logs(
        self,
        *,
        message_id: str | None = None,
        media_group_id: str | None = None,
        limit: int = 100,
    ) -> list[AuditLogEntry]:
        """Return audit entries, oldest first."""
        ...

    def get_processing_stats(self, *, stalled_before: datetime) -> ProcessingStats:
        """Aggregate message counts for the admin dashboard."""
        ...

    def task_queue(self) -> TaskQueuePort:
        """Return the outbox bound to the same store."""
        ...

    def close(self) -> None:
        """Release connections held by the repository."""
        ...


class CaptionLLMClientProtocol(Protocol):
    """Language model used as the caption-parsing fallback."""

    def extract_caption_fields(self, caption: str) -> str:
        """Return the raw model reply for ``caption``.

        Raises:
            LLMAPIError: On API errors or timeouts
        """
        ...


class TelegramFileClientProtocol(Protocol):
    """Bot API operations needed to fetch media bytes."""

    def get_file_path(self, file_id: str) -> str:
        """Resolve ``file_id`` to a downloadable path.

        Raises:
            TelegramAPIError: On API errors
        """
        ...

    def download_file(self, file_path: str) -> bytes:
        """Download the file at ``file_path``.

        Raises:
            TelegramAPIError: On download errors
        """
        ...


@dataclass(frozen=True, slots=True)
class StoredObject:
    path: str
    public_url: str | None
    content_disposition: ContentDisposition


class MediaStorageProtocol(Protocol):
    """Object storage for media bytes."""

    def upload(
        self,
        path: str,
        data: bytes,
        *,
        content_type: str,
        content_disposition: ContentDisposition,
    ) -> StoredObject:
        """Store ``data`` at ``path``, replacing an existing object.

        Raises:
            StorageError: On upload errors
        """
        ...

    def download(self, path: str) -> bytes:
        """Read the object stored at ``path``.

        Raises:
            StorageError: When the object is missing or unreadable
        """
        ...
