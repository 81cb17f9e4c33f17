"""Moves media bytes from the Bot API into object storage."""

from dataclasses import dataclass
from typing import Any

from media_catalog.config.logging_config import get_logger
from media_catalog.domain.exceptions import DataIntegrityError
from media_catalog.domain.models import Message
from media_catalog.domain.protocols import (
    MediaStorageProtocol,
    TelegramFileClientProtocol,
)
from media_catalog.services.mime_types import (
    content_disposition_for,
    default_mime_type,
    mime_from_file_path,
    storage_path_for,
)

logger = get_logger(__name__)


@dataclass
class MediaTransfer:
    """Downloads a message's file and stores it under its content-addressed path."""

    telegram: TelegramFileClientProtocol
    storage: MediaStorageProtocol

    def fetch_and_store(self, message: Message) -> dict[str, Any]:
        """Download ``message``'s file and upload it to storage.

        Returns:
            Column updates describing the stored object

        Raises:
            DataIntegrityError: Message carries no file reference
            TelegramAPIError: Download failed
            StorageError: Upload failed
        """
        if not message.file_id or not message.file_unique_id:
            raise DataIntegrityError(
                f"Message {message.id} has no file to download", field="file_id"
            )

        file_path = self.telegram.get_file_path(message.file_id)
        data = self.telegram.download_file(file_path)

        mime_type = (
            message.mime_type
            or mime_from_file_path(file_path)
            or default_mime_type(message.media_type)
        )
        path = storage_path_for(message.file_unique_id, mime_type)
        disposition = content_disposition_for(mime_type)
        stored = self.storage.upload(
            path, data, content_type=mime_type, content_disposition=disposition
        )
        logger.info(
            "media_transferred",
            message_id=message.id,
            storage_path=stored.path,
            size=len(data),
            content_disposition=disposition.value,
        )
        return {
            "mime_type": mime_type,
            "storage_path": stored.path,
            "public_url": stored.public_url,
            "content_disposition": stored.content_disposition,
            "needs_redownload": False,
        }

    def restore_disposition(self, message: Message) -> dict[str, Any]:
        """Re-upload the stored object with the disposition its MIME type calls for.

        Raises:
            DataIntegrityError: Message has no stored object
            StorageError: Download or upload failed
        """
        if not message.storage_path:
            raise DataIntegrityError(
                f"Message {message.id} has no stored object", field="storage_path"
            )

        mime_type = message.mime_type or default_mime_type(message.media_type)
        disposition = content_disposition_for(mime_type)
        data = self.storage.download(message.storage_path)
        stored = self.storage.upload(
            message.storage_path,
            data,
            content_type=mime_type,
            content_disposition=disposition,
        )
        return {
            "mime_type": mime_type,
            "public_url": stored.public_url,
            "content_disposition": stored.content_disposition,
        }
