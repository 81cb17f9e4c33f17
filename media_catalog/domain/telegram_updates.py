"""Typed views over inbound Telegram Bot API updates.

Webhook payloads are validated here once, at the boundary. Anything that does
not fit the expected envelope raises :class:`DataIntegrityError` before a
single row is written.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError

from media_catalog.domain.exceptions import DataIntegrityError
from media_catalog.domain.models import MediaType

DEFAULT_PHOTO_MIME = "image/jpeg"
DEFAULT_VIDEO_MIME = "video/mp4"
DEFAULT_DOCUMENT_MIME = "application/octet-stream"


class _TelegramModel(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)


class TelegramChat(_TelegramModel):
    id: int
    type: str
    title: str | None = None


class PhotoSize(_TelegramModel):
    file_id: str
    file_unique_id: str
    width: int
    height: int
    file_size: int | None = None


class TelegramVideo(_TelegramModel):
    file_id: str
    file_unique_id: str
    width: int | None = None
    height: int | None = None
    duration: int | None = None
    mime_type: str | None = None
    file_size: int | None = None


class TelegramDocument(_TelegramModel):
    file_id: str
    file_unique_id: str
    file_name: str | None = None
    mime_type: str | None = None
    file_size: int | None = None


class TelegramMessagePayload(_TelegramModel):
    """The subset of a Telegram ``Message`` object the pipeline consumes."""

    message_id: int
    chat: TelegramChat
    date: int
    edit_date: int | None = None
    media_group_id: str | None = None
    caption: str | None = None
    text: str | None = None
    photo: list[PhotoSize] | None = None
    video: TelegramVideo | None = None
    document: TelegramDocument | None = None

    @property
    def edited_at(self) -> datetime | None:
        if self.edit_date is None:
            return None
        return datetime.fromtimestamp(self.edit_date, tz=UTC)


class PhotoMedia(_TelegramModel):
    kind: Literal["photo"] = "photo"
    file_id: str
    file_unique_id: str
    mime_type: str = DEFAULT_PHOTO_MIME
    file_size: int | None = None
    width: int | None = None
    height: int | None = None
    duration: None = None


class VideoMedia(_TelegramModel):
    kind: Literal["video"] = "video"
    file_id: str
    file_unique_id: str
    mime_type: str = DEFAULT_VIDEO_MIME
    file_size: int | None = None
    width: int | None = None
    height: int | None = None
    duration: int | None = None


class DocumentMedia(_TelegramModel):
    kind: Literal["document"] = "document"
    file_id: str
    file_unique_id: str
    mime_type: str = DEFAULT_DOCUMENT_MIME
    file_size: int | None = None
    file_name: str | None = None
    width: None = None
    height: None = None
    duration: None = None


MediaAttachment = PhotoMedia | VideoMedia | DocumentMedia


def media_type_of(media: MediaAttachment) -> MediaType:
    return MediaType(media.kind)


def extract_media(
    payload: TelegramMessagePayload,
) -> MediaAttachment | None:
    """Return the single attachment carried by ``payload``.

    Telegram sends every resolution of a photo; the largest one is kept.
    """

    if payload.photo:
        largest = max(
            payload.photo,
            key=lambda size: (size.width * size.height, size.file_size or 0),
        )
        return PhotoMedia(
            file_id=largest.file_id,
            file_unique_id=largest.file_unique_id,
            file_size=largest.file_size,
            width=largest.width,
            height=largest.height,
        )
    if payload.video is not None:
        video = payload.video
        return VideoMedia(
            file_id=video.file_id,
            file_unique_id=video.file_unique_id,
            mime_type=video.mime_type or DEFAULT_VIDEO_MIME,
            file_size=video.file_size,
            width=video.width,
            height=video.height,
            duration=video.duration,
        )
    if payload.document is not None:
        document = payload.document
        return DocumentMedia(
            file_id=document.file_id,
            file_unique_id=document.file_unique_id,
            mime_type=document.mime_type or DEFAULT_DOCUMENT_MIME,
            file_size=document.file_size,
            file_name=document.file_name,
        )
    return None


class UpdateKind(str, Enum):
    MESSAGE = "message"
    EDITED_MESSAGE = "edited_message"
    CHANNEL_POST = "channel_post"
    EDITED_CHANNEL_POST = "edited_channel_post"
    CHAT_MEMBER = "chat_member"


_MESSAGE_KINDS: tuple[UpdateKind, ...] = (
    UpdateKind.MESSAGE,
    UpdateKind.EDITED_MESSAGE,
    UpdateKind.CHANNEL_POST,
    UpdateKind.EDITED_CHANNEL_POST,
)


@dataclass(frozen=True, slots=True)
class InboundUpdate:
    """A validated webhook update."""

    update_id: int | None
    kind: UpdateKind
    message: TelegramMessagePayload | None = None
    chat_member: dict[str, Any] | None = None

    @property
    def is_edit(self) -> bool:
        return self.kind in (UpdateKind.EDITED_MESSAGE, UpdateKind.EDITED_CHANNEL_POST)

    @property
    def is_channel_post(self) -> bool:
        return self.kind in (UpdateKind.CHANNEL_POST, UpdateKind.EDITED_CHANNEL_POST)


def parse_update(raw: Any) -> InboundUpdate:
    """Validate a raw webhook body.

    Raises:
        DataIntegrityError: body is not an object, carries none of the known
            update fields, or the message object is missing required fields.
    """

    if not isinstance(raw, dict):
        raise DataIntegrityError("Update payload must be a JSON object")

    update_id = raw.get("update_id")
    if update_id is not None and not isinstance(update_id, int):
        raise DataIntegrityError("update_id must be an integer", field="update_id")

    for kind in _MESSAGE_KINDS:
        body = raw.get(kind.value)
        if body is None:
            continue
        try:
            message = TelegramMessagePayload.model_validate(body)
        except PydanticValidationError as exc:
            first = exc.errors()[0] if exc.errors() else {}
            location = ".".join(str(part) for part in first.get("loc", ()))
            raise DataIntegrityError(
                f"Invalid {kind.value} payload: {first.get('msg', 'malformed')}",
                field=f"{kind.value}.{location}" if location else kind.value,
            ) from exc
        return InboundUpdate(update_id=update_id, kind=kind, message=message)

    chat_member = raw.get(UpdateKind.CHAT_MEMBER.value)
    if isinstance(chat_member, dict):
        return InboundUpdate(
            update_id=update_id, kind=UpdateKind.CHAT_MEMBER, chat_member=chat_member
        )

    raise DataIntegrityError("Update carries no message body")


__all__ = [
    "DocumentMedia",
    "InboundUpdate",
    "MediaAttachment",
    "PhotoMedia",
    "TelegramMessagePayload",
    "UpdateKind",
    "VideoMedia",
    "extract_media",
    "media_type_of",
    "parse_update",
]
