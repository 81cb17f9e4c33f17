"""MIME type helpers for stored media.

Storage objects are named ``<file_unique_id>.<ext>`` and served ``inline``
when a browser can render them, ``attachment`` otherwise.
"""

from typing import Final

from media_catalog.domain.models import ContentDisposition, MediaType

DEFAULT_MIME_BY_MEDIA_TYPE: Final[dict[MediaType, str]] = {
    MediaType.PHOTO: "image/jpeg",
    MediaType.VIDEO: "video/mp4",
    MediaType.DOCUMENT: "application/octet-stream",
}

EXTENSION_BY_MIME: Final[dict[str, str]] = {
    "image/jpeg": "jpeg",
    "image/jpg": "jpeg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
    "image/heic": "heic",
    "video/mp4": "mp4",
    "video/quicktime": "mov",
    "video/webm": "webm",
    "video/x-matroska": "mkv",
    "audio/mpeg": "mp3",
    "audio/ogg": "ogg",
    "application/pdf": "pdf",
    "application/zip": "zip",
    "application/x-tgsticker": "tgs",
    "text/plain": "txt",
    "application/octet-stream": "bin",
}

MIME_BY_EXTENSION: Final[dict[str, str]] = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "webp": "image/webp",
    "mp4": "video/mp4",
    "mov": "video/quicktime",
    "webm": "video/webm",
    "pdf": "application/pdf",
    "txt": "text/plain",
}

VIEWABLE_PREFIXES: Final[tuple[str, ...]] = ("image/", "video/", "audio/", "text/")
VIEWABLE_TYPES: Final[frozenset[str]] = frozenset({"application/pdf"})


def default_mime_type(media_type: MediaType | None) -> str:
    if media_type is None:
        return DEFAULT_MIME_BY_MEDIA_TYPE[MediaType.DOCUMENT]
    return DEFAULT_MIME_BY_MEDIA_TYPE[media_type]


def extension_for(mime_type: str | None) -> str:
    """File extension for ``mime_type``: known mapping, else subtype, else bin."""
    if not mime_type:
        return "bin"
    normalized = mime_type.split(";", 1)[0].strip().lower()
    if normalized in EXTENSION_BY_MIME:
        return EXTENSION_BY_MIME[normalized]
    _, _, subtype = normalized.partition("/")
    subtype = subtype.split("+", 1)[0]
    if subtype and subtype.isalnum():
        return subtype
    return "bin"


def mime_from_file_path(file_path: str) -> str | None:
    """Guess a MIME type from the extension of a Bot API file path."""
    _, dot, ext = file_path.rpartition(".")
    if not dot:
        return None
    return MIME_BY_EXTENSION.get(ext.lower())


def storage_path_for(file_unique_id: str, mime_type: str | None) -> str:
    return f"{file_unique_id}.{extension_for(mime_type)}"


def is_viewable(mime_type: str | None) -> bool:
    if not mime_type:
        return False
    normalized = mime_type.split(";", 1)[0].strip().lower()
    return normalized.startswith(VIEWABLE_PREFIXES) or normalized in VIEWABLE_TYPES


def content_disposition_for(mime_type: str | None) -> ContentDisposition:
    if is_viewable(mime_type):
        return ContentDisposition.INLINE
    return ContentDisposition.ATTACHMENT
