"""Object storage adapters for media bytes.

``LocalMediaStorage`` writes under a directory (development and tests);
``SupabaseMediaStorage`` uploads to a Supabase storage bucket. Supabase
serves an object as an attachment when its URL carries ``download``, so the
disposition is expressed through the public URL rather than object metadata.
"""

from pathlib import Path
from typing import Any

from supabase import Client, create_client

from media_catalog.config.logging_config import get_logger
from media_catalog.domain.exceptions import StorageError
from media_catalog.domain.models import ContentDisposition
from media_catalog.domain.protocols import StoredObject

logger = get_logger(__name__)


def _safe_relative(path: str) -> Path:
    relative = Path(path)
    if relative.is_absolute() or ".." in relative.parts:
        raise StorageError(f"Invalid storage path: {path}")
    return relative


class LocalMediaStorage:
    """Filesystem-backed media storage.

    Args:
        root: Directory holding stored objects
        public_base_url: URL prefix under which ``root`` is served, if any
    """

    def __init__(self, root: str | Path, public_base_url: str | None = None) -> None:
        self._root = Path(root)
        self._public_base_url = public_base_url.rstrip("/") if public_base_url else None
        self._root.mkdir(parents=True, exist_ok=True)

    def _public_url(self, path: str, disposition: ContentDisposition) -> str | None:
        if self._public_base_url is None:
            return None
        url = f"{self._public_base_url}/{path}"
        if disposition is ContentDisposition.ATTACHMENT:
            url += "?download="
        return url

    def upload(
        self,
        path: str,
        data: bytes,
        *,
        content_type: str,
        content_disposition: ContentDisposition,
    ) -> StoredObject:
        target = self._root / _safe_relative(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as e:
            raise StorageError(f"Failed to write {path}: {e}") from e

        logger.debug(
            "media_stored",
            backend="local",
            path=path,
            size=len(data),
            content_type=content_type,
            content_disposition=content_disposition.value,
        )
        return StoredObject(
            path=path,
            public_url=self._public_url(path, content_disposition),
            content_disposition=content_disposition,
        )

    def download(self, path: str) -> bytes:
        target = self._root / _safe_relative(path)
        try:
            return target.read_bytes()
        except OSError as e:
            raise StorageError(f"Failed to read {path}: {e}") from e


class SupabaseMediaStorage:
    """Supabase storage bucket adapter.

    Args:
        client: Supabase client created with a service key
        bucket: Bucket name
    """

    def __init__(self, client: Client, bucket: str) -> None:
        self._client = client
        self._bucket = bucket

    @classmethod
    def from_credentials(cls, url: str, key: str, bucket: str) -> "SupabaseMediaStorage":
        return cls(create_client(url, key), bucket)

    def _public_url(self, path: str, disposition: ContentDisposition) -> str:
        options: dict[str, Any] = {}
        if disposition is ContentDisposition.ATTACHMENT:
            options["download"] = True
        bucket = self._client.storage.from_(self._bucket)
        url = bucket.get_public_url(path, options) if options else bucket.get_public_url(path)
        return str(url)

    def upload(
        self,
        path: str,
        data: bytes,
        *,
        content_type: str,
        content_disposition: ContentDisposition,
    ) -> StoredObject:
        try:
            self._client.storage.from_(self._bucket).upload(
                path,
                data,
                file_options={
                    "content-type": content_type,
                    "cache-control": "3600",
                    "upsert": "true",
                },
            )
            public_url = self._public_url(path, content_disposition)
        except Exception as e:  # noqa: BLE001 - client raises several error types
            logger.error(
                "media_upload_failed",
                backend="supabase",
                bucket=self._bucket,
                path=path,
                error=str(e),
            )
            raise StorageError(f"Failed to upload {path}: {e}") from e

        logger.debug(
            "media_stored",
            backend="supabase",
            bucket=self._bucket,
            path=path,
            size=len(data),
            content_type=content_type,
            content_disposition=content_disposition.value,
        )
        return StoredObject(
            path=path,
            public_url=public_url,
            content_disposition=content_disposition,
        )

    def download(self, path: str) -> bytes:
        try:
            return bytes(self._client.storage.from_(self._bucket).download(path))
        except Exception as e:  # noqa: BLE001 - client raises several error types
            raise StorageError(f"Failed to download {path}: {e}") from e
