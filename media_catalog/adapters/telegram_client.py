"""Telegram Bot API client adapter for media downloads."""

import time
from collections.abc import Callable
from typing import Any, Final

import httpx

from media_catalog.config.logging_config import get_logger
from media_catalog.domain.exceptions import TelegramAPIError

logger = get_logger(__name__)

DEFAULT_TELEGRAM_BASE_URL: Final[str] = "https://api.telegram.org"
DEFAULT_TELEGRAM_TIMEOUT_SECONDS: Final[float] = 30.0
DEFAULT_TELEGRAM_MAX_RETRIES: Final[int] = 3
DEFAULT_RETRY_AFTER_SECONDS: Final[int] = 5


class TelegramBotClient:
    """Bot API client resolving ``file_id`` values and downloading files."""

    def __init__(
        self,
        token: str,
        *,
        base_url: str = DEFAULT_TELEGRAM_BASE_URL,
        timeout: float = DEFAULT_TELEGRAM_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_TELEGRAM_MAX_RETRIES,
        client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize Telegram client.

        Args:
            token: Bot token
            base_url: Bot API base URL
            timeout: Per-request timeout in seconds
            max_retries: Attempts for rate-limited requests
            client: Preconfigured httpx client (tests inject a mock transport)
            sleep: Sleep function used between rate-limit retries
        """
        if not token:
            raise ValueError("Telegram bot token must not be empty")
        self._token = token
        self._base_url = base_url.rstrip("/")
        self._client = client or httpx.Client(timeout=timeout)
        self._max_retries = max(max_retries, 1)
        self._sleep = sleep

    def _method_url(self, method: str) -> str:
        return f"{self._base_url}/bot{self._token}/{method}"

    def _file_url(self, file_path: str) -> str:
        return f"{self._base_url}/file/bot{self._token}/{file_path.lstrip('/')}"

    def _call(self, method: str, params: dict[str, Any]) -> Any:
        attempt = 0
        while True:
            attempt += 1
            try:
                response = self._client.get(self._method_url(method), params=params)
            except httpx.HTTPError as e:
                raise TelegramAPIError(f"Bot API {method} request failed: {e}") from e

            try:
                body = response.json()
            except ValueError as e:
                raise TelegramAPIError(
                    f"Bot API {method} returned non-JSON (HTTP {response.status_code})"
                ) from e

            if body.get("ok"):
                return body.get("result")

            if response.status_code == 429 and attempt < self._max_retries:
                retry_after = int(
                    (body.get("parameters") or {}).get(
                        "retry_after", DEFAULT_RETRY_AFTER_SECONDS
                    )
                )
                logger.warning(
                    "telegram_rate_limited",
                    method=method,
                    retry_after_seconds=retry_after,
                    attempt=attempt,
                    max_retries=self._max_retries,
                )
                self._sleep(retry_after)
                continue

            raise TelegramAPIError(
                f"Bot API {method} failed: {body.get('description', 'unknown error')}"
            )

    def get_file_path(self, file_id: str) -> str:
        """Resolve ``file_id`` to the path served by the file endpoint.

        Raises:
            TelegramAPIError: On API errors or a reply without ``file_path``
        """
        result = self._call("getFile", {"file_id": file_id})
        file_path = (result or {}).get("file_path")
        if not file_path:
            raise TelegramAPIError(f"getFile returned no file_path for {file_id}")
        return str(file_path)

    def download_file(self, file_path: str) -> bytes:
        """Download the bytes at ``file_path``.

        Raises:
            TelegramAPIError: On transport errors or non-2xx responses
        """
        try:
            response = self._client.get(self._file_url(file_path))
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise TelegramAPIError(
                f"File download failed with HTTP {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise TelegramAPIError(f"File download failed: {e}") from e

        logger.debug(
            "telegram_file_downloaded", file_path=file_path, size=len(response.content)
        )
        return response.content

    def close(self) -> None:
        self._client.close()
