from __future__ import annotations

from collections.abc import Callable

import httpx
import pytest

from media_catalog.adapters.telegram_client import TelegramBotClient
from media_catalog.domain.exceptions import TelegramAPIError

TOKEN = "123:abc"


def _client(
    handler: Callable[[httpx.Request], httpx.Response],
    sleeps: list[float] | None = None,
    **kwargs: object,
) -> TelegramBotClient:
    recorded = sleeps if sleeps is not None else []
    return TelegramBotClient(
        TOKEN,
        client=httpx.Client(transport=httpx.MockTransport(handler)),
        sleep=recorded.append,
        **kwargs,
    )


def test_get_file_path_resolves_file_id() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200, json={"ok": True, "result": {"file_path": "photos/file_1.jpg"}}
        )

    path = _client(handler).get_file_path("AgAD-1")

    assert path == "photos/file_1.jpg"
    assert seen[0].url.path == f"/bot{TOKEN}/getFile"
    assert seen[0].url.params["file_id"] == "AgAD-1"


def test_get_file_path_without_path_raises() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"ok": True, "result": {}})

    with pytest.raises(TelegramAPIError, match="no file_path"):
        _client(handler).get_file_path("AgAD-1")


def test_api_error_carries_description() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            400, json={"ok": False, "description": "Bad Request: invalid file_id"}
        )

    with pytest.raises(TelegramAPIError, match="invalid file_id"):
        _client(handler).get_file_path("bogus")


def test_rate_limit_retries_after_advertised_delay() -> None:
    sleeps: list[float] = []
    responses = iter(
        [
            httpx.Response(
                429,
                json={"ok": False, "description": "Too Many Requests", "parameters": {"retry_after": 7}},
            ),
            httpx.Response(200, json={"ok": True, "result": {"file_path": "docs/a.pdf"}}),
        ]
    )

    def handler(request: httpx.Request) -> httpx.Response:
        return next(responses)

    path = _client(handler, sleeps).get_file_path("AgAD-2")

    assert path == "docs/a.pdf"
    assert sleeps == [7]


def test_rate_limit_gives_up_after_max_retries() -> None:
    sleeps: list[float] = []

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, json={"ok": False, "description": "Too Many Requests"})

    with pytest.raises(TelegramAPIError, match="Too Many Requests"):
        _client(handler, sleeps, max_retries=2).get_file_path("AgAD-3")

    assert sleeps == [5]


def test_non_json_reply_raises() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502, text="<html>bad gateway</html>")

    with pytest.raises(TelegramAPIError, match="non-JSON"):
        _client(handler).get_file_path("AgAD-4")


def test_download_file_returns_bytes() -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.path)
        return httpx.Response(200, content=b"\xff\xd8jpeg")

    data = _client(handler).download_file("photos/file_1.jpg")

    assert data == b"\xff\xd8jpeg"
    assert seen == [f"/file/bot{TOKEN}/photos/file_1.jpg"]


def test_download_file_http_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404)

    with pytest.raises(TelegramAPIError, match="HTTP 404"):
        _client(handler).download_file("photos/missing.jpg")


def test_transport_error_is_wrapped() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(TelegramAPIError, match="request failed"):
        _client(handler).get_file_path("AgAD-5")


def test_empty_token_rejected() -> None:
    with pytest.raises(ValueError):
        TelegramBotClient("")
