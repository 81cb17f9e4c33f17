from media_catalog.config.logging_config import (
    APP_NAME,
    add_app_context,
    bind_context,
    get_bound_context,
    redact_bot_tokens,
    unbind_context,
)


def test_bot_token_is_redacted_from_urls() -> None:
    event = {
        "event": "telegram_download_failed",
        "url": "https://api.telegram.org/file/bot123456:AAE-x_y9/photos/file_1.jpg",
        "status": 404,
    }

    redacted = redact_bot_tokens(None, "warning", event)

    assert redacted["url"] == "https://api.telegram.org/file/bot<redacted>/photos/file_1.jpg"
    assert redacted["status"] == 404


def test_values_without_token_are_untouched() -> None:
    event = {"event": "caption_analyzed", "caption": "robot arm #ABC12345"}

    assert redact_bot_tokens(None, "info", dict(event)) == event


def test_app_name_is_stamped() -> None:
    assert add_app_context(None, "info", {"event": "x"})["app"] == APP_NAME


def test_context_binding_round_trip() -> None:
    bind_context(correlation_id="corr-1")
    try:
        assert get_bound_context()["correlation_id"] == "corr-1"
    finally:
        unbind_context("correlation_id")

    assert "correlation_id" not in get_bound_context()
