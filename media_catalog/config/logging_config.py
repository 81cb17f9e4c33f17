"""structlog setup shared by the API, the workers and the scripts.

JSON output for production, colored console output for development. Bot API
file URLs embed the bot token, so every event passes through a redaction step
before it is rendered.
"""

import logging
import re
import sys
from typing import Any, Final

import structlog
from structlog.types import EventDict, Processor

APP_NAME: Final[str] = "media_catalog"

QUIET_LOGGERS: Final[tuple[str, ...]] = ("httpx", "httpcore", "openai", "uvicorn.access")

BOT_TOKEN_PATTERN: Final[re.Pattern[str]] = re.compile(r"bot\d+:[A-Za-z0-9_-]+")
REDACTED_TOKEN: Final[str] = "bot<redacted>"


def add_app_context(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Stamp the application name on every log entry."""
    event_dict["app"] = APP_NAME
    return event_dict


def redact_bot_tokens(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Mask Telegram bot tokens in string values."""
    for key, value in event_dict.items():
        if isinstance(value, str) and "bot" in value:
            event_dict[key] = BOT_TOKEN_PATTERN.sub(REDACTED_TOKEN, value)
    return event_dict


def setup_logging(
    log_level: str = "INFO",
    json_logs: bool = False,
) -> None:
    """Configure structlog and route stdlib logging through it.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_logs: Render JSON lines instead of the console format

    Example:
        >>> setup_logging(log_level="INFO", json_logs=True)  # Production
        >>> setup_logging(log_level="DEBUG")  # Development
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=numeric_level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    processors: list[Processor] = [
        structlog.stdlib.filter_by_level,
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        add_app_context,
    ]
    if json_logs:
        processors += [
            structlog.processors.format_exc_info,
            redact_bot_tokens,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors += [redact_bot_tokens, structlog.dev.ConsoleRenderer(colors=True)]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger bound to ``name``.

    Example:
        >>> logger = get_logger(__name__)
        >>> logger.info("media_group_synced", group_id="123", updated_count=2)
    """
    return structlog.get_logger(name)  # type: ignore[no-any-return]


def bind_context(**kwargs: Any) -> None:
    """Bind context variables for all subsequent log entries in this context."""
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    structlog.contextvars.unbind_contextvars(*keys)


def get_bound_context() -> dict[str, Any]:
    """Return a copy of the currently bound context variables."""
    return dict(structlog.contextvars.get_contextvars())
