"""Custom exception hierarchy for the media catalog.

Following error taxonomy: retryable, non-retryable, validation, state.
Expected "not found" and "duplicate file" outcomes are modelled as result
types in :mod:`media_catalog.domain.outcomes`, not as exceptions.
"""


class MediaCatalogError(Exception):
    """Base exception for all application errors."""

    pass


class RetryableError(MediaCatalogError):
    """Errors that can be retried (network issues, temporary failures)."""

    pass


class NonRetryableError(MediaCatalogError):
    """Errors that should not be retried (validation, malformed input)."""

    pass


class ExternalServiceError(RetryableError):
    """Failure talking to a third-party service."""

    pass


class LLMAPIError(ExternalServiceError):
    """LLM API communication errors."""

    pass


class TelegramAPIError(ExternalServiceError):
    """Telegram Bot API communication errors."""

    pass


class StorageError(ExternalServiceError):
    """Object storage upload/download errors."""

    pass


class RepositoryError(RetryableError):
    """Database/storage errors."""

    pass


class ValidationError(NonRetryableError):
    """Data validation errors."""

    pass


class DataIntegrityError(NonRetryableError):
    """Inbound payload is malformed or missing required fields."""

    def __init__(self, message: str, *, field: str | None = None) -> None:
        self.field = field
        super().__init__(message)


class InvalidStateTransitionError(NonRetryableError):
    """Processing state change not permitted by the lifecycle table."""

    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Invalid processing state transition: {current} -> {target}")
