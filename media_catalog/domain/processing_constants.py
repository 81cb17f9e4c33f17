"""Constants and limits for caption parsing and message processing."""

from typing import Final

MANUAL_CONFIDENCE: Final[float] = 1.0
"""Confidence stamped on results produced by the regex parser."""

AI_CONFIDENCE: Final[float] = 0.8
"""Confidence stamped on results that include AI-filled fields.

Business rule: always below MANUAL_CONFIDENCE so a manual value is never
replaced by an AI value during merge.
"""

MAX_QUANTITY_EXCLUSIVE: Final[int] = 10_000
"""Quantities must satisfy 0 < quantity < MAX_QUANTITY_EXCLUSIVE."""

MAX_VENDOR_LETTERS: Final[int] = 4
"""Vendor UID is the first 1-4 letters of the product code."""

DEFAULT_PRODUCT_NAME: Final[str] = "Untitled Product"
"""Fallback product name when neither manual nor AI parsing found one."""

REQUIRED_FIELDS: Final[tuple[str, ...]] = (
    "product_name",
    "product_code",
    "vendor_uid",
    "purchase_date",
)
"""Fields whose absence after manual parsing triggers the AI fallback."""

OPTIONAL_FIELDS: Final[tuple[str, ...]] = ("quantity", "notes")

DEFAULT_STUCK_THRESHOLD_MINUTES: Final[int] = 15
"""Age of processing_started_at after which a message counts as stuck."""

DEFAULT_MAX_RETRY_COUNT: Final[int] = 3
"""Failures after which a message is no longer retried automatically."""

DEFAULT_PENDING_BATCH_SIZE: Final[int] = 50
