"""Manual caption parsing.

Extracts product fields from a free-text caption with layered regex
heuristics. Parsing is pure: the same caption (and reference date) always
produces the same result, and no input makes it raise.

Caption anatomy::

    Blue Widget #ABC012323 x5 (new stock)
    ^ name      ^ code       ^ qty ^ notes
                 ^^^ vendor
                    ^^^^^^ purchase date (MMDDYY)
"""

import re
from collections.abc import Callable
from datetime import date
from typing import Any, Final

from media_catalog.config.logging_config import get_logger
from media_catalog.domain.models import AnalyzedContent, ParsingMetadata, ParsingMethod
from media_catalog.domain.processing_constants import (
    MANUAL_CONFIDENCE,
    MAX_QUANTITY_EXCLUSIVE,
    MAX_VENDOR_LETTERS,
    OPTIONAL_FIELDS,
    REQUIRED_FIELDS,
)
from media_catalog.services.date_code_resolver import resolve_date_code, today_in

logger = get_logger(__name__)

PRODUCT_CODE_PATTERN: Final[re.Pattern[str]] = re.compile(r"#([A-Za-z0-9-]+)")
"""First '#' followed by alphanumerics/hyphens."""

VENDOR_PATTERN: Final[re.Pattern[str]] = re.compile(r"^[A-Za-z]+")
DIGIT_RUN_PATTERN: Final[re.Pattern[str]] = re.compile(r"^[0-9]+")

QUANTITY_PATTERNS: Final[tuple[re.Pattern[str], ...]] = (
    re.compile(r"(?<![A-Za-z0-9])[x×]\s*(\d+)(?!\d)", flags=re.IGNORECASE),
    re.compile(r"\b(?:qty|quantity)\s*:?\s*(\d+)(?!\d)", flags=re.IGNORECASE),
    re.compile(r"(?<!\d)(\d+)\s*(?:pcs|pieces|units)\b", flags=re.IGNORECASE),
)
"""Quantity patterns in priority order: x5, qty: 5, 5 pcs."""

PARENTHESES_PATTERN: Final[re.Pattern[str]] = re.compile(r"\(([^)]*)\)")

EDGE_PUNCTUATION: Final[str] = " \t\r\n-,:;|"

ALL_FIELDS: Final[tuple[str, ...]] = REQUIRED_FIELDS + OPTIONAL_FIELDS


def _collapse(text: str) -> str:
    return " ".join(text.split()).strip(EDGE_PUNCTUATION)


def extract_product_name(text: str) -> str:
    """Text before the first '#', or the whole caption when there is none."""
    head, separator, _ = text.partition("#")
    name = _collapse(head) if separator else ""
    return name or _collapse(text) or text.strip()


def extract_vendor_uid(product_code: str) -> str | None:
    match = VENDOR_PATTERN.match(product_code)
    if not match:
        return None
    return match.group(0)[:MAX_VENDOR_LETTERS].upper()


def extract_date_digits(product_code: str) -> str | None:
    """Digit run immediately after the vendor letters."""
    letters = VENDOR_PATTERN.match(product_code)
    if not letters:
        return None
    rest = product_code[min(len(letters.group(0)), MAX_VENDOR_LETTERS) :]
    digits = DIGIT_RUN_PATTERN.match(rest)
    return digits.group(0) if digits else None


def extract_quantity(text: str) -> tuple[int | None, str | None]:
    """Return the first in-range quantity and the token it came from."""
    for pattern in QUANTITY_PATTERNS:
        match = pattern.search(text)
        if not match:
            continue
        value = int(match.group(1))
        if 0 < value < MAX_QUANTITY_EXCLUSIVE:
            return value, match.group(0)
    return None, None


def extract_notes(
    text: str, code_match: re.Match[str] | None, quantity_token: str | None
) -> str | None:
    parenthesized = PARENTHESES_PATTERN.search(text)
    if parenthesized:
        return _collapse(parenthesized.group(1)) or None

    if code_match is None:
        return None
    trailing = text[code_match.end() :]
    if quantity_token:
        trailing = trailing.replace(quantity_token, " ", 1)
    return _collapse(trailing) or None


class CaptionParser:
    """Regex-first caption parser.

    Args:
        today_provider: Returns the reference date for purchase-date
            validation (defaults to the current UTC date)
    """

    def __init__(self, today_provider: Callable[[], date] | None = None) -> None:
        self._today_provider = today_provider or today_in

    def parse(self, caption: str | None) -> AnalyzedContent:
        if caption is None or not caption.strip():
            return AnalyzedContent.empty()

        text = caption.strip()
        fields: dict[str, Any] = {}
        error: str | None = None
        try:
            self._extract_into(fields, text)
        except Exception as exc:  # noqa: BLE001 - parser must never raise
            error = f"{type(exc).__name__}: {exc}"
            logger.warning("caption_parse_failed", error=error)

        if not fields.get("product_name"):
            fields["product_name"] = _collapse(text) or text

        missing = [name for name in ALL_FIELDS if fields.get(name) in (None, "")]
        return AnalyzedContent(
            **fields,
            parsing_metadata=ParsingMetadata(
                method=ParsingMethod.MANUAL,
                confidence=MANUAL_CONFIDENCE,
                missing_fields=missing,
                partial_success=bool(missing),
                error=error,
            ),
        )

    def _extract_into(self, fields: dict[str, Any], text: str) -> None:
        # Each step writes as soon as it succeeds so a later failure keeps
        # the fields already found.
        fields["product_name"] = extract_product_name(text)

        code_match = PRODUCT_CODE_PATTERN.search(text)
        remainder = text
        if code_match:
            product_code = code_match.group(1)
            fields["product_code"] = product_code
            fields["vendor_uid"] = extract_vendor_uid(product_code)
            digits = extract_date_digits(product_code)
            if digits is not None:
                fields["purchase_date"] = resolve_date_code(
                    digits, today=self._today_provider()
                )
            remainder = text[: code_match.start()] + " " + text[code_match.end() :]

        quantity, token = extract_quantity(remainder)
        fields["quantity"] = quantity
        fields["notes"] = extract_notes(text, code_match, token)


def parse_caption(caption: str | None, *, today: date | None = None) -> AnalyzedContent:
    """Parse ``caption`` with a fixed reference date."""
    provider = (lambda: today) if today is not None else None
    return CaptionParser(today_provider=provider).parse(caption)


def needs_ai_fallback(content: AnalyzedContent) -> bool:
    """True when manual parsing left a required field empty."""
    missing = set(content.parsing_metadata.missing_fields)
    return bool(missing.intersection(REQUIRED_FIELDS))
