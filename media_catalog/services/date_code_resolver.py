"""Purchase date resolution from compact product-code digits.

Handles:
- 6-digit MMDDYY codes (``012323`` -> 2023-01-23)
- 5-digit MDDYY codes, left-padded with a leading zero
- Rejection of malformed, impossible, and future dates
- Normalization of free-form dates returned by the AI fallback
"""

import re
from datetime import date, datetime
from typing import Final

import pytz
from dateutil import parser as dateutil_parser

DATE_CODE_PATTERN: Final[re.Pattern[str]] = re.compile(r"[0-9]{5,6}")
"""Digit runs accepted as date codes."""

CENTURY_BASE: Final[int] = 2000
"""Two-digit years are interpreted as 2000 + YY."""

ISO_DATE_FORMAT: Final[str] = "%Y-%m-%d"


def today_in(tz: pytz.BaseTzInfo | None = None) -> date:
    """Return the current calendar date in ``tz`` (UTC by default)."""
    return datetime.now(tz=tz or pytz.UTC).date()


def resolve_date_code(digits: str, *, today: date | None = None) -> str | None:
    """Decode an MMDDYY (or MDDYY) digit string into ``YYYY-MM-DD``.

    Args:
        digits: Digit run taken from the product code
        today: Reference date for the future-date check (defaults to UTC today)

    Returns:
        ISO date string, or None when the input is not 5-6 digits, does not
        form a real calendar date, or lies strictly after ``today``

    Example:
        >>> resolve_date_code("12323", today=date(2024, 1, 1))
        '2023-01-23'
    """
    if not isinstance(digits, str) or not DATE_CODE_PATTERN.fullmatch(digits):
        return None

    padded = digits.zfill(6)
    month, day, year = int(padded[0:2]), int(padded[2:4]), int(padded[4:6])

    try:
        resolved = date(CENTURY_BASE + year, month, day)
    except ValueError:
        return None

    if resolved > (today or today_in()):
        return None

    return resolved.strftime(ISO_DATE_FORMAT)


def normalize_purchase_date(value: object, *, today: date | None = None) -> str | None:
    """Coerce a model-supplied date into ``YYYY-MM-DD`` or None.

    Accepts ISO dates, common written forms ("Jan 23, 2023") and bare date
    codes. Future dates are rejected with the same rule as date codes.
    """
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None

    if DATE_CODE_PATTERN.fullmatch(text):
        return resolve_date_code(text, today=today)

    try:
        parsed = dateutil_parser.parse(text, default=datetime(CENTURY_BASE, 1, 1))
    except (ValueError, OverflowError):
        return None

    resolved = parsed.date()
    if resolved > (today or today_in()):
        return None
    return resolved.strftime(ISO_DATE_FORMAT)


class DateCodeResolver:
    """Date-code resolver bound to a timezone.

    Args:
        tz: Timezone whose calendar day counts as "today"
    """

    def __init__(self, tz: pytz.BaseTzInfo | None = None) -> None:
        self._tz = tz or pytz.UTC

    def today(self) -> date:
        return today_in(self._tz)

    def resolve(self, digits: str) -> str | None:
        return resolve_date_code(digits, today=self.today())
