"""Merge policy for manual and AI caption analysis results.

Field by field, the manual value wins; the AI value only fills fields the
manual pass left blank. A merged result that took anything from the AI is
stamped with the AI confidence so downstream readers can tell.
"""

from datetime import datetime
from typing import Any

from media_catalog.domain.models import AnalyzedContent, ParsingMetadata, ParsingMethod
from media_catalog.domain.processing_constants import (
    AI_CONFIDENCE,
    DEFAULT_PRODUCT_NAME,
    MANUAL_CONFIDENCE,
)
from media_catalog.services.caption_parser import ALL_FIELDS


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def merge_analysis(
    manual: AnalyzedContent,
    ai: AnalyzedContent | None,
    *,
    timestamp: datetime | None = None,
) -> AnalyzedContent:
    """Combine a manual result with an optional AI result.

    Args:
        manual: Output of the regex parser
        ai: Output of the AI fallback, or None when it was skipped. Its
            metadata error (an undecodable reply) is carried over
        timestamp: Stored on the merged metadata

    Returns:
        Merged content whose ``product_name`` is never blank
    """
    merged: dict[str, Any] = {}
    ai_filled: list[str] = []
    for field in ALL_FIELDS:
        manual_value = getattr(manual, field)
        if not _is_blank(manual_value):
            merged[field] = manual_value
            continue
        ai_value = getattr(ai, field) if ai is not None else None
        if not _is_blank(ai_value):
            merged[field] = ai_value
            ai_filled.append(field)
        else:
            merged[field] = None

    if _is_blank(merged["product_name"]):
        merged["product_name"] = DEFAULT_PRODUCT_NAME

    missing = [field for field in ALL_FIELDS if _is_blank(merged[field])]
    used_ai = bool(ai_filled)
    ai_error = ai.parsing_metadata.error if ai is not None else None
    errors = [e for e in (manual.parsing_metadata.error, ai_error) if e]

    return AnalyzedContent(
        **merged,
        parsing_metadata=ParsingMetadata(
            method=ParsingMethod.AI if used_ai else ParsingMethod.MANUAL,
            confidence=AI_CONFIDENCE if used_ai else MANUAL_CONFIDENCE,
            timestamp=timestamp,
            missing_fields=missing,
            partial_success=bool(missing),
            ai_filled_fields=ai_filled,
            error="; ".join(errors) or None,
        ),
    )
