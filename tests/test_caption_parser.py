"""Tests for manual caption parsing."""

from datetime import date

import pytest

from media_catalog.domain.models import ParsingMethod
from media_catalog.services.caption_parser import (
    CaptionParser,
    needs_ai_fallback,
    parse_caption,
)

TODAY = date(2024, 6, 1)


def test_full_caption_extracts_every_field() -> None:
    result = parse_caption("Blue Widget #ABC012323 x5 (new stock)", today=TODAY)

    assert result.product_name == "Blue Widget"
    assert result.product_code == "ABC012323"
    assert result.vendor_uid == "ABC"
    assert result.purchase_date == "2023-01-23"
    assert result.quantity == 5
    assert result.notes == "new stock"
    assert result.parsing_metadata.method is ParsingMethod.MANUAL
    assert result.parsing_metadata.confidence == 1.0
    assert result.parsing_metadata.missing_fields == []
    assert result.parsing_metadata.partial_success is False
    assert not needs_ai_fallback(result)


def test_future_five_digit_date_is_rejected() -> None:
    # 12345 pads to 012345 -> 2045-01-23, which lies in the future
    result = parse_caption("Blue Widget #ABC12345 x5 (new stock)", today=TODAY)

    assert result.product_name == "Blue Widget"
    assert result.product_code == "ABC12345"
    assert result.vendor_uid == "ABC"
    assert result.purchase_date is None
    assert "purchase_date" in result.parsing_metadata.missing_fields
    assert result.quantity == 5
    assert result.notes == "new stock"
    assert needs_ai_fallback(result)


def test_five_digit_date_in_the_future_is_missing() -> None:
    # 22031 pads to 022031 -> 2031-02-20
    result = parse_caption("Red Shirt #XY22031", today=TODAY)

    assert result.product_name == "Red Shirt"
    assert result.product_code == "XY22031"
    assert result.vendor_uid == "XY"
    assert result.purchase_date is None
    assert "purchase_date" in result.parsing_metadata.missing_fields


def test_five_digit_date_in_the_past_resolves() -> None:
    result = parse_caption("Red Shirt #XY22031", today=date(2032, 1, 1))

    assert result.purchase_date == "2031-02-20"


@pytest.mark.parametrize("caption", ["", "   ", None])
def test_empty_caption(caption: str | None) -> None:
    result = parse_caption(caption, today=TODAY)

    assert result.product_name == ""
    assert result.parsing_metadata.missing_fields == ["caption"]


def test_code_without_vendor_letters_keeps_code_verbatim() -> None:
    result = parse_caption("Gizmo #12345", today=TODAY)

    assert result.product_code == "12345"
    assert result.vendor_uid is None
    assert result.purchase_date is None
    missing = result.parsing_metadata.missing_fields
    assert "vendor_uid" in missing
    assert "purchase_date" in missing


def test_vendor_is_capped_at_four_letters_and_uppercased() -> None:
    result = parse_caption("Lamp #abcdef010123", today=TODAY)

    assert result.vendor_uid == "ABCD"
    assert result.product_code == "abcdef010123"
    # digits must follow the vendor letters directly
    assert result.purchase_date is None


def test_caption_without_code_uses_whole_text_as_name() -> None:
    result = parse_caption("Just a nice photo", today=TODAY)

    assert result.product_name == "Just a nice photo"
    assert result.product_code is None
    assert needs_ai_fallback(result)


@pytest.mark.parametrize(
    ("caption", "expected"),
    [
        ("Mug #AB010123 qty: 12", 12),
        ("Mug #AB010123 7 pcs", 7),
        ("Mug #AB010123 ×3", 3),
        ("Mug #AB010123 x0", None),
        ("Mug #AB010123 x10000", None),
    ],
)
def test_quantity_patterns(caption: str, expected: int | None) -> None:
    assert parse_caption(caption, today=TODAY).quantity == expected


def test_trailing_text_becomes_notes_without_parentheses() -> None:
    result = parse_caption("Chair #AB010123 x2 slightly scratched", today=TODAY)

    assert result.quantity == 2
    assert result.notes == "slightly scratched"


def test_parser_is_deterministic() -> None:
    parser = CaptionParser(today_provider=lambda: TODAY)
    caption = "Blue Widget #ABC012323 x5 (new stock)"

    assert parser.parse(caption) == parser.parse(caption)


def test_internal_failure_returns_partial_result(mocker) -> None:
    mocker.patch(
        "media_catalog.services.caption_parser.extract_quantity",
        side_effect=RuntimeError("boom"),
    )

    result = parse_caption("Blue Widget #ABC012323 x5", today=TODAY)

    assert result.product_name == "Blue Widget"
    assert result.product_code == "ABC012323"
    assert result.purchase_date == "2023-01-23"
    assert result.quantity is None
    assert result.parsing_metadata.error == "RuntimeError: boom"
