from __future__ import annotations

from datetime import date, datetime

import pytest

from crm_app.importer.pipeline.formats import DateFormat, NumberFormat
from crm_app.importer.pipeline.validation import ColumnFormat, ValidationCode, validate_date


@pytest.mark.parametrize(
    ("fmt", "value"),
    [
        (DateFormat.ISO, "2024-05-15"),
        (DateFormat.ISO, "2024/05/15"),
        (DateFormat.EUROPEAN, "15/05/2024"),
        (DateFormat.EUROPEAN, "15.05.2024"),
        (DateFormat.EUROPEAN, "15 May 2024"),
        (DateFormat.AMERICAN, "05/15/2024"),
        (DateFormat.AMERICAN, "May 15th, 2024"),
    ],
)
def test_date_families_parse_their_own_layouts(fmt, value):
    assert fmt.parse(value) == datetime(2024, 5, 15)


def test_european_rejects_american_ordering():
    assert DateFormat.EUROPEAN.parse("05/15/2024") is None

    error = validate_date("05/15/2024", ColumnFormat(date_format=DateFormat.EUROPEAN))
    assert error is not None
    assert error.code is ValidationCode.INVALID_DATE_FORMAT
    assert error.message == "Invalid date format. Expected: European (DD/MM/YYYY)"


def test_values_with_time_component_parse_as_timestamps():
    assert DateFormat.ISO.parse("2024-05-15 14:30") == datetime(2024, 5, 15, 14, 30)
    assert DateFormat.ISO.parse("2024-05-15T14:30:05") == datetime(2024, 5, 15, 14, 30, 5)
    assert DateFormat.EUROPEAN.parse("14:30 15/05/2024") == datetime(2024, 5, 15, 14, 30)
    assert DateFormat.AMERICAN.parse("05/15/2024 09:05") == datetime(2024, 5, 15, 9, 5)


def test_two_digit_years_are_a_fallback_only():
    assert DateFormat.EUROPEAN.parse("15/05/24") == datetime(2024, 5, 15)
    assert DateFormat.EUROPEAN.parse("15/05/24", allow_two_digit_years=False) is None
    assert DateFormat.ISO.parse("24-05-15") is None

    strict = ColumnFormat(date_format=DateFormat.AMERICAN, allow_two_digit_years=False)
    assert validate_date("05/15/24", strict) is not None


def test_blank_dates_parse_to_none():
    assert DateFormat.ISO.parse(None) is None
    assert DateFormat.ISO.parse("   ") is None


def test_date_format_labels():
    assert DateFormat.ISO.description == "ISO standard (YYYY-MM-DD)"
    assert DateFormat.AMERICAN.format(date(2024, 5, 15)) == "05/15/2024"
    assert DateFormat.EUROPEAN.format(date(2024, 5, 15)) == "15/05/2024"
    assert DateFormat.ISO.format(datetime(2024, 5, 15, 9, 5)) == "2024-05-15 09:05"


def test_number_formats():
    assert NumberFormat.POINT.parse("1,234.56") == pytest.approx(1234.56)
    assert NumberFormat.COMMA.parse("1.234,56") == pytest.approx(1234.56)
    assert NumberFormat.COMMA.parse("12,5") == pytest.approx(12.5)
    assert NumberFormat.POINT.parse("-42") == -42.0
    assert NumberFormat.POINT.parse("12abc") is None
    assert NumberFormat.POINT.parse("") is None


def test_number_format_rendering():
    assert NumberFormat.POINT.format(1234.5) == "1,234.50"
    assert NumberFormat.COMMA.format(1234.5) == "1.234,50"
    assert NumberFormat.POINT.format(2500) == "2,500"
    assert NumberFormat.COMMA.format(2500) == "2.500"
