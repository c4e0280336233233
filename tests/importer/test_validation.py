from __future__ import annotations

from datetime import date, datetime

import pytest

from crm_app.importer.contracts import FieldType, ImportField, ItemType, get_entity_schema
from crm_app.importer.pipeline.formats import DateFormat, NumberFormat
from crm_app.importer.pipeline.validation import (
    ColumnFormat,
    ValidationCode,
    ValidationError,
    cast_value,
    validate_value,
)


def _field(key="value", **kwargs) -> ImportField:
    return ImportField(key=key, label=key.title(), **kwargs)


def test_multi_choice_reports_each_bad_token():
    spec = _field("colors", type=FieldType.MULTI_CHOICE, options=("red", "blue", "green"))

    error = validate_value(spec, "red, bluuu, green")

    assert error is not None
    assert error.code is ValidationCode.INVALID_ITEMS
    assert error.message is None
    assert error.item_errors == {"bluuu": "Not a valid option"}
    assert validate_value(spec, "red,green") is None


def test_choice_message_lists_first_five_options():
    spec = _field("letter", type=FieldType.CHOICE, options=("a", "b", "c", "d", "e", "f"))

    error = validate_value(spec, "z")

    assert error.code is ValidationCode.INVALID_CHOICE
    assert error.message == "Invalid choice. Must be one of: a, b, c, d, e..."


def test_choice_message_without_truncation_and_exact_matching():
    spec = _field("size", type=FieldType.CHOICE, options=("Small", "Large"))

    assert validate_value(spec, "Small") is None
    error = validate_value(spec, "small")
    assert error.message == "Invalid choice. Must be one of: Small, Large"


def test_number_validation_uses_column_number_format():
    spec = _field("amount", type=FieldType.NUMBER, rules=("min:0",))
    comma = ColumnFormat(number_format=NumberFormat.COMMA)

    assert validate_value(spec, "1.234,56", comma) is None

    bad = validate_value(spec, "12abc", comma)
    assert bad.code is ValidationCode.INVALID_NUMBER_FORMAT
    assert bad.message == "Invalid number format. Expected: Comma (1.234,56)"

    negative = validate_value(spec, "-5", comma)
    assert negative.code is ValidationCode.RULE_VIOLATION
    assert negative.message == "Must be at least 0."


def test_integer_rule_rejects_fractions():
    spec = get_entity_schema("company").require("employee_count")

    error = validate_value(spec, "12.5")

    assert error.code is ValidationCode.RULE_VIOLATION
    assert error.message == "Must be a whole number."


def test_blank_values_are_always_acceptable():
    spec = get_entity_schema("company").require("name")

    assert validate_value(spec, "") is None
    assert validate_value(spec, None) is None
    assert validate_value(spec, "   ") is None


def test_multi_value_item_types():
    emails = _field("emails", type=FieldType.MULTI_VALUE, item_type=ItemType.EMAIL)
    phones = _field("phones", type=FieldType.MULTI_VALUE, item_type=ItemType.PHONE)
    domains = _field("domains", type=FieldType.MULTI_VALUE, item_type=ItemType.DOMAIN)

    assert validate_value(emails, "ada@acme.com, not-an-email").item_errors == {
        "not-an-email": "Not a valid email address"
    }
    assert validate_value(phones, "+1 (555) 123-4567, 12").item_errors == {"12": "Not a valid phone number"}
    assert validate_value(domains, "https://www.acme.com/about, acme").item_errors == {"acme": "Not a valid domain"}


def test_text_rules():
    linkedin = get_entity_schema("company").require("linkedin_url")

    assert validate_value(linkedin, "https://www.linkedin.com/company/acme") is None
    assert validate_value(linkedin, "notaurl").message == "Must be a valid URL."

    short = _field("code", rules=("max:3",))
    assert validate_value(short, "ABCD").message == "Must be at most 3 characters."


def test_unbalanced_brackets_are_invalid_not_errors():
    domains = get_entity_schema("company").require("domains")
    linkedin = get_entity_schema("company").require("linkedin_url")

    error = validate_value(domains, "acme.com, [acme.com")

    assert error.code is ValidationCode.INVALID_ITEMS
    assert error.has_item_errors
    assert error.item_errors == {"[acme.com": "Not a valid domain"}
    assert validate_value(linkedin, "http://[linkedin.com").message == "Must be a valid URL."
    assert validate_value(_field("site", type=FieldType.MULTI_VALUE, item_type=ItemType.URL), "http://[x") is not None


def test_validation_error_serialization():
    error = ValidationError(code=ValidationCode.INVALID_ITEMS, item_errors={"x": "Not a valid option"})

    assert error.as_dict() == {"code": "InvalidItems", "item_errors": {"x": "Not a valid option"}}
    assert ValidationError.from_storage(None) is None
    assert ValidationError.from_storage(error.to_storage()) == error


def test_cast_value_types():
    schema = get_entity_schema("opportunity")
    european = ColumnFormat(date_format=DateFormat.EUROPEAN)

    assert cast_value(schema.require("close_date"), "15/05/2024", european) == date(2024, 5, 15)
    assert cast_value(schema.require("next_step_at"), "15/05/2024 14:30", european) == datetime(2024, 5, 15, 14, 30)
    assert cast_value(schema.require("products"), "Platform, Support") == ["Platform", "Support"]
    assert cast_value(schema.require("name"), "  Renewal  ") == "Renewal"
    assert cast_value(schema.require("name"), "") is None

    company = get_entity_schema("company")
    employees = cast_value(company.require("employee_count"), "250")
    assert employees == 250
    assert isinstance(employees, int)
    assert cast_value(company.require("domains"), "https://www.Acme.com/about, acme.io") == ["acme.com", "acme.io"]

    people = get_entity_schema("people")
    assert cast_value(people.require("emails"), "Ada@Acme.com") == ["ada@acme.com"]


def test_cast_value_raises_for_unparseable_input():
    spec = get_entity_schema("opportunity").require("close_date")

    with pytest.raises(ValueError):
        cast_value(spec, "not a date")


def test_column_format_coerce():
    assert ColumnFormat.coerce(None) == ColumnFormat()
    parsed = ColumnFormat.coerce({"date_format": "american", "number_format": "comma"})
    assert parsed.date_format is DateFormat.AMERICAN
    assert parsed.number_format is NumberFormat.COMMA

    with pytest.raises(ValueError):
        ColumnFormat.coerce({"date_format": "martian"})
