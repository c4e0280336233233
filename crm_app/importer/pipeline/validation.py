"""
Per-value validation for mapped import columns.

Every function here is a pure function of (field definition, column format,
input string). The same validators run during interactive review and during
commit, so a value accepted in one phase is accepted in the other.
"""

from __future__ import annotations

import enum
import json
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping
from urllib.parse import urlsplit

from email_validator import EmailNotValidError, validate_email

from crm_app.importer.contracts import FieldType, ImportField, ItemType

from .formats import DateFormat, NumberFormat
from .normalize import coerce_str, normalize_domain, split_tokens

MAX_LISTED_OPTIONS = 5
IGNORED_RULES = frozenset({"required", "nullable", "string", "sometimes"})

_PHONE_RE = re.compile(r"^\+?[\d\s().\-/]+(\s*(x|ext\.?)\s*\d+)?$", re.IGNORECASE)


class ValidationCode(str, enum.Enum):
    INVALID_DATE_FORMAT = "InvalidDateFormat"
    INVALID_NUMBER_FORMAT = "InvalidNumberFormat"
    INVALID_CHOICE = "InvalidChoice"
    INVALID_ITEMS = "InvalidItems"
    RULE_VIOLATION = "RuleViolation"


@dataclass(frozen=True)
class ValidationError:
    """
    Semantic error attached to one value of one column.

    Attributes:
        code: Machine-readable classification.
        message: Summary for single-valued fields.
        item_errors: Per-token messages for multi-valued fields, keyed by the
            offending token so the UI can highlight exactly that sub-value.
    """

    code: ValidationCode
    message: str | None = None
    item_errors: Mapping[str, str] = field(default_factory=dict)

    @property
    def has_item_errors(self) -> bool:
        return bool(self.item_errors)

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code.value}
        if self.message is not None:
            payload["message"] = self.message
        if self.has_item_errors:
            payload["item_errors"] = dict(self.item_errors)
        return payload

    def to_storage(self) -> str:
        return json.dumps(self.as_dict(), sort_keys=True)

    @classmethod
    def from_storage(cls, payload: str | Mapping[str, Any] | None) -> "ValidationError | None":
        if payload is None or payload == "":
            return None
        data = json.loads(payload) if isinstance(payload, str) else dict(payload)
        return cls(
            code=ValidationCode(data["code"]),
            message=data.get("message"),
            item_errors=dict(data.get("item_errors") or {}),
        )


@dataclass(frozen=True)
class ColumnFormat:
    """Parse settings chosen per mapped column."""

    date_format: DateFormat = DateFormat.ISO
    number_format: NumberFormat = NumberFormat.POINT
    allow_two_digit_years: bool = True

    def as_dict(self) -> dict[str, Any]:
        return {
            "date_format": self.date_format.value,
            "number_format": self.number_format.value,
            "allow_two_digit_years": self.allow_two_digit_years,
        }

    @classmethod
    def coerce(cls, payload: Mapping[str, Any] | None) -> "ColumnFormat":
        if not payload:
            return cls()
        return cls(
            date_format=DateFormat(payload.get("date_format") or DateFormat.ISO.value),
            number_format=NumberFormat(payload.get("number_format") or NumberFormat.POINT.value),
            allow_two_digit_years=bool(payload.get("allow_two_digit_years", True)),
        )


DEFAULT_COLUMN_FORMAT = ColumnFormat()


def _rule_parts(rule: str) -> tuple[str, str | None]:
    name, sep, argument = rule.partition(":")
    return name.strip().lower(), (argument if sep else None)


def _is_valid_email(value: str) -> bool:
    try:
        validate_email(value, check_deliverability=False)
    except EmailNotValidError:
        return False
    return True


def _is_valid_url(value: str) -> bool:
    token = value if "://" in value else f"http://{value}"
    try:
        parts = urlsplit(token)
        hostname = parts.hostname
    except ValueError:
        return False
    return parts.scheme in ("http", "https") and bool(hostname) and "." in (hostname or "")


def _is_valid_phone(value: str) -> bool:
    if not _PHONE_RE.match(value):
        return False
    digits = sum(1 for char in value if char.isdigit())
    return 7 <= digits <= 20


def check_text_rules(rules: tuple[str, ...], value: str) -> str | None:
    """Return the first rule failure for a text value, or ``None``."""
    for rule in rules:
        name, argument = _rule_parts(rule)
        if name in IGNORED_RULES:
            continue
        if name == "max" and argument is not None and len(value) > int(argument):
            return f"Must be at most {argument} characters."
        if name == "min" and argument is not None and len(value) < int(argument):
            return f"Must be at least {argument} characters."
        if name == "email" and not _is_valid_email(value):
            return "Must be a valid email address."
        if name == "url" and not _is_valid_url(value):
            return "Must be a valid URL."
        if name == "integer" and not re.fullmatch(r"[+-]?\d+", value):
            return "Must be a whole number."
        if name == "numeric" and NumberFormat.POINT.parse(value) is None:
            return "Must be a number."
        if name == "regex" and argument is not None and not re.search(argument, value):
            return "Has an invalid format."
        if name == "in" and argument is not None and value not in argument.split(","):
            return "Is not an allowed value."
    return None


def check_number_rules(rules: tuple[str, ...], number: float) -> str | None:
    for rule in rules:
        name, argument = _rule_parts(rule)
        if name == "integer" and not float(number).is_integer():
            return "Must be a whole number."
        if name == "min" and argument is not None and number < float(argument):
            return f"Must be at least {argument}."
        if name == "max" and argument is not None and number > float(argument):
            return f"Must be at most {argument}."
    return None


def _check_item(item_type: ItemType, token: str, rules: tuple[str, ...]) -> str | None:
    if item_type is ItemType.EMAIL and not _is_valid_email(token):
        return "Not a valid email address"
    if item_type is ItemType.PHONE and not _is_valid_phone(token):
        return "Not a valid phone number"
    if item_type is ItemType.URL and not _is_valid_url(token):
        return "Not a valid URL"
    if item_type is ItemType.DOMAIN and normalize_domain(token) is None:
        return "Not a valid domain"
    return check_text_rules(rules, token)


def _choice_error(options: tuple[str, ...]) -> str:
    listed = ", ".join(options[:MAX_LISTED_OPTIONS])
    suffix = "..." if len(options) > MAX_LISTED_OPTIONS else ""
    return f"Invalid choice. Must be one of: {listed}{suffix}"


def validate_date(value: str, column_format: ColumnFormat) -> ValidationError | None:
    fmt = column_format.date_format
    if fmt.parse(value, allow_two_digit_years=column_format.allow_two_digit_years) is None:
        return ValidationError(
            code=ValidationCode.INVALID_DATE_FORMAT,
            message=f"Invalid date format. Expected: {fmt.description}",
        )
    return None


def validate_number(value: str, rules: tuple[str, ...], column_format: ColumnFormat) -> ValidationError | None:
    number = column_format.number_format.parse(value)
    if number is None:
        return ValidationError(
            code=ValidationCode.INVALID_NUMBER_FORMAT,
            message=f"Invalid number format. Expected: {column_format.number_format.label}",
        )
    failure = check_number_rules(rules, number)
    if failure:
        return ValidationError(code=ValidationCode.RULE_VIOLATION, message=failure)
    return None


def validate_choice(value: str, options: tuple[str, ...]) -> ValidationError | None:
    if value in options:
        return None
    return ValidationError(code=ValidationCode.INVALID_CHOICE, message=_choice_error(options))


def validate_multi_choice(value: str, options: tuple[str, ...]) -> ValidationError | None:
    item_errors = {token: "Not a valid option" for token in split_tokens(value) if token not in options}
    if not item_errors:
        return None
    return ValidationError(code=ValidationCode.INVALID_ITEMS, item_errors=item_errors)


def validate_multi_value(value: str, item_type: ItemType, rules: tuple[str, ...]) -> ValidationError | None:
    item_errors: dict[str, str] = {}
    for token in split_tokens(value):
        failure = _check_item(item_type, token, rules)
        if failure:
            item_errors[token] = failure
    if not item_errors:
        return None
    return ValidationError(code=ValidationCode.INVALID_ITEMS, item_errors=item_errors)


def validate_value(
    spec: ImportField,
    value: str | None,
    column_format: ColumnFormat = DEFAULT_COLUMN_FORMAT,
) -> ValidationError | None:
    """
    Classify ``value`` for ``spec``; ``None`` means the value is acceptable.

    Blank values are always acceptable here: an empty cell or a skipped value
    simply leaves the field absent.
    """
    token = coerce_str(value)
    if not token:
        return None

    if spec.type.is_temporal:
        return validate_date(token, column_format)
    if spec.type is FieldType.NUMBER:
        return validate_number(token, spec.rules, column_format)
    if spec.type is FieldType.CHOICE:
        return validate_choice(token, spec.options)
    if spec.type is FieldType.MULTI_CHOICE:
        return validate_multi_choice(token, spec.options)
    if spec.type is FieldType.MULTI_VALUE:
        return validate_multi_value(token, spec.item_type or ItemType.TEXT, spec.rules)

    failure = check_text_rules(spec.rules, token)
    if failure:
        return ValidationError(code=ValidationCode.RULE_VIOLATION, message=failure)
    return None


def cast_value(
    spec: ImportField,
    value: str | None,
    column_format: ColumnFormat = DEFAULT_COLUMN_FORMAT,
) -> Any:
    """
    Convert a validated effective value to the Python type stored on the entity.

    Returns ``None`` for blank input. Callers validate first; invalid values
    raise ``ValueError`` so commit can record the row as failed.
    """
    token = coerce_str(value)
    if not token:
        return None

    if spec.type.is_temporal:
        parsed: datetime | None = column_format.date_format.parse(
            token,
            allow_two_digit_years=column_format.allow_two_digit_years,
        )
        if parsed is None:
            raise ValueError(column_format.date_format.parse_error(token))
        if spec.type is FieldType.DATE:
            return parsed.date()
        return parsed
    if spec.type is FieldType.NUMBER:
        number = column_format.number_format.parse(token)
        if number is None:
            raise ValueError(f"Cannot parse '{token}' as a number ({column_format.number_format.label}).")
        if "integer" in spec.rules and number.is_integer():
            return int(number)
        return number
    if spec.type is FieldType.MULTI_CHOICE:
        return split_tokens(token)
    if spec.type is FieldType.MULTI_VALUE:
        tokens = split_tokens(token)
        if spec.item_type is ItemType.EMAIL:
            return [item.lower() for item in tokens]
        if spec.item_type is ItemType.DOMAIN:
            return [domain for domain in (normalize_domain(item) for item in tokens) if domain]
        return tokens
    return token
