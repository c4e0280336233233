"""
Format-aware parsers for date, timestamp, and number columns.

Each family carries an ordered list of ``strptime`` patterns. Values that look
like they carry a time component are tried against timestamp patterns first;
two-digit years are only attempted after every four-digit pattern failed.
"""

from __future__ import annotations

import enum
import re
from datetime import date, datetime

TIME_COMPONENT_RE = re.compile(r"\d{1,2}:\d{2}")
_ORDINAL_SUFFIX_RE = re.compile(r"(?<=\d)(st|nd|rd|th)\b", re.IGNORECASE)
_NUMBER_RE = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)$")

_TIME_SUFFIXES = ("%H:%M:%S", "%H:%M")


def _clean(value: str) -> str:
    token = _ORDINAL_SUFFIX_RE.sub("", value.strip())
    token = token.replace(",", " ")
    return " ".join(token.split())


def _try_patterns(value: str, patterns: tuple[str, ...]) -> datetime | None:
    for pattern in patterns:
        try:
            return datetime.strptime(value, pattern)
        except ValueError:
            continue
    return None


class DateFormat(str, enum.Enum):
    """Day/month ordering families accepted for date and datetime columns."""

    ISO = "iso"
    EUROPEAN = "european"
    AMERICAN = "american"

    @property
    def label(self) -> str:
        return {
            DateFormat.ISO: "ISO standard",
            DateFormat.EUROPEAN: "European",
            DateFormat.AMERICAN: "American",
        }[self]

    @property
    def example(self) -> str:
        return {
            DateFormat.ISO: "YYYY-MM-DD",
            DateFormat.EUROPEAN: "DD/MM/YYYY",
            DateFormat.AMERICAN: "MM/DD/YYYY",
        }[self]

    @property
    def description(self) -> str:
        return f"{self.label} ({self.example})"

    @property
    def date_patterns(self) -> tuple[str, ...]:
        return _DATE_PATTERNS[self]

    @property
    def two_digit_year_patterns(self) -> tuple[str, ...]:
        return _TWO_DIGIT_YEAR_PATTERNS[self]

    @property
    def timestamp_patterns(self) -> tuple[str, ...]:
        return TimestampFormat(self.value).patterns

    def parse(self, value: str | None, *, allow_two_digit_years: bool = True) -> datetime | None:
        """
        Parse ``value`` in this family, returning ``None`` when nothing matches.

        Date-only values come back as midnight datetimes.
        """
        if value is None:
            return None
        token = _clean(str(value))
        if not token:
            return None

        if TIME_COMPONENT_RE.search(token):
            parsed = _try_patterns(token, self.timestamp_patterns)
            if parsed is not None:
                return parsed

        parsed = _try_patterns(token, self.date_patterns)
        if parsed is not None:
            return parsed

        if allow_two_digit_years:
            return _try_patterns(token, self.two_digit_year_patterns)
        return None

    def format(self, value: date | datetime) -> str:
        """Render ``value`` the way this family writes it; timestamps keep hours and minutes."""
        if self is DateFormat.EUROPEAN:
            rendered = value.strftime("%d/%m/%Y")
        elif self is DateFormat.AMERICAN:
            rendered = value.strftime("%m/%d/%Y")
        else:
            rendered = value.strftime("%Y-%m-%d")
        if isinstance(value, datetime):
            rendered = f"{rendered} {value.strftime('%H:%M')}"
        return rendered

    def parse_error(self, value: str) -> str:
        return f"Cannot parse '{value}' as {self.label} date (expected {self.example})"


_DATE_PATTERNS: dict[DateFormat, tuple[str, ...]] = {
    DateFormat.ISO: ("%Y-%m-%d", "%Y/%m/%d"),
    DateFormat.EUROPEAN: (
        "%d/%m/%Y",
        "%d-%m-%Y",
        "%d.%m.%Y",
        "%d %B %Y",
        "%d %b %Y",
    ),
    DateFormat.AMERICAN: (
        "%m/%d/%Y",
        "%m-%d-%Y",
        "%B %d %Y",
        "%b %d %Y",
    ),
}

_TWO_DIGIT_YEAR_PATTERNS: dict[DateFormat, tuple[str, ...]] = {
    DateFormat.ISO: (),
    DateFormat.EUROPEAN: ("%d/%m/%y", "%d-%m-%y", "%d.%m.%y"),
    DateFormat.AMERICAN: ("%m/%d/%y", "%m-%d-%y"),
}


def _timestamp_patterns(fmt: DateFormat) -> tuple[str, ...]:
    patterns: list[str] = []
    for date_pattern in _DATE_PATTERNS[fmt]:
        for time_pattern in _TIME_SUFFIXES:
            patterns.append(f"{date_pattern} {time_pattern}")
            if fmt is not DateFormat.ISO:
                patterns.append(f"{time_pattern} {date_pattern}")
    if fmt is DateFormat.ISO:
        patterns.extend(
            (
                "%Y-%m-%dT%H:%M:%S",
                "%Y-%m-%dT%H:%M",
                "%Y-%m-%dT%H:%M:%S.%f",
                "%Y-%m-%dT%H:%M:%S%z",
                "%Y-%m-%dT%H:%M:%S.%f%z",
                "%Y-%m-%d %H:%M:%S%z",
            )
        )
    return tuple(patterns)


class TimestampFormat(str, enum.Enum):
    """Timestamp pattern sets; values mirror :class:`DateFormat`."""

    ISO = "iso"
    EUROPEAN = "european"
    AMERICAN = "american"

    @property
    def date_format(self) -> DateFormat:
        return DateFormat(self.value)

    @property
    def patterns(self) -> tuple[str, ...]:
        return _TIMESTAMP_PATTERNS[self.value]

    def parse(self, value: str | None, *, allow_two_digit_years: bool = True) -> datetime | None:
        return self.date_format.parse(value, allow_two_digit_years=allow_two_digit_years)


_TIMESTAMP_PATTERNS: dict[str, tuple[str, ...]] = {fmt.value: _timestamp_patterns(fmt) for fmt in DateFormat}


class NumberFormat(str, enum.Enum):
    """Decimal separator conventions for numeric columns."""

    POINT = "point"
    COMMA = "comma"

    @property
    def label(self) -> str:
        if self is NumberFormat.COMMA:
            return "Comma (1.234,56)"
        return "Point (1,234.56)"

    @property
    def decimal_separator(self) -> str:
        return "," if self is NumberFormat.COMMA else "."

    @property
    def thousands_separator(self) -> str:
        return "." if self is NumberFormat.COMMA else ","

    def parse(self, value: str | None) -> float | None:
        """Return the numeric value of ``value`` or ``None`` when it is not a number."""
        if value is None:
            return None
        token = str(value).strip().replace(" ", "").replace("\u00a0", "")
        if not token:
            return None
        token = token.replace(self.thousands_separator, "")
        if self is NumberFormat.COMMA:
            token = token.replace(",", ".")
        if not _NUMBER_RE.match(token):
            return None
        return float(token)

    def format(self, value: float | int) -> str:
        """Render ``value`` with this convention's separators; integers carry no decimals."""
        if isinstance(value, int):
            rendered = f"{value:,}"
        else:
            rendered = f"{float(value):,.2f}"
        if self is NumberFormat.COMMA:
            rendered = rendered.replace(",", "\x00").replace(".", ",").replace("\x00", ".")
        return rendered
