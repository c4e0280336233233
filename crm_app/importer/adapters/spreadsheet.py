"""Spreadsheet adapter for uploaded import files.

Turns an uploaded ``.csv``/``.txt``/``.xlsx`` file into a header row plus a
stream of ``(row number, {column: value})`` pairs. Workbooks are first converted
to delimited text so every format flows through the same CSV reader.
"""

from __future__ import annotations

import csv
import io
import zipfile
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Iterator, NamedTuple, Sequence

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from crm_app.importer.errors import FileIngestError

DELIMITED_EXTENSIONS = frozenset({".csv", ".txt"})
WORKBOOK_EXTENSIONS = frozenset({".xlsx"})
SUPPORTED_EXTENSIONS = DELIMITED_EXTENSIONS | WORKBOOK_EXTENSIONS
CANDIDATE_DELIMITERS = (",", ";", "\t", "|")
DELIMITER_SAMPLE_SIZE = 1024


class SpreadsheetRow(NamedTuple):
    """A parsed data row; unpacks as ``(row_number, values)`` for bulk inserts."""

    row_number: int
    values: dict[str, str]


@dataclass
class SpreadsheetStatistics:
    """Accumulated statistics from parsing."""

    rows_processed: int = 0
    rows_skipped_blank: int = 0


def detect_delimiter(sample: str) -> str:
    """Pick the candidate delimiter occurring most often in ``sample``; ties favour the comma."""
    best, best_count = ",", 0
    for delimiter in CANDIDATE_DELIMITERS:
        count = sample.count(delimiter)
        if count > best_count:
            best, best_count = delimiter, count
    return best


def _sanitize_header(header: str | None) -> str:
    token = (header or "").strip().lstrip("\ufeff").strip()
    return token.replace('"', "'")


def disambiguate_headers(raw_headers: Sequence[str | None]) -> tuple[str, ...]:
    """
    Make header names usable as column keys.

    Blank headers become ``Column <n>`` (1-based position) and repeated names
    get a ``(2)``, ``(3)`` ... suffix.
    """
    headers: list[str] = []
    seen: set[str] = set()
    for position, raw in enumerate(raw_headers, start=1):
        header = _sanitize_header(raw) or f"Column {position}"
        candidate = header
        suffix = 2
        while candidate in seen:
            candidate = f"{header} ({suffix})"
            suffix += 1
        seen.add(candidate)
        headers.append(candidate)
    return tuple(headers)


def _cell_to_text(value: object | None) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if hasattr(value, "isoformat"):
        text = value.isoformat()
        return text[:-9] if text.endswith("T00:00:00") else text
    return str(value)


def convert_workbook_to_csv(path: Path, destination: Path) -> Path:
    """Write the first worksheet of ``path`` to ``destination`` as comma-delimited UTF-8."""
    try:
        workbook = load_workbook(filename=str(path), read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, OSError, KeyError, ValueError) as exc:
        raise FileIngestError(f"Could not read spreadsheet {path.name}: {exc}") from exc

    try:
        sheet = workbook.worksheets[0] if workbook.worksheets else None
        if sheet is None:
            raise FileIngestError(f"Spreadsheet {path.name} has no worksheets.")
        with destination.open("w", encoding="utf-8", newline="") as handle:
            writer = csv.writer(handle)
            for row in sheet.iter_rows(values_only=True):
                writer.writerow([_cell_to_text(cell) for cell in row])
    finally:
        workbook.close()
    return destination


def _row_is_blank(values: Sequence[str]) -> bool:
    return all(not (value or "").strip() for value in values)


class SpreadsheetReader:
    """Delimited-text reader with header detection and blank-row skipping."""

    def __init__(self, file_obj: IO[str], *, max_rows: int | None = None, skip_blank_rows: bool = True) -> None:
        self._file_obj = file_obj
        self.max_rows = max_rows
        self.skip_blank_rows = skip_blank_rows
        self.statistics = SpreadsheetStatistics()
        self.delimiter = ","
        self._headers: tuple[str, ...] | None = None

    @classmethod
    def from_text(cls, text: str, **kwargs) -> "SpreadsheetReader":
        return cls(io.StringIO(text), **kwargs)

    @property
    def headers(self) -> tuple[str, ...]:
        if self._headers is None:
            self._prepare_reader()
        return self._headers or ()

    def _prepare_reader(self):
        self._file_obj.seek(0)
        sample = self._file_obj.read(DELIMITER_SAMPLE_SIZE)
        self.delimiter = detect_delimiter(sample)
        self._file_obj.seek(0)
        reader = csv.reader(self._file_obj, delimiter=self.delimiter)
        for raw_headers in reader:
            if self.skip_blank_rows and _row_is_blank(raw_headers):
                continue
            self._headers = disambiguate_headers(raw_headers)
            return reader
        raise FileIngestError("The uploaded file has no header row.")

    def iter_rows(self) -> Iterator[SpreadsheetRow]:
        reader = self._prepare_reader()
        headers = self._headers or ()
        row_number = 0
        try:
            for raw_values in reader:
                if self.skip_blank_rows and _row_is_blank(raw_values):
                    self.statistics.rows_skipped_blank += 1
                    continue
                row_number += 1
                if self.max_rows is not None and row_number > self.max_rows:
                    raise FileIngestError(f"The file exceeds the limit of {self.max_rows} rows.")
                values = {
                    header: (raw_values[index] if index < len(raw_values) else "")
                    for index, header in enumerate(headers)
                }
                self.statistics.rows_processed += 1
                yield SpreadsheetRow(row_number=row_number, values=values)
        except csv.Error as exc:
            raise FileIngestError(f"Malformed delimited text near line {reader.line_num}: {exc}") from exc


@contextmanager
def open_spreadsheet(
    path: str | Path,
    *,
    work_dir: str | Path | None = None,
    max_rows: int | None = None,
) -> Iterator[SpreadsheetReader]:
    """
    Yield a :class:`SpreadsheetReader` over ``path``.

    ``.xlsx`` input is converted to ``<stem>.converted.csv`` in ``work_dir``
    (defaults to the file's directory); the converted copy is removed on exit.
    """
    path = Path(path)
    extension = path.suffix.lower()
    if extension not in SUPPORTED_EXTENSIONS:
        raise FileIngestError(
            f"Unsupported file type '{extension or path.name}'. "
            f"Expected one of: {', '.join(sorted(SUPPORTED_EXTENSIONS))}."
        )
    if not path.exists():
        raise FileIngestError(f"Uploaded file not found: {path.name}")

    converted: Path | None = None
    if extension in WORKBOOK_EXTENSIONS:
        target_dir = Path(work_dir) if work_dir else path.parent
        converted = convert_workbook_to_csv(path, target_dir / f"{path.stem}.converted.csv")

    source = converted or path
    try:
        handle = source.open("r", encoding="utf-8-sig", newline="")
    except OSError as exc:
        if converted is not None:
            converted.unlink(missing_ok=True)
        raise FileIngestError(f"Could not open {path.name}: {exc}") from exc

    try:
        yield SpreadsheetReader(handle, max_rows=max_rows)
    except UnicodeDecodeError as exc:
        raise FileIngestError(f"{path.name} is not valid UTF-8 text: {exc.reason}") from exc
    finally:
        handle.close()
        if converted is not None:
            converted.unlink(missing_ok=True)
