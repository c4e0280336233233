"""Importer adapters that turn uploaded files into staged rows."""

from __future__ import annotations

from .spreadsheet import (
    SUPPORTED_EXTENSIONS,
    SpreadsheetReader,
    SpreadsheetRow,
    SpreadsheetStatistics,
    convert_workbook_to_csv,
    detect_delimiter,
    disambiguate_headers,
    open_spreadsheet,
)

__all__ = [
    "SUPPORTED_EXTENSIONS",
    "SpreadsheetReader",
    "SpreadsheetRow",
    "SpreadsheetStatistics",
    "convert_workbook_to_csv",
    "detect_delimiter",
    "disambiguate_headers",
    "open_spreadsheet",
]
