from __future__ import annotations

from datetime import datetime

import pytest
from openpyxl import Workbook

from crm_app.importer.adapters import (
    SpreadsheetReader,
    detect_delimiter,
    disambiguate_headers,
    open_spreadsheet,
)
from crm_app.importer.errors import FileIngestError


def test_detect_delimiter():
    assert detect_delimiter("name;email\nAcme;a@acme.com") == ";"
    assert detect_delimiter("name\temail\nAcme\ta@acme.com") == "\t"
    assert detect_delimiter("name|email") == "|"
    assert detect_delimiter("name") == ","


def test_disambiguate_headers():
    assert disambiguate_headers(["Name", "", "Name", "Name", None]) == (
        "Name",
        "Column 2",
        "Name (2)",
        "Name (3)",
        "Column 5",
    )


def test_reader_skips_blank_rows_and_pads_short_rows():
    reader = SpreadsheetReader.from_text("\ufeffName,Email,Phone\nAcme,a@acme.com\n\n,,\nGlobex,g@globex.com,555\n")

    rows = list(reader.iter_rows())

    assert reader.headers == ("Name", "Email", "Phone")
    assert [row.row_number for row in rows] == [1, 2]
    assert rows[0].values == {"Name": "Acme", "Email": "a@acme.com", "Phone": ""}
    assert rows[1].values["Phone"] == "555"
    assert reader.statistics.rows_processed == 2
    assert reader.statistics.rows_skipped_blank == 2


def test_reader_enforces_row_limit():
    reader = SpreadsheetReader.from_text("Name\nA\nB\nC\n", max_rows=2)

    with pytest.raises(FileIngestError, match="limit of 2 rows"):
        list(reader.iter_rows())


def test_reader_requires_header_row():
    reader = SpreadsheetReader.from_text("\n\n")

    with pytest.raises(FileIngestError, match="no header row"):
        list(reader.iter_rows())


def test_open_spreadsheet_reads_semicolon_csv(tmp_path):
    path = tmp_path / "companies.csv"
    path.write_text("Name;Website\nAcme;acme.com\n", encoding="utf-8")

    with open_spreadsheet(path) as reader:
        rows = list(reader.iter_rows())
        assert reader.delimiter == ";"

    assert rows[0].values == {"Name": "Acme", "Website": "acme.com"}


def test_open_spreadsheet_converts_workbooks(tmp_path):
    path = tmp_path / "companies.xlsx"
    workbook = Workbook()
    sheet = workbook.active
    sheet.append(["Name", "Employees", "Founded"])
    sheet.append(["Acme", 250, datetime(2020, 1, 15)])
    sheet.append([None, None, None])
    sheet.append(["Globex", 40.0, None])
    workbook.save(path)

    with open_spreadsheet(path, work_dir=tmp_path) as reader:
        headers = reader.headers
        rows = list(reader.iter_rows())
        assert (tmp_path / "companies.converted.csv").exists()

    assert headers == ("Name", "Employees", "Founded")
    assert rows[0].values == {"Name": "Acme", "Employees": "250", "Founded": "2020-01-15"}
    assert rows[1].values == {"Name": "Globex", "Employees": "40", "Founded": ""}
    assert not (tmp_path / "companies.converted.csv").exists()


def test_open_spreadsheet_rejects_unsupported_files(tmp_path):
    path = tmp_path / "report.pdf"
    path.write_bytes(b"%PDF-1.4")

    with pytest.raises(FileIngestError, match="Unsupported file type"):
        with open_spreadsheet(path):
            pass


def test_open_spreadsheet_rejects_corrupt_workbooks(tmp_path):
    path = tmp_path / "broken.xlsx"
    path.write_bytes(b"not a zip archive")

    with pytest.raises(FileIngestError, match="Could not read spreadsheet"):
        with open_spreadsheet(path):
            pass
