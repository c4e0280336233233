from __future__ import annotations

import pytest

from crm_app.importer.contracts import get_entity_schema
from crm_app.importer.pipeline.analysis import ColumnAnalyzer, escape_like, mapped_columns
from crm_app.importer.pipeline.staging import MappedColumn
from crm_app.importer.pipeline.validation import ValidationCode, validate_value

NAME = MappedColumn("name", "Company Name")
EMPLOYEES = MappedColumn("employee_count", "Employees")


def _stage(store, values, column="Company Name"):
    store.bulk_insert([(index, {column: value}) for index, value in enumerate(values, start=1)])
    return ColumnAnalyzer(store)


def _employee_validator(value):
    return validate_value(get_entity_schema("company").require("employee_count"), value)


def test_pagination_reports_has_more(staging_store):
    analyzer = _stage(staging_store, [f"Company {index:02d}" for index in range(1, 13)])

    pages = [analyzer.unique_values_paginated(NAME, page=page, page_size=5) for page in (1, 2, 3)]

    assert [len(page.values) for page in pages] == [5, 5, 2]
    assert [page.has_more for page in pages] == [True, True, False]
    assert pages[0].total == 12
    assert pages[0].values[0].raw_value == "Company 01"
    assert pages[2].values[-1].raw_value == "Company 12"


def test_values_sort_by_count_then_value(staging_store):
    analyzer = _stage(staging_store, ["Globex", "Acme", "Acme", "Initech", "Acme", "Globex"])

    by_count = analyzer.unique_values_paginated(NAME)
    by_value = analyzer.unique_values_paginated(NAME, sort="value")

    assert [(entry.raw_value, entry.count) for entry in by_count.values] == [
        ("Acme", 3),
        ("Globex", 2),
        ("Initech", 1),
    ]
    assert [entry.raw_value for entry in by_value.values] == ["Acme", "Globex", "Initech"]


def test_search_treats_wildcards_literally(staging_store):
    analyzer = _stage(staging_store, ["100%", "100 percent", "a_b", "axb", "ACME Holdings"])

    def search(term):
        return [entry.raw_value for entry in analyzer.unique_values_paginated(NAME, search=term, sort="value").values]

    assert search("%") == ["100%"]
    assert search("_") == ["a_b"]
    assert search("acme") == ["ACME Holdings"]
    assert escape_like("50%_off\\") == "50\\%\\_off\\\\"


def test_analyze_all_columns(staging_store):
    staging_store.bulk_insert(
        [
            (1, {"Company Name": "Acme", "Employees": "250"}),
            (2, {"Company Name": "Acme", "Employees": ""}),
            (3, {"Company Name": "Globex", "Employees": "lots"}),
        ]
    )
    analyzer = ColumnAnalyzer(staging_store)
    analyzer.validate_column(EMPLOYEES, _employee_validator)

    results = analyzer.analyze_all_columns([NAME, EMPLOYEES], required=["name"])

    name, employees = results
    assert (name.total_rows, name.unique_values, name.blank_count, name.error_rows) == (3, 2, 0, 0)
    assert name.required is True
    assert (employees.unique_values, employees.blank_count, employees.error_rows) == (3, 1, 1)
    assert analyzer.analyze_all_columns([]) == []


def test_correction_applies_to_every_occurrence_and_restores(staging_store):
    analyzer = _stage(staging_store, ["Acme Inc", "Acme Inc", "Globex"])

    assert analyzer.apply_correction(NAME, "Acme Inc", "Acme") == 2
    page = analyzer.unique_values_paginated(NAME)
    acme = page.values[0]
    assert (acme.raw_value, acme.correction, acme.effective_value, acme.is_modified) == (
        "Acme Inc",
        "Acme",
        "Acme",
        True,
    )

    assert analyzer.apply_correction(NAME, "Acme Inc", "Acme") == 0
    assert analyzer.apply_correction(NAME, "Acme Inc", " Acme Inc ") == 2
    restored = analyzer.unique_values_paginated(NAME).values[0]
    assert restored.correction is None
    assert restored.effective_value == "Acme Inc"


def test_skip_and_filter_counts(staging_store):
    analyzer = _stage(staging_store, ["Acme", "n/a", "n/a", "Globex", "Initech"])

    analyzer.skip_value(NAME, "n/a")
    analyzer.apply_correction(NAME, "Globex", "Globex Corp")

    counts = analyzer.filter_counts(NAME)
    assert counts.as_dict() == {"all": 4, "modified": 1, "skipped": 1}

    skipped = analyzer.unique_values_paginated(NAME, value_filter="skipped")
    assert [(entry.raw_value, entry.count, entry.is_skipped) for entry in skipped.values] == [("n/a", 2, True)]

    modified = analyzer.unique_values_paginated(NAME, value_filter="modified")
    assert [entry.raw_value for entry in modified.values] == ["Globex"]

    assert analyzer.filter_counts(NAME, search="glob").as_dict() == {"all": 1, "modified": 1, "skipped": 0}


def test_unknown_filter_is_rejected(staging_store):
    analyzer = _stage(staging_store, ["Acme"])

    with pytest.raises(ValueError):
        analyzer.unique_values_paginated(NAME, value_filter="bogus")


def test_validate_column_and_revalidating_corrections(staging_store):
    analyzer = _stage(staging_store, ["250", "lots", "lots", ""], column="Employees")

    assert analyzer.validate_column(EMPLOYEES, _employee_validator) == 2

    errors = analyzer.unique_values_paginated(EMPLOYEES, errors_only=True)
    assert [entry.raw_value for entry in errors.values] == ["lots"]
    assert errors.values[0].error.code is ValidationCode.INVALID_NUMBER_FORMAT

    analyzer.apply_correction(EMPLOYEES, "lots", "500", revalidate=_employee_validator)

    assert analyzer.unique_values_paginated(EMPLOYEES, errors_only=True).values == ()
    assert analyzer.analyze_all_columns([EMPLOYEES])[0].error_rows == 0


def test_clear_field_drops_corrections_and_errors(staging_store):
    analyzer = _stage(staging_store, ["lots"], column="Employees")
    analyzer.validate_column(EMPLOYEES, _employee_validator)
    analyzer.apply_correction(EMPLOYEES, "lots", "many")

    assert analyzer.clear_field("employee_count") == 1

    entry = analyzer.unique_values_paginated(EMPLOYEES).values[0]
    assert entry.correction is None
    assert entry.error is None


def test_mapped_columns_skips_unmapped_fields():
    assert mapped_columns({"name": "Company Name", "industry": "", "domains": "Website"}) == [
        MappedColumn("name", "Company Name"),
        MappedColumn("domains", "Website"),
    ]


def test_search_folds_non_ascii_case(staging_store):
    analyzer = _stage(staging_store, ["Ärzte Berlin", "Straße AG", "Acme"])

    def search(term):
        return [entry.raw_value for entry in analyzer.unique_values_paginated(NAME, search=term, sort="value").values]

    assert search("ärzte") == ["Ärzte Berlin"]
    assert search("ä") == ["Ärzte Berlin"]
    assert search("STRASSE") == ["Straße AG"]
    assert analyzer.filter_counts(NAME, search="ÄRZTE").as_dict() == {"all": 1, "modified": 0, "skipped": 0}


def test_analysis_is_read_only_and_corrections_touch_only_their_value(staging_store):
    staging_store.bulk_insert(
        [
            (1, {"Company Name": "Acme", "Employees": "250"}),
            (2, {"Company Name": "Globex", "Employees": "lots"}),
            (3, {"Company Name": "Acme", "Employees": ""}),
            (4, {"Company Name": "Initech", "Employees": "40"}),
        ]
    )
    analyzer = ColumnAnalyzer(staging_store)
    analyzer.validate_column(EMPLOYEES, _employee_validator)

    first = analyzer.analyze_all_columns([NAME, EMPLOYEES], required=["name"])
    second = analyzer.analyze_all_columns([NAME, EMPLOYEES], required=["name"])
    assert first == second

    with staging_store.query() as handle:
        before = {row.row_number: row for row in handle.iter_rows()}
    assert analyzer.apply_correction(NAME, "Acme", "Acme Corp") == 2
    with staging_store.query() as handle:
        after = {row.row_number: row for row in handle.iter_rows()}

    assert {number for number in after if after[number] != before[number]} == {1, 3}
    assert after[1].corrections == {"name": "Acme Corp"}
    assert after[1].validation == before[1].validation
    assert analyzer.analyze_all_columns([EMPLOYEES]) == [first[1]]


def test_skip_then_restore_round_trips(staging_store):
    analyzer = _stage(staging_store, ["n/a", "Acme", "n/a"])
    original = analyzer.unique_values_paginated(NAME).values

    assert analyzer.skip_value(NAME, "n/a") == 2
    assert analyzer.filter_counts(NAME).skipped == 1

    assert analyzer.apply_correction(NAME, "n/a", "n/a") == 2

    assert analyzer.filter_counts(NAME).as_dict() == {"all": 2, "modified": 0, "skipped": 0}
    assert analyzer.unique_values_paginated(NAME, value_filter="skipped").values == ()
    assert analyzer.unique_values_paginated(NAME).values == original


def test_pages_cover_every_distinct_value_once(staging_store):
    values = [f"Company {index % 7}" for index in range(23)] + ["Acme"]
    analyzer = _stage(staging_store, values)
    expected = {}
    for value in values:
        expected[value] = expected.get(value, 0) + 1

    for sort in ("count", "value"):
        seen = []
        page_number = 1
        while True:
            page = analyzer.unique_values_paginated(NAME, page=page_number, page_size=3, sort=sort)
            seen.extend((entry.raw_value, entry.count) for entry in page.values)
            if not page.has_more:
                break
            page_number += 1

        assert len(seen) == len({raw for raw, _ in seen})
        assert dict(seen) == expected
