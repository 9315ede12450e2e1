from __future__ import annotations

from datetime import datetime, timezone

from dualsync.infrastructure.sheets_cells import decode_cell, encode_cell, ensure_headers, merge_row, row_to_record


def test_encode_cell_keeps_types_as_json() -> None:
    assert encode_cell(None) == ""
    assert encode_cell("42") == '"42"'
    assert encode_cell(42) == "42"
    assert encode_cell({"b": 1, "a": 2}) == '{"a": 2, "b": 1}'
    assert encode_cell(datetime(2024, 1, 1, tzinfo=timezone.utc)) == '"2024-01-01T00:00:00.000000Z"'


def test_decode_cell_falls_back_to_raw_text() -> None:
    assert decode_cell("") is None
    assert decode_cell('"42"') == "42"
    assert decode_cell("true") is True
    assert decode_cell("Central Park") == "Central Park"


def test_row_to_record_pads_short_rows_and_skips_blank_headers() -> None:
    assert row_to_record(["id", "", "name"], ['"1"', "x"]) == {"id": "1", "name": None}


def test_merge_row_preserves_untouched_cells() -> None:
    headers = ["id", "name", "size"]

    assert merge_row(headers, {"name": "Park"}, ['"42"', '"Old"', "3"]) == ['"42"', '"Park"', "3"]


def test_ensure_headers_appends_new_columns() -> None:
    assert ensure_headers([], {"name": 1}, "id") == ["id", "name"]
    assert ensure_headers(["id", "name"], {"name": 1, "size": 2}, "id") == ["id", "name", "size"]
