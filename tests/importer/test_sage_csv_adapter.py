from __future__ import annotations

import pytest

from enrollment_app.importer.adapters import CSVParseAbortedError, SageCSVAdapter, decode_payload
from enrollment_app.importer.contracts import SAGE_COLUMN_COUNT


def test_adapter_skips_header_and_pads_rows(sage_csv, sage_row):
    payload = sage_csv(sage_row(), sage_row(dni="87654321X")[:16])
    adapter = SageCSVAdapter.from_bytes(payload)

    records = adapter.read_all()

    assert adapter.statistics.header_skipped is True
    assert [record.row_number for record in records] == [2, 3]
    assert all(len(record.fields) == SAGE_COLUMN_COUNT for record in records)
    assert records[1].fields[4] == "87654321X"
    assert records[1].fields[19] == ""
    assert adapter.statistics.rows_parsed == 2


def test_adapter_accepts_files_without_header(sage_csv, sage_row):
    adapter = SageCSVAdapter.from_bytes(sage_csv(sage_row(), header=False))

    records = adapter.read_all()

    assert adapter.statistics.header_skipped is False
    assert len(records) == 1
    assert records[0].row_number == 1


def test_adapter_collects_short_rows_as_errors(sage_csv, sage_row):
    payload = sage_csv(sage_row(), "only;three;fields", "", sage_row(dni="87654321X"))
    adapter = SageCSVAdapter.from_bytes(payload)

    records = adapter.read_all()

    assert len(records) == 2
    assert adapter.statistics.parse_errors == 1
    error = adapter.statistics.errors[0]
    assert error.row_number == 3
    assert "expected at least 15 fields" in error.message
    assert error.fields == ["only", "three", "fields"]
    assert adapter.statistics.rows_skipped_blank == 1


def test_adapter_aborts_beyond_error_ceiling(sage_csv):
    payload = sage_csv("a;b", "c;d", "e;f")
    adapter = SageCSVAdapter.from_bytes(payload, max_errors=2)

    with pytest.raises(CSVParseAbortedError) as excinfo:
        adapter.read_all()

    assert len(excinfo.value.errors) == 3
    assert excinfo.value.max_errors == 2


def test_adapter_strips_wrapping_quotes(sage_row):
    quoted = ";".join(f'"{value}"' for value in sage_row())
    adapter = SageCSVAdapter.from_bytes(quoted.encode("utf-8"))

    record = adapter.read_all()[0]

    assert record.fields[4] == "12345678Z"
    assert record.fields[17] == "Acme Servicios SL"


def test_decode_payload_falls_back_to_windows_encoding():
    text, encoding = decode_payload("Muñoz;Peña".encode("cp1252"))

    assert text == "Muñoz;Peña"
    assert encoding == "cp1252"

    text, encoding = decode_payload("\ufeffMuñoz".encode("utf-8"))
    assert text == "Muñoz"
    assert encoding == "utf-8-sig"
