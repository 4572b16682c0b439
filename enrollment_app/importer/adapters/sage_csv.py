"""CSV adapter for Sage payroll exports.

Responsible for decoding the raw upload, splitting semicolon-separated
records, discarding the optional header row and enforcing the minimum field
count. Records that survive are padded to the fixed ``SageRow`` width so the
normalizer can address columns by ``SageColumn`` index.
"""

from __future__ import annotations

import csv
import io
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Iterator

from enrollment_app.importer.contracts import (
    SAGE_DELIMITER,
    SAGE_HEADER_MARKER,
    SAGE_MIN_FIELDS,
    SageRow,
    coerce_sage_row,
)

MAX_PARSE_ERRORS = 100
DECODE_CANDIDATES: tuple[str, ...] = ("utf-8-sig", "cp1252", "latin-1")


class CSVAdapterError(Exception):
    """Base exception for CSV adapter failures."""


class CSVRowError(CSVAdapterError):
    """Raised (and collected) when an individual record cannot be parsed."""

    def __init__(self, row_number: int, message: str, fields: list[str] | None = None) -> None:
        super().__init__(f"Row {row_number}: {message}")
        self.row_number = row_number
        self.message = message
        self.fields = list(fields) if fields is not None else None


class CSVParseAbortedError(CSVAdapterError):
    """Raised when malformed records exceed the tolerated ceiling."""

    def __init__(self, errors: list[CSVRowError], max_errors: int) -> None:
        super().__init__(
            f"CSV parse aborted after {len(errors)} malformed rows (maximum tolerated: {max_errors})."
        )
        self.errors = tuple(errors)
        self.max_errors = max_errors


@dataclass(frozen=True)
class SageCSVRecord:
    """A structurally valid record and its 1-based line number."""

    row_number: int
    fields: SageRow


@dataclass
class SageCSVStatistics:
    """Accumulated statistics from CSV parsing."""

    rows_read: int = 0
    rows_parsed: int = 0
    rows_skipped_blank: int = 0
    header_skipped: bool = False
    encoding: str | None = None
    errors: list[CSVRowError] = field(default_factory=list)

    @property
    def parse_errors(self) -> int:
        return len(self.errors)


def decode_payload(payload: bytes) -> tuple[str, str]:
    """Decode uploaded bytes, falling back from UTF-8 to Windows/Latin encodings."""

    for encoding in DECODE_CANDIDATES:
        try:
            return payload.decode(encoding), encoding
        except UnicodeDecodeError:
            continue
    # latin-1 maps every byte, so the loop always returns
    raise CSVAdapterError("Unable to decode CSV payload.")  # pragma: no cover


def _strip_wrapping_quotes(value: str) -> str:
    token = value.strip()
    if len(token) >= 2 and token[0] == '"' and token[-1] == '"':
        return token[1:-1]
    return token


def _is_header(fields: list[str]) -> bool:
    return bool(fields) and SAGE_HEADER_MARKER in fields[0].lower()


class SageCSVAdapter:
    """Reader for positional, semicolon-separated Sage exports."""

    def __init__(
        self,
        file_obj: IO[str],
        *,
        max_errors: int = MAX_PARSE_ERRORS,
        min_fields: int = SAGE_MIN_FIELDS,
    ) -> None:
        self._file_obj = file_obj
        self.max_errors = max_errors
        self.min_fields = min_fields
        self.statistics = SageCSVStatistics()

    @classmethod
    def from_bytes(cls, payload: bytes, **kwargs) -> "SageCSVAdapter":
        text, encoding = decode_payload(payload)
        adapter = cls(io.StringIO(text, newline=""), **kwargs)
        adapter.statistics.encoding = encoding
        return adapter

    @classmethod
    def from_path(cls, path: Path | str, **kwargs) -> "SageCSVAdapter":
        return cls.from_bytes(Path(path).read_bytes(), **kwargs)

    def iter_rows(self) -> Iterator[SageCSVRecord]:
        """
        Yield valid records, collecting malformed ones in ``statistics.errors``.

        Raises ``CSVParseAbortedError`` as soon as the malformed count exceeds
        ``max_errors``.
        """

        self._file_obj.seek(0)
        reader = csv.reader(self._file_obj, delimiter=SAGE_DELIMITER, quoting=csv.QUOTE_NONE)
        first_record = True
        for raw_fields in reader:
            row_number = reader.line_num
            fields = [_strip_wrapping_quotes(value) for value in raw_fields]

            if first_record:
                first_record = False
                if _is_header(fields):
                    self.statistics.header_skipped = True
                    continue

            if not any(fields):
                self.statistics.rows_skipped_blank += 1
                continue

            self.statistics.rows_read += 1
            if len(fields) < self.min_fields:
                self._register_error(
                    CSVRowError(
                        row_number,
                        f"expected at least {self.min_fields} fields, found {len(fields)}",
                        fields,
                    )
                )
                continue

            self.statistics.rows_parsed += 1
            yield SageCSVRecord(row_number=row_number, fields=coerce_sage_row(fields))

    def read_all(self) -> list[SageCSVRecord]:
        return list(self.iter_rows())

    def _register_error(self, error: CSVRowError) -> None:
        self.statistics.errors.append(error)
        if len(self.statistics.errors) > self.max_errors:
            raise CSVParseAbortedError(self.statistics.errors, self.max_errors)
