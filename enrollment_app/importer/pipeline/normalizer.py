"""
Row normalization for Sage payroll exports.

Everything in this module is a pure function of its input: the same raw row
always yields the same ``ProcessedUserData``. Decisions store the raw row and
rely on this to replay a resolution long after the original upload.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime
from decimal import ROUND_FLOOR, Decimal, InvalidOperation
from typing import Any, Sequence

from dateutil import parser as date_parser

from enrollment_app.importer.contracts import SageColumn, SageRow, coerce_sage_row

# Mojibake produced by reading UTF-8 bytes as cp1252/latin-1, longest first.
ENCODING_REPAIRS: tuple[tuple[str, str], ...] = (
    ("â‚¬", "€"),
    ("â€œ", '"'),
    ("â€\u009d", '"'),
    ("â€™", "'"),
    ("â€˜", "'"),
    ("â€\u201c", "-"),
    ("â€\u201d", "-"),
    ("Ã±", "ñ"),
    ("Ã¡", "á"),
    ("Ã©", "é"),
    ("Ã\u00ad", "í"),
    ("Ã³", "ó"),
    ("Ãº", "ú"),
    ("Ã¼", "ü"),
    ("Ã\u00a0", "à"),
    ("Ã¨", "è"),
    ("Ã¬", "ì"),
    ("Ã²", "ò"),
    ("Ã¹", "ù"),
    ("Ã§", "ç"),
    ("Ã‘", "Ñ"),
    ("Ã\u0081", "Á"),
    ("Ã‰", "É"),
    ("Ã\u008d", "Í"),
    ("Ã“", "Ó"),
    ("Ãš", "Ú"),
    ("Ãœ", "Ü"),
    ("Ã‡", "Ç"),
    ("Âª", "ª"),
    ("Âº", "º"),
)

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_BROKEN_EMAIL = re.compile(r'([A-Za-z0-9._%+-]+)"([A-Za-z0-9-]+(?:\.[A-Za-z0-9-]+)*\.[A-Za-z]{2,})')
_LEADING_INT = re.compile(r"^\s*(-?\d+)")

_DMY_SLASH = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})")
_YMD_DASH = re.compile(r"^(\d{4})-(\d{1,2})-(\d{1,2})")
_DMY_DASH = re.compile(r"^(\d{1,2})-(\d{1,2})-(\d{4})")

# Fixed default so partial dates resolve identically on every run.
_FALLBACK_DEFAULT = datetime(1900, 1, 1)


@dataclass(frozen=True)
class ProcessedUserData:
    """Canonical representation of one CSV record."""

    row_number: int
    raw_row: SageRow
    dni: str | None
    name: str | None
    first_surname: str | None
    second_surname: str | None
    email: str | None
    birth_date: date | None
    professional_category: str | None
    salary_group: int | None
    nss: str | None
    import_id: str | None
    company_name: str | None
    company_cif: str | None
    company_import_id: str | None
    center_name: str | None
    center_code: str | None
    employer_number: str | None
    start_date: date | None
    end_date: date | None

    @property
    def normalized_full_name(self) -> str:
        return build_full_name(self.name, self.first_surname, self.second_surname)

    def identity_fields(self) -> dict[str, Any]:
        """Fields captured by the failure vault."""

        return {
            "dni": self.dni,
            "name": self.name,
            "first_surname": self.first_surname,
            "second_surname": self.second_surname,
            "email": self.email,
            "import_id": self.import_id,
            "nss": self.nss,
            "company_name": self.company_name,
            "center_name": self.center_name,
        }


def repair_text(value: str | None) -> str:
    """Undo single-pass encoding mismatches, strip control characters and trim."""

    if not value:
        return ""
    text = value
    while True:
        repaired = text
        for broken, fixed in ENCODING_REPAIRS:
            if broken in repaired:
                repaired = repaired.replace(broken, fixed)
        repaired = _CONTROL_CHARS.sub("", repaired).strip()
        if repaired == text:
            return repaired
        text = repaired


def _optional(value: str | None) -> str | None:
    text = repair_text(value)
    return text or None


def build_full_name(name: str | None, first_surname: str | None, second_surname: str | None) -> str:
    """Lower-cased ``name first second`` used for similarity comparison."""

    return f"{name or ''} {first_surname or ''} {second_surname or ''}".strip().lower()


def repair_email(value: str | None) -> str | None:
    text = repair_text(value)
    if not text:
        return None
    return _BROKEN_EMAIL.sub(r"\1@\2", text)


def split_surnames(value: str | None) -> tuple[str | None, str | None]:
    """Return ``(first_surname, second_surname)`` from a combined field."""

    tokens = repair_text(value).split()
    if not tokens:
        return None, None
    second = " ".join(tokens[1:])
    return tokens[0], second or None


def decode_scientific_integer(value: str | None) -> str | None:
    """
    Recover a digit string exported as a float, e.g. ``1.23E+11``.

    Returns ``None`` when the value is not a finite number.
    """

    text = repair_text(value).replace(" ", "").replace(",", ".")
    if not text:
        return None
    try:
        number = Decimal(text)
    except InvalidOperation:
        return None
    if not number.is_finite():
        return None
    return str(int(number.to_integral_value(rounding=ROUND_FLOOR)))


def _build_date(year: str, month: str, day: str) -> date | None:
    try:
        return date(int(year), int(month), int(day))
    except ValueError:
        return None


def parse_date(value: str | None) -> date | None:
    """Parse ``DD/MM/YYYY``, ``YYYY-MM-DD`` or ``DD-MM-YYYY`` with a lenient fallback."""

    text = repair_text(value)
    if not text:
        return None

    match = _DMY_SLASH.match(text)
    if match:
        parsed = _build_date(match.group(3), match.group(2), match.group(1))
        if parsed:
            return parsed
    match = _YMD_DASH.match(text)
    if match:
        parsed = _build_date(match.group(1), match.group(2), match.group(3))
        if parsed:
            return parsed
    match = _DMY_DASH.match(text)
    if match:
        parsed = _build_date(match.group(3), match.group(2), match.group(1))
        if parsed:
            return parsed

    try:
        return date_parser.parse(text, dayfirst=True, default=_FALLBACK_DEFAULT).date()
    except (ValueError, OverflowError):
        return None


def parse_int(value: str | None) -> int | None:
    match = _LEADING_INT.match(repair_text(value))
    if not match:
        return None
    return int(match.group(1))


def normalize_row(fields: Sequence[str], row_number: int) -> ProcessedUserData:
    """Build ``ProcessedUserData`` from one positional Sage record."""

    row = coerce_sage_row(fields)
    first_surname, second_surname = split_surnames(row[SageColumn.SURNAMES])
    company_name = _optional(row[SageColumn.COMPANY_NAME])

    return ProcessedUserData(
        row_number=row_number,
        raw_row=row,
        dni=_optional(row[SageColumn.DNI]),
        name=_optional(row[SageColumn.NAME]),
        first_surname=first_surname,
        second_surname=second_surname,
        email=repair_email(row[SageColumn.EMAIL]),
        birth_date=parse_date(row[SageColumn.BIRTH_DATE]),
        professional_category=_optional(row[SageColumn.CATEGORY]),
        salary_group=parse_int(row[SageColumn.TARIFF]),
        nss=decode_scientific_integer(row[SageColumn.NSS]),
        import_id=_optional(row[SageColumn.EMPLOYEE_CODE]),
        company_name=company_name,
        company_cif=_optional(row[SageColumn.COMPANY_CIF]),
        company_import_id=company_name,
        center_name=_optional(row[SageColumn.CENTER_NAME]),
        center_code=_optional(row[SageColumn.CENTER_CODE]),
        employer_number=_optional(row[SageColumn.EMPLOYER_NUMBER]),
        start_date=parse_date(row[SageColumn.START_DATE]),
        end_date=parse_date(row[SageColumn.END_DATE]),
    )
