"""Positional column contract for the Sage payroll CSV export.

The export has no header row of its own; columns are identified purely by
position. ``SageRow`` is the fixed-width tuple every parsed record is padded
or truncated to, and ``SageColumn`` is the single source of truth for which
index holds which field.
"""

from __future__ import annotations

import enum
from typing import Tuple

SageRow = Tuple[str, ...]

SAGE_DELIMITER = ";"
SAGE_COLUMN_COUNT = 20
SAGE_MIN_FIELDS = 15
SAGE_HEADER_MARKER = "empleado"
SAGE_IMPORT_SOURCE = "sage"


class SageColumn(enum.IntEnum):
    """Index of each field within a ``SageRow``."""

    EMPLOYER_CODE = 0
    CENTER_CODE = 1
    CENTER_NAME = 2
    EMPLOYEE_CODE = 3
    DNI = 4
    NAME = 5
    SURNAMES = 6
    START_DATE = 7
    END_DATE = 8
    CATEGORY = 9
    EMAIL = 10
    BIRTH_DATE = 11
    PAY_GROUP = 12
    MOBILITY = 13
    NSS = 14
    SEX = 15
    TARIFF = 16
    COMPANY_NAME = 17
    COMPANY_CIF = 18
    EMPLOYER_NUMBER = 19


def coerce_sage_row(fields) -> SageRow:
    """Return ``fields`` as a ``SageRow``, padding with blanks or truncating."""

    values = tuple("" if value is None else str(value) for value in fields)
    if len(values) >= SAGE_COLUMN_COUNT:
        return values[:SAGE_COLUMN_COUNT]
    return values + ("",) * (SAGE_COLUMN_COUNT - len(values))
