"""
Importer contract definitions.
"""

from .sage import (
    SAGE_COLUMN_COUNT,
    SAGE_DELIMITER,
    SAGE_HEADER_MARKER,
    SAGE_IMPORT_SOURCE,
    SAGE_MIN_FIELDS,
    SageColumn,
    SageRow,
    coerce_sage_row,
)

__all__ = [
    "SAGE_COLUMN_COUNT",
    "SAGE_DELIMITER",
    "SAGE_HEADER_MARKER",
    "SAGE_IMPORT_SOURCE",
    "SAGE_MIN_FIELDS",
    "SageColumn",
    "SageRow",
    "coerce_sage_row",
]
