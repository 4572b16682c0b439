"""
Importer source adapters.
"""

from .sage_csv import (
    MAX_PARSE_ERRORS,
    CSVAdapterError,
    CSVParseAbortedError,
    CSVRowError,
    SageCSVAdapter,
    SageCSVRecord,
    SageCSVStatistics,
    decode_payload,
)

__all__ = [
    "MAX_PARSE_ERRORS",
    "CSVAdapterError",
    "CSVParseAbortedError",
    "CSVRowError",
    "SageCSVAdapter",
    "SageCSVRecord",
    "SageCSVStatistics",
    "decode_payload",
]
