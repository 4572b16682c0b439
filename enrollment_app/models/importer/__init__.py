"""
Importer-specific models.
"""

from .schema import (
    TERMINAL_JOB_STATUSES,
    DecisionAction,
    DecisionMatchKind,
    FailedImportRecord,
    ImportDecision,
    ImportJob,
    ImportJobStatus,
)

__all__ = [
    "TERMINAL_JOB_STATUSES",
    "DecisionAction",
    "DecisionMatchKind",
    "FailedImportRecord",
    "ImportDecision",
    "ImportJob",
    "ImportJobStatus",
]
