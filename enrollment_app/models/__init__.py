# enrollment_app/models/__init__.py
"""
Database models package
"""

from .base import BaseModel, db
from .enums import DocumentType, Gender
from .importer import (
    DecisionAction,
    DecisionMatchKind,
    FailedImportRecord,
    ImportDecision,
    ImportJob,
    ImportJobStatus,
)
from .organization import Center, Company, UserCenter
from .user import GAP_FILL_FIELDS, User

__all__ = [
    "db",
    "BaseModel",
    "User",
    "GAP_FILL_FIELDS",
    "Company",
    "Center",
    "UserCenter",
    "Gender",
    "DocumentType",
    # Importer models
    "ImportJob",
    "ImportJobStatus",
    "ImportDecision",
    "DecisionAction",
    "DecisionMatchKind",
    "FailedImportRecord",
]
