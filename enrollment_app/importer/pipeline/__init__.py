"""
Sage import pipeline: normalization, entity resolution, identity matching,
decisions, relationships, the failure vault and job orchestration.
"""

from .decisions import DecisionRepository, DecisionService, ResolutionResult
from .entities import UNKNOWN_CENTER_NAME, EntityResolver, center_import_key, find_or_create
from .errors import (
    DecisionActionError,
    DecisionError,
    DecisionNotFoundError,
    DecisionResolutionError,
    DecisionRevertError,
    DecisionStateError,
    ImportJobError,
    ImportJobNotFoundError,
    IncompleteRowError,
    IntegrationError,
    InvalidJobTransitionError,
)
from .failure_vault import FailedImportRepository, FailedImportStats, FailureVault
from .identity import IdentityCandidate, IdentityMatcher, MatchingSettings, SimilarityMatch
from .job_service import (
    INTERRUPTED_MESSAGE,
    PROCESS_TASK_NAME,
    ImportJobService,
    ImportSummary,
    JobSettings,
    batch_size_for,
    generate_job_id,
)
from .normalizer import ProcessedUserData, normalize_row
from .processor import RowOutcome, RowProcessor, RowResult
from .relationships import AssignmentChange, RelationshipUpserter

__all__ = [
    "AssignmentChange",
    "DecisionActionError",
    "DecisionError",
    "DecisionNotFoundError",
    "DecisionRepository",
    "DecisionResolutionError",
    "DecisionRevertError",
    "DecisionService",
    "DecisionStateError",
    "EntityResolver",
    "FailedImportRepository",
    "FailedImportStats",
    "FailureVault",
    "INTERRUPTED_MESSAGE",
    "IdentityCandidate",
    "IdentityMatcher",
    "ImportJobError",
    "ImportJobNotFoundError",
    "ImportJobService",
    "ImportSummary",
    "IncompleteRowError",
    "IntegrationError",
    "InvalidJobTransitionError",
    "JobSettings",
    "MatchingSettings",
    "PROCESS_TASK_NAME",
    "ProcessedUserData",
    "RelationshipUpserter",
    "ResolutionResult",
    "RowOutcome",
    "RowProcessor",
    "RowResult",
    "SimilarityMatch",
    "UNKNOWN_CENTER_NAME",
    "batch_size_for",
    "center_import_key",
    "find_or_create",
    "generate_job_id",
    "normalize_row",
]
