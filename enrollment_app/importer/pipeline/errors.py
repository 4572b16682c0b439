"""Exception types raised by the Sage import pipeline."""

from __future__ import annotations


class IntegrationError(Exception):
    """A well-formed row could not be written into the canonical model."""


class IncompleteRowError(IntegrationError):
    """A row lacks a field required to resolve its organisational entities."""

    def __init__(self, field_name: str, row_number: int | None = None) -> None:
        location = f" (row {row_number})" if row_number is not None else ""
        super().__init__(f"Missing required field '{field_name}'{location}.")
        self.field_name = field_name
        self.row_number = row_number


class DecisionError(Exception):
    """Base class for failures resolving or reverting an import decision."""


class DecisionNotFoundError(DecisionError):
    def __init__(self, decision_id: int) -> None:
        super().__init__(f"Import decision {decision_id} not found.")
        self.decision_id = decision_id


class DecisionStateError(DecisionError):
    """The decision is not in a state that allows the requested operation."""


class DecisionRevertError(DecisionStateError):
    """The decision's action cannot be undone from the stored record."""


class DecisionActionError(DecisionError):
    """An unknown or unusable action was requested."""


class DecisionResolutionError(DecisionError):
    """Applying a resolution failed; no state was changed."""


class ImportJobError(Exception):
    """Base class for job lifecycle failures."""


class ImportJobNotFoundError(ImportJobError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Import job {job_id} not found.")
        self.job_id = job_id


class InvalidJobTransitionError(ImportJobError):
    def __init__(self, job_id: str, current: str, requested: str) -> None:
        super().__init__(f"Import job {job_id} cannot move from {current} to {requested}.")
        self.job_id = job_id
        self.current = current
        self.requested = requested
