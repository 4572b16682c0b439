"""
Per-row integration: organisation, identity, assignment and main center.

``RowProcessor`` never commits; the caller owns the unit of work so a failure
anywhere in a row can be rolled back as a whole.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.orm import Session

from enrollment_app.importer.contracts import SAGE_IMPORT_SOURCE
from enrollment_app.models import Center, DecisionAction, ImportDecision, User, UserCenter, db

from .decisions import DecisionRepository
from .entities import UNKNOWN_CENTER_NAME, EntityResolver, find_or_create
from .identity import (
    IdentityCandidate,
    IdentityMatcher,
    MatchingSettings,
    apply_updates,
    build_user,
    compute_gap_fill,
)
from .normalizer import ProcessedUserData
from .relationships import AssignmentChange, RelationshipUpserter

NAME_FIELDS = ("name", "first_surname", "second_surname")


class RowOutcome(str, enum.Enum):
    CREATED = "created"
    UPDATED = "updated"
    LINKED = "linked"
    SKIPPED = "skipped"
    DECISION_REQUIRED = "decision_required"
    ERROR = "error"


@dataclass
class RowResult:
    """What happened to one row, plus the side-effects the job counts."""

    outcome: RowOutcome
    row_number: int | None = None
    user_id: int | None = None
    decision_id: int | None = None
    new_company: bool = False
    new_center: bool = False
    new_association: bool = False
    message: str | None = None


@dataclass
class IdentityResolution:
    outcome: RowOutcome
    user: User | None = None
    decision: ImportDecision | None = None


@dataclass
class LinkResult:
    """Before-state of a link so a human resolution can be reverted."""

    user: User
    assignment: AssignmentChange
    main_center: UserCenter | None
    previous_values: dict[str, Any] = field(default_factory=dict)
    new_company: bool = False
    new_center: bool = False


class RowProcessor:
    """Integrate one normalized row into the canonical model."""

    def __init__(
        self,
        session: Session | None = None,
        *,
        settings: MatchingSettings | None = None,
        decisions: DecisionRepository | None = None,
        job_id: str | None = None,
        import_source: str = SAGE_IMPORT_SOURCE,
        unknown_center_name: str = UNKNOWN_CENTER_NAME,
        logger: logging.Logger | None = None,
    ) -> None:
        self.session = session or db.session
        self.logger = logger or logging.getLogger(__name__)
        self.job_id = job_id
        self.import_source = import_source
        self.entities = EntityResolver(self.session, unknown_center_name=unknown_center_name, logger=self.logger)
        self.matcher = IdentityMatcher(self.session, settings=settings, logger=self.logger)
        self.relationships = RelationshipUpserter(self.session, logger=self.logger)
        self.decisions = decisions or DecisionRepository(self.session)

    def process(self, data: ProcessedUserData) -> RowResult:
        company, new_company = self.entities.find_or_create_company(data)
        center, new_center = self.entities.find_or_create_center(data, company)
        resolution = self.resolve_identity(data)

        result = RowResult(
            outcome=resolution.outcome,
            row_number=data.row_number,
            new_company=new_company,
            new_center=new_center,
            decision_id=resolution.decision.id if resolution.decision is not None else None,
        )
        if resolution.user is not None:
            change, _ = self.attach(resolution.user, center, data)
            result.user_id = resolution.user.id
            result.new_association = change.created
        return result

    def resolve_identity(self, data: ProcessedUserData) -> IdentityResolution:
        existing = self.matcher.find_exact(data)
        if existing is not None:
            return IdentityResolution(outcome=self._gap_fill(existing, data), user=existing)

        candidate = self.matcher.find_candidate(data)
        if candidate is None:
            user, created = self.create_user(data)
            if created:
                return IdentityResolution(outcome=RowOutcome.CREATED, user=user)
            return IdentityResolution(outcome=self._gap_fill(user, data), user=user)

        return self._resolve_ambiguous(data, candidate)

    def create_user(self, data: ProcessedUserData) -> tuple[User, bool]:
        """Insert a user for ``data``; a concurrent insert of the same DNI is reused."""

        if not data.dni:
            user = build_user(data)
            self.session.add(user)
            self.session.flush()
            return user, True

        user, created = find_or_create(
            self.session,
            lambda: self.session.query(User).filter_by(dni=data.dni).first(),
            lambda: build_user(data),
        )
        if created:
            self.logger.info(
                "Created user for row %s",
                data.row_number,
                extra={"importer_row_number": data.row_number, "importer_user_id": user.id},
            )
        return user, created

    def attach(self, user: User, center: Center, data: ProcessedUserData) -> tuple[AssignmentChange, UserCenter | None]:
        change = self.relationships.upsert(user, center, data)
        main_center = self.relationships.ensure_main_center(user.id)
        return change, main_center

    def create_path(self, data: ProcessedUserData) -> RowResult:
        """Run the full create flow for a row regardless of existing matches."""

        company, new_company = self.entities.find_or_create_company(data)
        center, new_center = self.entities.find_or_create_center(data, company)
        user, created = self.create_user(data)
        outcome = RowOutcome.CREATED if created else self._gap_fill(user, data)
        change, _ = self.attach(user, center, data)
        return RowResult(
            outcome=outcome,
            row_number=data.row_number,
            user_id=user.id,
            new_company=new_company,
            new_center=new_center,
            new_association=change.created,
        )

    def link_path(self, user: User, data: ProcessedUserData, *, overwrite_names: bool = False) -> LinkResult:
        """
        Link ``user`` to the row's center and gap-fill its fields.

        With ``overwrite_names`` the CSV spelling of the name and surnames also
        replaces the stored one.
        """

        company, new_company = self.entities.find_or_create_company(data)
        center, new_center = self.entities.find_or_create_center(data, company)

        updates = compute_gap_fill(user, data)
        if overwrite_names:
            for field_name in NAME_FIELDS:
                incoming = getattr(data, field_name)
                if incoming and incoming != getattr(user, field_name):
                    updates[field_name] = incoming
        previous_values = {field_name: getattr(user, field_name) for field_name in updates}
        apply_updates(user, updates)

        change, main_center = self.attach(user, center, data)
        return LinkResult(
            user=user,
            assignment=change,
            main_center=main_center,
            previous_values=previous_values,
            new_company=new_company,
            new_center=new_center,
        )

    def _gap_fill(self, user: User, data: ProcessedUserData) -> RowOutcome:
        updates = compute_gap_fill(user, data)
        if not updates:
            return RowOutcome.LINKED
        apply_updates(user, updates)
        return RowOutcome.UPDATED

    def _resolve_ambiguous(self, data: ProcessedUserData, candidate: IdentityCandidate) -> IdentityResolution:
        processed = self.decisions.find_processed_for(
            data.dni,
            candidate.user.id,
            name=data.name,
            first_surname=data.first_surname,
        )
        if processed is not None:
            return self._replay(data, processed, candidate)

        pending = self.decisions.find_pending_for(data.dni, candidate.user.id)
        if pending is None:
            pending, created = self.decisions.insert(
                data,
                candidate,
                job_id=self.job_id,
                import_source=self.import_source,
            )
            if created:
                self.logger.info(
                    "Row %s requires a decision against user %s",
                    data.row_number,
                    candidate.user.id,
                    extra={
                        "importer_job_id": self.job_id,
                        "importer_row_number": data.row_number,
                        "importer_decision_id": pending.id,
                        "importer_similarity": candidate.score,
                        "importer_match_kind": candidate.kind.value,
                    },
                )
        return IdentityResolution(outcome=RowOutcome.DECISION_REQUIRED, decision=pending)

    def _replay(
        self,
        data: ProcessedUserData,
        decision: ImportDecision,
        candidate: IdentityCandidate,
    ) -> IdentityResolution:
        action = decision.decision_action
        self.logger.debug(
            "Replaying decision %s (%s) for row %s",
            decision.id,
            action.value if action else None,
            data.row_number,
            extra={"importer_decision_id": decision.id, "importer_row_number": data.row_number},
        )
        if action == DecisionAction.SKIP:
            return IdentityResolution(outcome=RowOutcome.SKIPPED, decision=decision)
        if action == DecisionAction.CREATE_NEW:
            user, created = self.create_user(data)
            outcome = RowOutcome.CREATED if created else self._gap_fill(user, data)
            return IdentityResolution(outcome=outcome, user=user, decision=decision)

        user = candidate.user
        if decision.selected_user_id and decision.selected_user_id != user.id:
            user = self.session.get(User, decision.selected_user_id) or user
        return IdentityResolution(outcome=self._gap_fill(user, data), user=user, decision=decision)
