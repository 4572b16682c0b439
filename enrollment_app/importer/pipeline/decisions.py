"""
Pending identity decisions and their human resolution.

A decision pairs a CSV row with the existing user the matcher proposed. Once
resolved, the same pair is replayed automatically on later imports; see
``RowProcessor`` for the replay path.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Mapping

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from enrollment_app.importer.contracts import SAGE_IMPORT_SOURCE
from enrollment_app.importer.metrics import record_decision_resolution
from enrollment_app.models import DecisionAction, ImportDecision, User, UserCenter, db
from enrollment_app.models.base import utc_now

from .errors import (
    DecisionActionError,
    DecisionError,
    DecisionNotFoundError,
    DecisionResolutionError,
    DecisionRevertError,
    DecisionStateError,
)
from .normalizer import ProcessedUserData, normalize_row

if TYPE_CHECKING:
    from .identity import IdentityCandidate
    from .processor import RowProcessor

REVERT_MARKER = "[REVERTED]"
_DATE_FIELDS = frozenset({"birth_date"})


def coerce_action(value: DecisionAction | str) -> DecisionAction:
    if isinstance(value, DecisionAction):
        return value
    try:
        return DecisionAction(str(value).strip().lower())
    except ValueError as exc:
        allowed = ", ".join(action.value for action in DecisionAction)
        raise DecisionActionError(f"Unknown decision action '{value}'. Expected one of: {allowed}.") from exc


def serialize_value(value: Any) -> Any:
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return value


def _deserialize_field(field_name: str, value: Any) -> Any:
    if value is not None and field_name in _DATE_FIELDS:
        return date.fromisoformat(value)
    return value


def _deserialize_date(value: str | None) -> date | None:
    return date.fromisoformat(value) if value else None


class DecisionRepository:
    """Storage operations for ``ImportDecision`` rows."""

    def __init__(self, session: Session | None = None) -> None:
        self.session = session or db.session

    def get(self, decision_id: int) -> ImportDecision | None:
        return self.session.get(ImportDecision, decision_id)

    def find_processed_for(
        self,
        dni: str | None,
        user_id: int,
        *,
        name: str | None = None,
        first_surname: str | None = None,
    ) -> ImportDecision | None:
        """
        Return the latest resolved decision for the exact (CSV DNI, candidate) pair.

        Rows without a DNI only replay a decision taken for the same CSV name.
        """

        query = self.session.query(ImportDecision).filter(
            ImportDecision.processed.is_(True),
            ImportDecision.candidate_user_id == user_id,
        )
        if dni:
            query = query.filter(ImportDecision.dni_csv == dni)
        else:
            query = query.filter(
                ImportDecision.dni_csv.is_(None),
                ImportDecision.name_csv == name,
                ImportDecision.first_surname_csv == first_surname,
            )
        return query.order_by(ImportDecision.resolved_at.desc(), ImportDecision.id.desc()).first()

    def find_pending_for(self, dni: str | None, user_id: int) -> ImportDecision | None:
        """Return an unprocessed decision for this CSV DNI or this candidate."""

        criteria = [ImportDecision.candidate_user_id == user_id]
        if dni:
            criteria.append(ImportDecision.dni_csv == dni)
        return (
            self.session.query(ImportDecision)
            .filter(ImportDecision.processed.is_(False), or_(*criteria))
            .order_by(ImportDecision.id)
            .first()
        )

    def insert(
        self,
        data: ProcessedUserData,
        candidate: "IdentityCandidate",
        *,
        job_id: str | None = None,
        import_source: str = SAGE_IMPORT_SOURCE,
    ) -> tuple[ImportDecision, bool]:
        """
        Insert a pending decision, or return the one a concurrent writer stored.

        Returns ``(decision, created)``.
        """

        user = candidate.user
        decision = ImportDecision(
            import_source=import_source,
            job_id=job_id,
            row_number=data.row_number,
            dni_csv=data.dni,
            name_csv=data.name,
            first_surname_csv=data.first_surname,
            second_surname_csv=data.second_surname,
            name_db=user.name,
            first_surname_db=user.first_surname,
            second_surname_db=user.second_surname,
            dni_db=user.dni,
            email_db=user.email,
            nss_db=user.nss,
            similarity_score=Decimal(str(round(candidate.score, 4))),
            match_kind=candidate.kind,
            csv_row_data=list(data.raw_row),
            candidate_user_id=user.id,
            selected_user_id=user.id,
            processed=False,
        )
        try:
            with self.session.begin_nested():
                self.session.add(decision)
        except IntegrityError:
            existing = self.find_pending_for(data.dni, user.id)
            if existing is None:
                raise
            return existing, False
        return decision, True

    def mark_processed(
        self,
        decision: ImportDecision,
        action: DecisionAction,
        *,
        selected_user_id: int | None,
        notes: str | None = None,
        undo_payload: dict[str, Any] | None = None,
    ) -> ImportDecision:
        decision.processed = True
        decision.decision_action = action
        decision.selected_user_id = selected_user_id
        decision.notes = notes
        decision.undo_payload = undo_payload
        decision.resolved_at = utc_now()
        self.session.flush()
        return decision

    def revert(self, decision: ImportDecision, reason: str) -> ImportDecision:
        decision.processed = False
        decision.decision_action = None
        decision.resolved_at = None
        decision.undo_payload = None
        decision.selected_user_id = decision.candidate_user_id
        decision.notes = f"{decision.notes or ''}\n{REVERT_MARKER} {reason}"
        self.session.flush()
        return decision

    def list_pending(self, source: str = SAGE_IMPORT_SOURCE, *, limit: int | None = None) -> list[ImportDecision]:
        query = (
            self.session.query(ImportDecision)
            .filter(ImportDecision.import_source == source, ImportDecision.processed.is_(False))
            .order_by(ImportDecision.similarity_score.desc(), ImportDecision.id)
        )
        if limit:
            query = query.limit(limit)
        return query.all()

    def list_processed(
        self,
        *,
        action: DecisionAction | str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        search: str | None = None,
        limit: int | None = None,
    ) -> list[ImportDecision]:
        query = self.session.query(ImportDecision).filter(ImportDecision.processed.is_(True))
        if action:
            query = query.filter(ImportDecision.decision_action == coerce_action(action))
        if start is not None:
            query = query.filter(ImportDecision.resolved_at >= start)
        if end is not None:
            query = query.filter(ImportDecision.resolved_at <= end)
        if search and search.strip():
            pattern = f"%{search.strip()}%"
            query = query.filter(
                or_(
                    ImportDecision.dni_csv.ilike(pattern),
                    ImportDecision.name_csv.ilike(pattern),
                    ImportDecision.first_surname_csv.ilike(pattern),
                    ImportDecision.second_surname_csv.ilike(pattern),
                )
            )
        query = query.order_by(ImportDecision.resolved_at.desc(), ImportDecision.id.desc())
        if limit:
            query = query.limit(limit)
        return query.all()


@dataclass(frozen=True)
class ResolutionResult:
    decision_id: int
    action: DecisionAction
    user_id: int | None


class DecisionService:
    """Apply and revert human resolutions as single units of work."""

    def __init__(
        self,
        session: Session | None = None,
        *,
        repository: DecisionRepository | None = None,
        processor: "RowProcessor" | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        from .processor import RowProcessor

        self.session = session or db.session
        self.logger = logger or logging.getLogger(__name__)
        self.repository = repository or DecisionRepository(self.session)
        self.processor = processor or RowProcessor(self.session, decisions=self.repository, logger=self.logger)

    def resolve(
        self,
        decision_id: int,
        action: DecisionAction | str,
        selected_user_id: int | None = None,
        notes: str | None = None,
    ) -> ResolutionResult:
        decision = self._get(decision_id)
        if decision.processed:
            raise DecisionStateError(f"Import decision {decision_id} has already been processed.")
        resolved_action = coerce_action(action)

        try:
            user_id, undo_payload = self._apply(decision, resolved_action, selected_user_id)
            self.repository.mark_processed(
                decision,
                resolved_action,
                selected_user_id=user_id,
                notes=notes,
                undo_payload=undo_payload,
            )
            self.session.commit()
        except DecisionError:
            self.session.rollback()
            raise
        except Exception as exc:
            self.session.rollback()
            self.logger.exception(
                "Failed to resolve import decision %s",
                decision_id,
                extra={"importer_decision_id": decision_id},
            )
            raise DecisionResolutionError(f"Could not resolve import decision {decision_id}: {exc}") from exc

        record_decision_resolution(resolved_action.value)
        self.logger.info(
            "Resolved import decision %s as %s",
            decision_id,
            resolved_action.value,
            extra={"importer_decision_id": decision_id, "importer_outcome": resolved_action.value},
        )
        return ResolutionResult(decision_id=decision_id, action=resolved_action, user_id=user_id)

    def revert(self, decision_id: int, reason: str) -> ImportDecision:
        decision = self._get(decision_id)
        if not decision.processed:
            raise DecisionRevertError(f"Import decision {decision_id} is not processed; nothing to revert.")
        action = decision.decision_action
        if action == DecisionAction.CREATE_NEW:
            raise DecisionRevertError(
                f"Import decision {decision_id} created a new user and cannot be reverted automatically."
            )
        if action in (DecisionAction.LINK, DecisionAction.UPDATE_AND_LINK) and not decision.undo_payload:
            raise DecisionRevertError(f"Import decision {decision_id} has no stored before-state to restore.")

        try:
            if decision.undo_payload:
                self._restore(decision.undo_payload)
            self.repository.revert(decision, reason)
            self.session.commit()
        except DecisionError:
            self.session.rollback()
            raise
        except Exception as exc:
            self.session.rollback()
            self.logger.exception(
                "Failed to revert import decision %s",
                decision_id,
                extra={"importer_decision_id": decision_id},
            )
            raise DecisionResolutionError(f"Could not revert import decision {decision_id}: {exc}") from exc

        record_decision_resolution(action.value if action else "unknown", operation="revert")
        self.logger.info(
            "Reverted import decision %s",
            decision_id,
            extra={"importer_decision_id": decision_id, "importer_outcome": "reverted"},
        )
        return decision

    def list_pending(self, source: str = SAGE_IMPORT_SOURCE, *, limit: int | None = None) -> list[ImportDecision]:
        return self.repository.list_pending(source, limit=limit)

    def list_processed(self, **filters: Any) -> list[ImportDecision]:
        return self.repository.list_processed(**filters)

    def _get(self, decision_id: int) -> ImportDecision:
        decision = self.repository.get(decision_id)
        if decision is None:
            raise DecisionNotFoundError(decision_id)
        return decision

    def _stored_row(self, decision: ImportDecision) -> ProcessedUserData:
        return normalize_row(decision.csv_row_data or [], decision.row_number or 0)

    def _apply(
        self,
        decision: ImportDecision,
        action: DecisionAction,
        selected_user_id: int | None,
    ) -> tuple[int | None, dict[str, Any] | None]:
        if action == DecisionAction.SKIP:
            return selected_user_id or decision.selected_user_id, None

        data = self._stored_row(decision)
        if action == DecisionAction.CREATE_NEW:
            result = self.processor.create_path(data)
            return result.user_id, None

        target_id = selected_user_id or decision.selected_user_id or decision.candidate_user_id
        user = self.session.get(User, target_id) if target_id is not None else None
        if user is None:
            raise DecisionActionError(f"User {target_id} selected for decision {decision.id} does not exist.")

        link = self.processor.link_path(user, data, overwrite_names=action == DecisionAction.UPDATE_AND_LINK)
        change = link.assignment
        undo_payload = {
            "user_id": user.id,
            "user_fields": {name: serialize_value(value) for name, value in link.previous_values.items()},
            "assignment": {
                "id": change.assignment.id,
                "created": change.created,
                "previous_start_date": serialize_value(change.previous_start_date),
                "previous_end_date": serialize_value(change.previous_end_date),
            },
            "main_center_assignment_id": link.main_center.id if link.main_center is not None else None,
        }
        return user.id, undo_payload

    def _restore(self, payload: Mapping[str, Any]) -> None:
        user = self.session.get(User, payload["user_id"])
        if user is None:
            raise DecisionRevertError(f"User {payload['user_id']} no longer exists.")
        for field_name, value in (payload.get("user_fields") or {}).items():
            setattr(user, field_name, _deserialize_field(field_name, value))

        main_id = payload.get("main_center_assignment_id")
        if main_id is not None:
            marked = self.session.get(UserCenter, main_id)
            if marked is not None:
                marked.is_main_center = False

        snapshot = payload.get("assignment") or {}
        assignment = self.session.get(UserCenter, snapshot["id"]) if snapshot.get("id") else None
        if assignment is not None:
            if snapshot.get("created"):
                self.session.delete(assignment)
            else:
                assignment.start_date = _deserialize_date(snapshot.get("previous_start_date"))
                assignment.end_date = _deserialize_date(snapshot.get("previous_end_date"))
        self.session.flush()
        self.processor.relationships.ensure_main_center(user.id)
