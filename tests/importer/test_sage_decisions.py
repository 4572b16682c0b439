from __future__ import annotations

from decimal import Decimal

import pytest

from enrollment_app.importer.pipeline import (
    DecisionActionError,
    DecisionNotFoundError,
    DecisionRevertError,
    DecisionStateError,
    RowOutcome,
)
from enrollment_app.importer.pipeline.decisions import REVERT_MARKER
from enrollment_app.models import DecisionAction, ImportDecision, User, UserCenter, db


@pytest.fixture
def existing_user(user_factory):
    return user_factory(dni="11111111H", email=None, nss=None)


@pytest.fixture
def ambiguous_row(processed):
    def _build(**overrides):
        values = {"dni": "87654321X", "name": "Juan", "surnames": "Pérez Gomez", "nss": ""}
        values.update(overrides)
        return processed(**values)

    return _build


@pytest.fixture
def pending_decision(app, existing_user, ambiguous_row, row_processor):
    result = row_processor.process(ambiguous_row())
    db.session.commit()
    assert result.outcome == RowOutcome.DECISION_REQUIRED
    return db.session.get(ImportDecision, result.decision_id)


def test_ambiguous_row_creates_single_pending_decision(pending_decision, existing_user, ambiguous_row, row_processor):
    again = row_processor.process(ambiguous_row(row_number=9))
    db.session.commit()

    assert again.outcome == RowOutcome.DECISION_REQUIRED
    assert again.decision_id == pending_decision.id
    assert db.session.query(ImportDecision).count() == 1
    assert pending_decision.candidate_user_id == existing_user.id
    assert pending_decision.similarity_score == Decimal("0.9375")
    assert pending_decision.csv_row_data[4] == "87654321X"
    assert db.session.query(User).count() == 1


def test_resolve_create_new_builds_user_from_stored_row(pending_decision, decision_service):
    result = decision_service.resolve(pending_decision.id, "create_new", notes="different person")

    created = db.session.get(User, result.user_id)
    decision = db.session.get(ImportDecision, pending_decision.id)
    assert created.dni == "87654321X"
    assert created.first_surname == "Pérez"
    assert decision.processed is True
    assert decision.decision_action == DecisionAction.CREATE_NEW
    assert decision.resolved_at is not None
    assignments = db.session.query(UserCenter).filter_by(user_id=created.id).all()
    assert len(assignments) == 1
    assert assignments[0].is_main_center is True


def test_create_new_cannot_be_reverted(pending_decision, decision_service):
    decision_service.resolve(pending_decision.id, DecisionAction.CREATE_NEW)

    with pytest.raises(DecisionRevertError):
        decision_service.revert(pending_decision.id, "mistake")


def test_link_then_revert_restores_before_state(pending_decision, decision_service, existing_user):
    result = decision_service.resolve(pending_decision.id, "link")

    user = db.session.get(User, existing_user.id)
    assert result.user_id == existing_user.id
    assert user.email == "ana.lopez@example.com"
    assert db.session.query(UserCenter).filter_by(user_id=user.id, is_main_center=True).count() == 1
    decision = db.session.get(ImportDecision, pending_decision.id)
    assert decision.undo_payload["user_fields"]["email"] is None

    decision_service.revert(pending_decision.id, "wrong person")

    user = db.session.get(User, existing_user.id)
    decision = db.session.get(ImportDecision, pending_decision.id)
    assert user.email is None
    assert user.birth_date is None
    assert db.session.query(UserCenter).filter_by(user_id=user.id).count() == 0
    assert decision.processed is False
    assert decision.decision_action is None
    assert decision.undo_payload is None
    assert f"{REVERT_MARKER} wrong person" in decision.notes


def test_update_and_link_overwrites_names(pending_decision, decision_service, existing_user):
    decision_service.resolve(pending_decision.id, "update_and_link")

    user = db.session.get(User, existing_user.id)
    assert user.first_surname == "Pérez"
    assert user.dni == "11111111H"


def test_skip_resolution_is_replayed_and_revertible(
    pending_decision, decision_service, ambiguous_row, row_processor
):
    decision_service.resolve(pending_decision.id, "skip")

    replay = row_processor.process(ambiguous_row(row_number=12))
    db.session.commit()
    assert replay.outcome == RowOutcome.SKIPPED
    assert db.session.query(ImportDecision).count() == 1

    decision_service.revert(pending_decision.id, "reconsider")
    assert decision_service.list_pending()[0].id == pending_decision.id


def test_link_resolution_is_replayed_on_reimport(pending_decision, decision_service, existing_user, ambiguous_row, row_processor):
    decision_service.resolve(pending_decision.id, "link")

    replay = row_processor.process(ambiguous_row(row_number=14))
    db.session.commit()

    assert replay.outcome == RowOutcome.LINKED
    assert replay.user_id == existing_user.id
    assert db.session.query(User).count() == 1


def test_resolve_rejects_invalid_requests(pending_decision, decision_service):
    with pytest.raises(DecisionNotFoundError):
        decision_service.resolve(999, "skip")
    with pytest.raises(DecisionActionError):
        decision_service.resolve(pending_decision.id, "merge")

    decision_service.resolve(pending_decision.id, "skip")
    with pytest.raises(DecisionStateError):
        decision_service.resolve(pending_decision.id, "link")


def test_revert_requires_processed_decision(pending_decision, decision_service):
    with pytest.raises(DecisionRevertError):
        decision_service.revert(pending_decision.id, "nothing to undo")


def test_link_to_missing_user_leaves_decision_pending(pending_decision, decision_service):
    with pytest.raises(DecisionActionError):
        decision_service.resolve(pending_decision.id, "link", selected_user_id=4242)

    decision = db.session.get(ImportDecision, pending_decision.id)
    assert decision.processed is False


def test_list_processed_filters(pending_decision, decision_service):
    decision_service.resolve(pending_decision.id, "skip")

    assert [d.id for d in decision_service.list_processed(action="skip")] == [pending_decision.id]
    assert decision_service.list_processed(action="link") == []
    assert [d.id for d in decision_service.list_processed(search="8765")] == [pending_decision.id]
    assert decision_service.list_processed(search="nobody") == []
