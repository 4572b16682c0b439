from __future__ import annotations

import json

import pytest

from enrollment_app.models import DecisionAction, ImportDecision, ImportJobStatus, User, db


@pytest.fixture
def csv_file(tmp_path, sage_csv, sage_row):
    path = tmp_path / "export.csv"
    path.write_bytes(sage_csv(sage_row(), sage_row(dni="22222222J", name="Eva", surnames="Diaz Mora")))
    return path


@pytest.fixture
def pending_decision_id(app, user_factory, processed, row_processor):
    user_factory(dni="11111111H")
    result = row_processor.process(processed(dni="87654321X", name="Juan", surnames="Pérez Gomez", nss=""))
    decision_id = result.decision_id
    db.session.commit()
    return decision_id


def test_submit_runs_job_and_prints_id(runner, csv_file, job_service):
    result = runner.invoke(args=["importer", "sage", "submit", str(csv_file)])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["status"] == "completed"
    assert job_service.get_status(payload["job_id"])["result_summary"]["created"] == 2
    assert db.session.query(User).count() == 2


def test_status_and_jobs_listing(runner, csv_file, job_service):
    job_id = job_service.submit(csv_file.read_bytes(), "export.csv", dispatch=False)

    status = runner.invoke(args=["importer", "sage", "status", job_id])
    listing = runner.invoke(args=["importer", "sage", "jobs", "--active"])

    assert status.exit_code == 0, status.output
    assert json.loads(status.output)["status"] == "pending"
    assert listing.exit_code == 0, listing.output
    assert job_id in listing.output
    assert "export.csv" in listing.output


def test_status_of_unknown_job_fails(runner):
    result = runner.invoke(args=["importer", "sage", "status", "sage_missing"])

    assert result.exit_code != 0
    assert "not found" in result.output


def test_run_processes_pending_job_inline(runner, csv_file, job_service):
    job_id = job_service.submit(csv_file.read_bytes(), "export.csv", dispatch=False)

    result = runner.invoke(args=["importer", "sage", "run", job_id])

    assert result.exit_code == 0, result.output
    assert json.loads(result.output)["created"] == 2
    assert job_service.get_job(job_id).status == ImportJobStatus.COMPLETED


def test_cancel_command(runner, csv_file, job_service):
    job_id = job_service.submit(csv_file.read_bytes(), "export.csv", dispatch=False)

    first = runner.invoke(args=["importer", "sage", "cancel", job_id])
    second = runner.invoke(args=["importer", "sage", "cancel", job_id])

    assert first.exit_code == 0, first.output
    assert "cancelled" in first.output
    assert second.exit_code != 0
    assert "cannot be cancelled" in second.output
    assert job_service.get_job(job_id).status == ImportJobStatus.CANCELLED


def test_recover_and_cleanup_commands(runner):
    recover = runner.invoke(args=["importer", "sage", "recover", "--stale-minutes", "5"])
    cleanup = runner.invoke(args=["importer", "sage", "cleanup", "--days", "10"])

    assert recover.exit_code == 0, recover.output
    assert "Marked failed 0 interrupted job(s)." in recover.output
    assert cleanup.exit_code == 0, cleanup.output
    assert "Deleted 0 import job(s)." in cleanup.output


def test_decision_commands_round_trip(runner, pending_decision_id):
    pending = runner.invoke(args=["importer", "decisions", "pending"])
    assert pending.exit_code == 0, pending.output
    listed = json.loads(pending.output)
    assert [item["id"] for item in listed] == [pending_decision_id]
    assert listed[0]["similarity_score"] == pytest.approx(0.9375)

    resolved = runner.invoke(
        args=["importer", "decisions", "resolve", str(pending_decision_id), "skip", "--notes", "duplicate export"]
    )
    assert resolved.exit_code == 0, resolved.output
    assert json.loads(resolved.output)["action"] == "skip"

    processed = runner.invoke(args=["importer", "decisions", "processed", "--action", "skip"])
    assert [item["id"] for item in json.loads(processed.output)] == [pending_decision_id]

    reverted = runner.invoke(
        args=["importer", "decisions", "revert", str(pending_decision_id), "--reason", "second look"]
    )
    assert reverted.exit_code == 0, reverted.output

    decision = db.session.get(ImportDecision, pending_decision_id)
    assert decision.processed is False
    assert "second look" in decision.notes


def test_resolve_errors_are_reported(runner, pending_decision_id):
    missing = runner.invoke(args=["importer", "decisions", "resolve", "999", "skip"])
    not_processed = runner.invoke(args=["importer", "decisions", "revert", str(pending_decision_id), "--reason", "x"])

    assert missing.exit_code != 0
    assert "not found" in missing.output
    assert not_processed.exit_code != 0
    assert "nothing to revert" in not_processed.output


def test_resolve_create_new_from_cli(runner, pending_decision_id):
    result = runner.invoke(args=["importer", "decisions", "resolve", str(pending_decision_id), "create_new"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["action"] == DecisionAction.CREATE_NEW.value
    assert db.session.get(User, payload["user_id"]).dni == "87654321X"


def test_failed_commands(runner, failure_vault, processed):
    data = processed()
    failure_vault.record(data, data.raw_row, "IncompleteRowError: Missing required field 'company_cif'", job_id=None)

    listing = runner.invoke(args=["importer", "failed", "list", "--limit", "10"])
    stats = runner.invoke(args=["importer", "failed", "stats"])

    assert listing.exit_code == 0, listing.output
    payload = json.loads(listing.output)
    assert payload["total"] == 1
    assert payload["records"][0]["dni"] == "12345678Z"
    assert json.loads(stats.output)["unique_errors"] == 1
