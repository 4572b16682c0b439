from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest
from sqlalchemy.exc import OperationalError

from enrollment_app.importer.adapters import CSVParseAbortedError
from enrollment_app.importer.pipeline import (
    INTERRUPTED_MESSAGE,
    EntityResolver,
    ImportJobNotFoundError,
    ImportJobService,
    InvalidJobTransitionError,
    JobSettings,
)
from enrollment_app.importer.pipeline import job_service as job_service_module
from enrollment_app.importer.pipeline.job_service import ImportSummary, batch_size_for, generate_job_id
from enrollment_app.importer.utils import UploadTooLargeError, persist_bytes
from enrollment_app.models import (
    Company,
    FailedImportRecord,
    ImportDecision,
    ImportJob,
    ImportJobStatus,
    User,
    UserCenter,
    db,
)
from enrollment_app.models.base import utc_now


def _ambiguous(sage_row, **overrides):
    values = {"dni": "87654321X", "name": "Juan", "surnames": "Pérez Gomez", "nss": "", "employee_code": "E200"}
    values.update(overrides)
    return sage_row(**values)


def _age_job(job_id: str, **values) -> None:
    values.setdefault("updated_at", utc_now() - timedelta(hours=2))
    db.session.query(ImportJob).filter(ImportJob.job_id == job_id).update(values, synchronize_session=False)
    db.session.commit()


def test_new_person_is_created_with_main_center(run_import, sage_row):
    status = run_import(sage_row())

    assert status["status"] == "completed"
    assert status["progress"] == 100
    summary = status["result_summary"]
    assert summary["created"] == 1
    assert summary["new_companies"] == 1
    assert summary["new_centers"] == 1
    assert summary["new_associations"] == 1
    user = db.session.query(User).filter_by(dni="12345678Z").one()
    mains = db.session.query(UserCenter).filter_by(user_id=user.id, is_main_center=True).all()
    assert len(mains) == 1


def test_resubmitting_same_row_links_without_duplicates(run_import, sage_row):
    run_import(sage_row())

    status = run_import(sage_row())

    assert status["result_summary"]["linked"] == 1
    assert status["result_summary"]["created"] == 0
    assert db.session.query(User).filter_by(dni="12345678Z").count() == 1
    assert db.session.query(Company).count() == 1
    assert db.session.query(UserCenter).count() == 1


def test_resubmitting_fills_previously_empty_fields(run_import, sage_row):
    run_import(sage_row(email="", birth_date=""))

    status = run_import(sage_row())

    assert status["result_summary"]["updated"] == 1
    user = db.session.query(User).filter_by(dni="12345678Z").one()
    assert user.email == "ana.lopez@example.com"
    assert user.birth_date is not None


def test_existing_values_are_never_overwritten(run_import, sage_row):
    run_import(sage_row())

    run_import(sage_row(email="changed@example.com", category="Director"))

    user = db.session.query(User).filter_by(dni="12345678Z").one()
    assert user.email == "ana.lopez@example.com"
    assert user.professional_category == "Administrativo"


def test_accented_name_requires_decision(run_import, sage_row, user_factory):
    user_factory(dni="11111111H")

    status = run_import(_ambiguous(sage_row))

    assert status["result_summary"]["decisions_pending"] == 1
    decision = db.session.query(ImportDecision).one()
    assert float(decision.similarity_score) == pytest.approx(0.9375)
    assert decision.job_id == status["job_id"]
    assert db.session.query(User).count() == 1


def test_replaying_file_is_idempotent(run_import, sage_row, user_factory):
    user_factory(dni="11111111H")
    rows = (sage_row(), _ambiguous(sage_row), sage_row(dni="22222222J", name="Eva", surnames="Diaz Mora"))

    run_import(*rows)
    counts = (
        db.session.query(User).count(),
        db.session.query(Company).count(),
        db.session.query(ImportDecision).count(),
        db.session.query(UserCenter).count(),
    )
    status = run_import(*rows)

    assert status["result_summary"]["created"] == 0
    assert status["result_summary"]["decisions_pending"] == 1
    assert counts == (
        db.session.query(User).count(),
        db.session.query(Company).count(),
        db.session.query(ImportDecision).count(),
        db.session.query(UserCenter).count(),
    )


def test_company_lookup_failure_is_vaulted_and_batch_continues(run_import, sage_row, monkeypatch):
    original = EntityResolver.find_or_create_company

    def flaky(self, data):
        if data.company_name == "Broken SL":
            raise OperationalError("SELECT companies", {}, Exception("database is locked"))
        return original(self, data)

    monkeypatch.setattr(EntityResolver, "find_or_create_company", flaky)

    status = run_import(
        sage_row(),
        sage_row(dni="22222222J", name="Eva", surnames="Diaz Mora", company_name="Broken SL"),
        sage_row(dni="33333333P", name="Luis", surnames="Martin Soto"),
    )

    summary = status["result_summary"]
    assert status["status"] == "completed"
    assert summary["errors"] == 1
    assert summary["created"] == 2
    assert summary["error_details"][0]["row"] == 3
    record = db.session.query(FailedImportRecord).one()
    assert "database is locked" in record.failure_reason
    assert record.dni == "22222222J"
    assert record.job_id == status["job_id"]


def test_every_row_is_accounted_for(run_import, sage_row, user_factory):
    user_factory(dni="11111111H")

    status = run_import(
        sage_row(),
        _ambiguous(sage_row),
        sage_row(dni="55555555K", name="Luis", surnames="Martin Soto", company_cif=""),
        "too;short",
    )

    summary = status["result_summary"]
    assert summary["total_rows"] == 3
    assert summary["created"] == 1
    assert summary["decisions_pending"] == 1
    assert summary["errors"] == 1
    assert summary["parse_errors"] == 1
    assert summary["failed_records"]["total"] == 2
    reasons = {record.failure_reason for record in db.session.query(FailedImportRecord)}
    assert any(reason.startswith("Malformed row") for reason in reasons)
    assert any("company_cif" in reason for reason in reasons)


def test_upload_is_removed_after_completion(job_service, sage_csv, sage_row):
    job_id = job_service.submit(sage_csv(sage_row()), "sage.csv")

    params = job_service.get_job(job_id).ingest_params_json
    assert not Path(params["file_path"]).exists()


def test_upload_is_kept_when_requested(job_service, sage_csv, sage_row):
    job_id = job_service.submit(sage_csv(sage_row()), "sage.csv", keep_file=True)

    params = job_service.get_job(job_id).ingest_params_json
    assert Path(params["file_path"]).exists()


@pytest.mark.parametrize("filename, suffix", [("Export Enero.CSV", ".csv"), ("nomina.txt", ".txt"), (None, ".csv")])
def test_upload_is_stored_under_a_generated_name(app, filename, suffix):
    stored = persist_bytes(b"data", filename, app)

    assert stored.parent == Path(app.config["IMPORTER_UPLOAD_DIR"])
    assert stored.suffix == suffix
    assert len(stored.stem) == 32
    assert stored.read_bytes() == b"data"


def test_oversized_upload_is_rejected(app, job_service, monkeypatch):
    monkeypatch.setitem(app.config, "IMPORTER_MAX_UPLOAD_MB", 1)

    with pytest.raises(UploadTooLargeError):
        job_service.submit(b"x" * (1024 * 1024 + 1), "big.csv")
    assert db.session.query(ImportJob).count() == 0


def test_missing_file_fails_job(job_service, sage_csv, sage_row):
    job_id = job_service.submit(sage_csv(sage_row()), "sage.csv", dispatch=False)
    Path(job_service.get_job(job_id).ingest_params_json["file_path"]).unlink()

    with pytest.raises(FileNotFoundError):
        job_service.run_job(job_id)

    job = job_service.get_job(job_id)
    assert job.status == ImportJobStatus.FAILED
    assert "Import file not found" in job.error_message
    assert job.completed_at is not None


def test_parse_error_ceiling_fails_job(app, sage_csv):
    service = ImportJobService(settings=JobSettings(max_parse_errors=1, batch_pause_seconds=0))
    job_id = service.submit(sage_csv("a;b", "c;d"), "broken.csv", dispatch=False)

    with pytest.raises(CSVParseAbortedError):
        service.run_job(job_id)

    job = service.get_job(job_id)
    assert job.status == ImportJobStatus.FAILED
    assert "CSV parse aborted" in job.error_message


def test_terminal_states_are_sticky(job_service, sage_csv, sage_row):
    job_id = job_service.submit(sage_csv(sage_row()), "sage.csv")
    summary = job_service.get_job(job_id).result_summary

    with pytest.raises(InvalidJobTransitionError):
        job_service.transition(job_id, ImportJobStatus.FAILED)
    assert job_service.cancel(job_id) is False
    assert job_service.run_job(job_id) == summary

    job = job_service.get_job(job_id)
    assert job.status == ImportJobStatus.COMPLETED
    assert job.result_summary == summary


def test_cancel_pending_job(job_service, sage_csv, sage_row):
    job_id = job_service.submit(sage_csv(sage_row()), "sage.csv", dispatch=False)

    assert job_service.cancel(job_id) is True
    assert job_service.get_job(job_id).status == ImportJobStatus.CANCELLED
    assert job_service.run_job(job_id) == {}
    assert db.session.query(User).count() == 0


def test_cancellation_is_honoured_between_batches(app, sage_csv, sage_row, monkeypatch):
    monkeypatch.setattr(job_service_module, "DEFAULT_BATCH_SIZE", 2)

    class CancellingService(ImportJobService):
        def _process_record(self, processor, record, summary, job_id):
            super()._process_record(processor, record, summary, job_id)
            if record.row_number == 2:
                self.cancel(job_id)

    service = CancellingService(settings=JobSettings(batch_pause_seconds=0))
    people = [("Ana", "Lopez Garcia"), ("Bruno", "Sanz Vidal"), ("Carmen", "Ortiz Luna"), ("Diego", "Ramos Pardo")]
    rows = [
        sage_row(dni=f"1000000{index}A", name=name, surnames=surnames)
        for index, (name, surnames) in enumerate(people)
    ]
    job_id = service.submit(sage_csv(*rows), "sage.csv", dispatch=False)

    assert service.run_job(job_id) == {}

    assert service.get_job(job_id).status == ImportJobStatus.CANCELLED
    assert db.session.query(User).count() == 2


def test_redelivered_task_resumes_processing_job(job_service, sage_csv, sage_row):
    rows = (sage_row(), sage_row(dni="22222222J", name="Eva", surnames="Diaz Mora"))
    job_id = job_service.submit(sage_csv(*rows), "sage.csv", dispatch=False, keep_file=True)
    _age_job(
        job_id,
        status=ImportJobStatus.PROCESSING,
        processed_rows=1,
        counts_json={"created": 1, "new_companies": 1, "new_centers": 1, "new_associations": 1},
        updated_at=utc_now() - timedelta(minutes=2),
    )

    summary = job_service.run_job(job_id)

    job = job_service.get_job(job_id)
    assert job.status == ImportJobStatus.COMPLETED
    assert job.processed_rows == 2
    assert summary["created"] == 2
    assert db.session.query(User).filter_by(dni="12345678Z").count() == 0
    assert db.session.query(User).filter_by(dni="22222222J").count() == 1


def test_progress_never_moves_backwards(job_service, sage_csv, sage_row):
    job_id = job_service.submit(sage_csv(sage_row()), "sage.csv", dispatch=False)
    _age_job(job_id, status=ImportJobStatus.PROCESSING, processed_rows=5, total_rows=10)

    assert job_service._persist_progress(job_id, 3, ImportSummary()) is False
    assert job_service._persist_progress(job_id, 7, ImportSummary()) is True
    assert job_service.get_job(job_id).processed_rows == 7


def test_progress_is_derived_from_counters():
    assert ImportJob(total_rows=3, processed_rows=1).progress == 33
    assert ImportJob(total_rows=0, processed_rows=0).progress == 0


def test_recover_marks_stale_jobs_failed(job_service, sage_csv, sage_row):
    stale = job_service.submit(sage_csv(sage_row()), "a.csv", dispatch=False)
    fresh = job_service.submit(sage_csv(sage_row()), "b.csv", dispatch=False)
    _age_job(stale, status=ImportJobStatus.PROCESSING)
    _age_job(fresh, status=ImportJobStatus.PROCESSING, updated_at=utc_now())

    recovered = job_service.recover_interrupted_jobs(15)

    assert recovered == [stale]
    stale_job = job_service.get_job(stale)
    assert stale_job.status == ImportJobStatus.FAILED
    assert stale_job.error_message == INTERRUPTED_MESSAGE
    assert job_service.get_job(fresh).status == ImportJobStatus.PROCESSING


def test_recover_with_resume_skips_processed_rows(job_service, sage_csv, sage_row):
    rows = (sage_row(), sage_row(dni="22222222J", name="Eva", surnames="Diaz Mora"))
    job_id = job_service.submit(sage_csv(*rows), "sage.csv", dispatch=False)
    _age_job(
        job_id,
        status=ImportJobStatus.PROCESSING,
        processed_rows=1,
        counts_json={"created": 1, "new_companies": 1, "new_centers": 1, "new_associations": 1},
    )

    recovered = job_service.recover_interrupted_jobs(15, resume=True)

    assert recovered == [job_id]
    job = job_service.get_job(job_id)
    assert job.status == ImportJobStatus.COMPLETED
    assert job.processed_rows == 2
    assert job.result_summary["created"] == 2
    assert db.session.query(User).filter_by(dni="12345678Z").count() == 0
    assert db.session.query(User).filter_by(dni="22222222J").count() == 1


def test_cleanup_removes_old_terminal_jobs(job_service, sage_csv, sage_row):
    old = job_service.submit(sage_csv(sage_row()), "old.csv", dispatch=False, keep_file=True)
    recent = job_service.submit(sage_csv(sage_row()), "new.csv", dispatch=False)
    old_file = Path(job_service.get_job(old).ingest_params_json["file_path"])
    _age_job(old, status=ImportJobStatus.COMPLETED, completed_at=utc_now() - timedelta(days=45))

    deleted = job_service.cleanup_old_jobs(30)

    assert deleted == 1
    assert not old_file.exists()
    with pytest.raises(ImportJobNotFoundError):
        job_service.get_job(old)
    assert job_service.get_job(recent).status == ImportJobStatus.PENDING


def test_job_listings(job_service, sage_csv, sage_row):
    done = job_service.submit(sage_csv(sage_row()), "done.csv")
    waiting = job_service.submit(sage_csv(sage_row()), "waiting.csv", dispatch=False)

    assert {job.job_id for job in job_service.list_recent()} == {done, waiting}
    assert [job.job_id for job in job_service.list_active()] == [waiting]


def test_job_ids_and_batch_sizes():
    job_id = generate_job_id("sage")

    assert job_id.startswith("sage_")
    assert len(job_id.split("_")[-1]) == 9
    assert batch_size_for(500) == 500
    assert batch_size_for(10_001) == 1000
