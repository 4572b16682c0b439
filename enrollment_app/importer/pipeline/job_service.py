"""
Import job lifecycle: submission, batched execution, cancellation and recovery.

Every status and progress write is a conditional UPDATE filtered on the
current status, so a job that reached a terminal state never changes again
and ``processed_rows`` never moves backwards.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Iterator, Mapping, Sequence
from uuid import uuid4

from flask import current_app, has_app_context
from sqlalchemy.orm import Session

from enrollment_app.importer.adapters import CSVRowError, SageCSVAdapter, SageCSVRecord
from enrollment_app.importer.contracts import SAGE_IMPORT_SOURCE
from enrollment_app.importer.metrics import record_job_finished, record_row_outcome
from enrollment_app.importer.utils import cleanup_upload, ensure_json_serializable, persist_bytes
from enrollment_app.models import ImportJob, ImportJobStatus, db
from enrollment_app.models.base import utc_now
from enrollment_app.models.importer import TERMINAL_JOB_STATUSES

from .entities import UNKNOWN_CENTER_NAME
from .errors import ImportJobError, ImportJobNotFoundError, InvalidJobTransitionError
from .failure_vault import FailureVault
from .identity import MatchingSettings
from .normalizer import normalize_row
from .processor import RowOutcome, RowProcessor, RowResult

PROCESS_TASK_NAME = "importer.sage.process_import_job"
INTERRUPTED_MESSAGE = "Job interrupted: worker restarted before completion"
ERROR_DETAILS_LIMIT = 100
LARGE_FILE_THRESHOLD = 10_000
LARGE_BATCH_SIZE = 1000
DEFAULT_BATCH_SIZE = 500

ACTIVE_JOB_STATUSES = (ImportJobStatus.PENDING, ImportJobStatus.PROCESSING)
_ALLOWED_TRANSITIONS: dict[ImportJobStatus, frozenset[ImportJobStatus]] = {
    ImportJobStatus.PENDING: frozenset(
        {ImportJobStatus.PROCESSING, ImportJobStatus.CANCELLED, ImportJobStatus.FAILED}
    ),
    ImportJobStatus.PROCESSING: frozenset(
        {ImportJobStatus.COMPLETED, ImportJobStatus.FAILED, ImportJobStatus.CANCELLED}
    ),
}

_COUNTER_FIELDS = (
    "created",
    "updated",
    "linked",
    "skipped",
    "decisions_pending",
    "errors",
    "parse_errors",
    "new_companies",
    "new_centers",
    "new_associations",
)
_OUTCOME_COUNTERS = {
    RowOutcome.CREATED: "created",
    RowOutcome.UPDATED: "updated",
    RowOutcome.LINKED: "linked",
    RowOutcome.SKIPPED: "skipped",
    RowOutcome.DECISION_REQUIRED: "decisions_pending",
}


@dataclass
class ImportSummary:
    """Running tallies for one job; persisted as ``counts_json`` and the final summary."""

    total_rows: int = 0
    processed_rows: int = 0
    created: int = 0
    updated: int = 0
    linked: int = 0
    skipped: int = 0
    decisions_pending: int = 0
    errors: int = 0
    parse_errors: int = 0
    new_companies: int = 0
    new_centers: int = 0
    new_associations: int = 0
    error_details: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_counts(cls, counts: Mapping[str, Any] | None, *, total_rows: int = 0) -> "ImportSummary":
        summary = cls(total_rows=total_rows)
        if not counts:
            return summary
        for name in _COUNTER_FIELDS:
            setattr(summary, name, int(counts.get(name) or 0))
        summary.error_details = list(counts.get("error_details") or [])[:ERROR_DETAILS_LIMIT]
        return summary

    def record(self, result: RowResult) -> None:
        counter = _OUTCOME_COUNTERS.get(result.outcome)
        if counter is not None:
            setattr(self, counter, getattr(self, counter) + 1)
        self.new_companies += int(result.new_company)
        self.new_centers += int(result.new_center)
        self.new_associations += int(result.new_association)

    def record_error(self, row_number: int | None, message: str) -> None:
        self.errors += 1
        self.add_detail(row_number, message)

    def add_detail(self, row_number: int | None, message: str) -> None:
        if len(self.error_details) < ERROR_DETAILS_LIMIT:
            self.error_details.append({"row": row_number, "message": message})

    def counts(self) -> dict[str, Any]:
        payload = {name: getattr(self, name) for name in _COUNTER_FIELDS}
        payload["error_details"] = list(self.error_details)
        return payload

    def as_dict(self, *, failed_records: Mapping[str, Any] | None = None) -> dict[str, Any]:
        payload = asdict(self)
        payload["failed_records"] = dict(failed_records or {})
        return payload


@dataclass(frozen=True)
class JobSettings:
    max_parse_errors: int = 100
    progress_interval: int = 50
    batch_pause_seconds: float = 0.1
    unknown_center_name: str = UNKNOWN_CENTER_NAME
    stale_job_minutes: int = 15
    retention_days: int = 30

    @classmethod
    def from_config(cls, config: Mapping[str, Any] | None = None) -> "JobSettings":
        if config is None:
            config = current_app.config if has_app_context() else {}
        defaults = cls()
        return cls(
            max_parse_errors=int(config.get("IMPORTER_MAX_PARSE_ERRORS", defaults.max_parse_errors)),
            progress_interval=max(int(config.get("IMPORTER_PROGRESS_INTERVAL", defaults.progress_interval)), 1),
            batch_pause_seconds=float(config.get("IMPORTER_BATCH_PAUSE_SECONDS", defaults.batch_pause_seconds)),
            unknown_center_name=config.get("IMPORTER_UNKNOWN_CENTER_NAME") or defaults.unknown_center_name,
            stale_job_minutes=int(config.get("IMPORTER_STALE_JOB_MINUTES", defaults.stale_job_minutes)),
            retention_days=int(config.get("IMPORTER_JOB_RETENTION_DAYS", defaults.retention_days)),
        )


def generate_job_id(import_type: str = SAGE_IMPORT_SOURCE) -> str:
    timestamp = utc_now().strftime("%Y%m%d%H%M%S")
    return f"{import_type}_{timestamp}_{uuid4().hex[:9]}"


def batch_size_for(total_rows: int) -> int:
    return LARGE_BATCH_SIZE if total_rows > LARGE_FILE_THRESHOLD else DEFAULT_BATCH_SIZE


def iter_batches(records: Sequence[SageCSVRecord], size: int) -> Iterator[Sequence[SageCSVRecord]]:
    for offset in range(0, len(records), size):
        yield records[offset : offset + size]


class ImportJobService:
    """Create, run and supervise Sage import jobs."""

    def __init__(
        self,
        session: Session | None = None,
        *,
        settings: JobSettings | None = None,
        matching: MatchingSettings | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.session = session or db.session
        self.settings = settings or JobSettings.from_config()
        self.matching = matching or MatchingSettings.from_config()
        self.logger = logger or logging.getLogger(__name__)
        self.vault = FailureVault(self.session, logger=self.logger)

    # ------------------------------------------------------------------
    # Submission and queries
    # ------------------------------------------------------------------
    def submit(
        self,
        content: bytes,
        filename: str | None = None,
        *,
        import_type: str = SAGE_IMPORT_SOURCE,
        dispatch: bool = True,
        keep_file: bool = False,
    ) -> str:
        """Persist the upload, create a pending job and hand it to the worker."""

        app = current_app._get_current_object()
        path = persist_bytes(content, filename, app)
        job_id = generate_job_id(import_type)
        job = ImportJob(
            job_id=job_id,
            import_type=import_type,
            status=ImportJobStatus.PENDING,
            source_filename=filename,
            ingest_params_json={"file_path": str(path), "keep_file": keep_file},
        )
        self.session.add(job)
        self.session.commit()
        self.logger.info(
            "Import job %s submitted",
            job_id,
            extra={"importer_job_id": job_id, "importer_source_filename": filename},
        )
        if dispatch:
            self.dispatch(job_id)
        return job_id

    def dispatch(self, job_id: str, *, resume: bool = False) -> None:
        from enrollment_app.importer.celery_app import get_celery_app

        celery_app = get_celery_app(current_app._get_current_object())
        if celery_app is None:
            raise ImportJobError("Importer worker is not configured; enable IMPORTER_ENABLED.")
        celery_app.tasks[PROCESS_TASK_NAME].apply_async(kwargs={"job_id": job_id, "resume": resume})

    def get_job(self, job_id: str) -> ImportJob:
        job = (
            self.session.query(ImportJob)
            .filter(ImportJob.job_id == job_id)
            .populate_existing()
            .one_or_none()
        )
        if job is None:
            raise ImportJobNotFoundError(job_id)
        return job

    def get_status(self, job_id: str) -> dict[str, Any]:
        return self.get_job(job_id).to_status_payload()

    def list_recent(self, limit: int = 50) -> list[ImportJob]:
        return (
            self.session.query(ImportJob)
            .populate_existing()
            .order_by(ImportJob.created_at.desc(), ImportJob.id.desc())
            .limit(limit)
            .all()
        )

    def list_active(self) -> list[ImportJob]:
        return (
            self.session.query(ImportJob)
            .filter(ImportJob.status.in_(ACTIVE_JOB_STATUSES))
            .populate_existing()
            .order_by(ImportJob.created_at, ImportJob.id)
            .all()
        )

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------
    def transition(self, job_id: str, target: ImportJobStatus, **values: Any) -> None:
        """Move a job to ``target``, refusing moves out of terminal states."""

        current = self.get_job(job_id).status
        if target not in _ALLOWED_TRANSITIONS.get(current, frozenset()):
            raise InvalidJobTransitionError(job_id, current.value, target.value)
        if not self._conditional_update(job_id, (current,), status=target, **values):
            latest = self.get_job(job_id).status
            raise InvalidJobTransitionError(job_id, latest.value, target.value)

    def cancel(self, job_id: str) -> bool:
        """Cancel a pending or processing job; returns ``False`` when it already finished."""

        self.get_job(job_id)
        cancelled = self._conditional_update(
            job_id,
            ACTIVE_JOB_STATUSES,
            status=ImportJobStatus.CANCELLED,
            completed_at=utc_now(),
        )
        if cancelled:
            record_job_finished(ImportJobStatus.CANCELLED.value)
            self.logger.info("Import job %s cancelled", job_id, extra={"importer_job_id": job_id})
        return cancelled

    def _conditional_update(
        self,
        job_id: str,
        statuses: Sequence[ImportJobStatus],
        *,
        min_processed: int | None = None,
        **values: Any,
    ) -> bool:
        query = self.session.query(ImportJob).filter(
            ImportJob.job_id == job_id,
            ImportJob.status.in_(tuple(statuses)),
        )
        if min_processed is not None:
            query = query.filter(ImportJob.processed_rows <= min_processed)
        values.setdefault("updated_at", utc_now())
        updated = query.update(values, synchronize_session=False)
        self.session.commit()
        return bool(updated)

    def _persist_progress(self, job_id: str, processed_rows: int, summary: ImportSummary) -> bool:
        summary.processed_rows = processed_rows
        return self._conditional_update(
            job_id,
            (ImportJobStatus.PROCESSING,),
            min_processed=processed_rows,
            processed_rows=processed_rows,
            counts_json=summary.counts(),
        )

    def _is_cancelled(self, job_id: str) -> bool:
        status = self.session.query(ImportJob.status).filter(ImportJob.job_id == job_id).scalar()
        return status == ImportJobStatus.CANCELLED

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------
    def run_job(self, job_id: str, *, resume: bool = False) -> dict[str, Any]:
        """
        Process every row of the job's file and return the result summary.

        Per-row failures are vaulted and counted; anything else fails the job
        and is re-raised.
        """

        job = self.get_job(job_id)
        if job.status in TERMINAL_JOB_STATUSES:
            self.logger.info(
                "Import job %s already %s; nothing to run",
                job_id,
                job.status.value,
                extra={"importer_job_id": job_id},
            )
            return dict(job.result_summary or {})

        if job.status == ImportJobStatus.PENDING:
            resume = False
            self.transition(job_id, ImportJobStatus.PROCESSING, started_at=utc_now())
        else:
            if not resume:
                # Only a redelivered task reaches a processing job without resume.
                self.logger.warning(
                    "Import job %s is already processing; resuming after row %s",
                    job_id,
                    job.processed_rows,
                    extra={"importer_job_id": job_id, "importer_processed_rows": job.processed_rows},
                )
                resume = True
            self._conditional_update(job_id, (ImportJobStatus.PROCESSING,))

        started = time.monotonic()
        try:
            summary = self._execute(self.get_job(job_id), resume=resume)
        except Exception as exc:
            self.session.rollback()
            self._conditional_update(
                job_id,
                ACTIVE_JOB_STATUSES,
                status=ImportJobStatus.FAILED,
                error_message=str(exc) or exc.__class__.__name__,
                completed_at=utc_now(),
            )
            record_job_finished(ImportJobStatus.FAILED.value, duration_seconds=time.monotonic() - started)
            raise

        if summary is None:
            self.logger.info("Import job %s stopped after cancellation", job_id, extra={"importer_job_id": job_id})
            return {}

        result = summary.as_dict(failed_records=self.vault.stats(job_id=job_id))
        finished = self._conditional_update(
            job_id,
            (ImportJobStatus.PROCESSING,),
            status=ImportJobStatus.COMPLETED,
            processed_rows=summary.processed_rows,
            counts_json=summary.counts(),
            result_summary=ensure_json_serializable(result),
            completed_at=utc_now(),
        )
        if finished:
            record_job_finished(ImportJobStatus.COMPLETED.value, duration_seconds=time.monotonic() - started)
            self._cleanup_file(self.get_job(job_id))
        self.logger.info(
            "Import job %s completed",
            job_id,
            extra={
                "importer_job_id": job_id,
                "importer_status": ImportJobStatus.COMPLETED.value if finished else "superseded",
                "importer_counts": summary.counts(),
            },
        )
        return result

    def _execute(self, job: ImportJob, *, resume: bool) -> ImportSummary | None:
        job_id = job.job_id
        params = job.ingest_params_json or {}
        file_path = params.get("file_path")
        if not file_path or not Path(file_path).exists():
            raise FileNotFoundError(f"Import file not found for job {job_id}: {file_path}")

        adapter = SageCSVAdapter.from_path(file_path, max_errors=self.settings.max_parse_errors)
        records = adapter.read_all()
        total = len(records)
        self._conditional_update(job_id, (ImportJobStatus.PROCESSING,), total_rows=total)

        start = 0
        if resume:
            start = min(job.processed_rows or 0, total)
            summary = ImportSummary.from_counts(job.counts_json, total_rows=total)
            self.logger.info(
                "Resuming import job %s from row offset %s",
                job_id,
                start,
                extra={"importer_job_id": job_id, "importer_resume_offset": start},
            )
        else:
            summary = ImportSummary(total_rows=total)
            self._vault_parse_errors(job_id, adapter.statistics.errors, summary)
        summary.processed_rows = start

        processor = RowProcessor(
            self.session,
            settings=self.matching,
            job_id=job_id,
            unknown_center_name=self.settings.unknown_center_name,
            logger=self.logger,
        )
        batch_size = batch_size_for(total)
        position = start
        for index, batch in enumerate(iter_batches(records[start:], batch_size)):
            if index:
                if self.settings.batch_pause_seconds > 0:
                    time.sleep(self.settings.batch_pause_seconds)
                if self._is_cancelled(job_id):
                    return None
            for record in batch:
                self._process_record(processor, record, summary, job_id)
                position += 1
                if position % self.settings.progress_interval == 0:
                    self._persist_progress(job_id, position, summary)
            self._persist_progress(job_id, position, summary)

        if self._is_cancelled(job_id):
            return None
        summary.processed_rows = position
        return summary

    def _process_record(
        self,
        processor: RowProcessor,
        record: SageCSVRecord,
        summary: ImportSummary,
        job_id: str,
    ) -> None:
        data = None
        try:
            data = normalize_row(record.fields, record.row_number)
            result = processor.process(data)
            self.session.commit()
        except Exception as exc:
            self.session.rollback()
            message = f"{exc.__class__.__name__}: {exc}"
            summary.record_error(record.row_number, message)
            record_row_outcome(RowOutcome.ERROR.value)
            self.logger.warning(
                "Row %s failed: %s",
                record.row_number,
                message,
                extra={
                    "importer_job_id": job_id,
                    "importer_row_number": record.row_number,
                    "importer_outcome": RowOutcome.ERROR.value,
                },
            )
            self.vault.record(data, record.fields, message, job_id=job_id, row_number=record.row_number)
            return

        summary.record(result)
        record_row_outcome(result.outcome.value)
        self.logger.debug(
            "Row %s %s",
            record.row_number,
            result.outcome.value,
            extra={
                "importer_job_id": job_id,
                "importer_row_number": record.row_number,
                "importer_outcome": result.outcome.value,
                "importer_decision_id": result.decision_id,
            },
        )

    def _vault_parse_errors(self, job_id: str, errors: Sequence[CSVRowError], summary: ImportSummary) -> None:
        summary.parse_errors = len(errors)
        for error in errors:
            summary.add_detail(error.row_number, error.message)
            self.vault.record(
                None,
                error.fields,
                f"Malformed row: {error.message}",
                job_id=job_id,
                row_number=error.row_number,
            )

    def _cleanup_file(self, job: ImportJob) -> None:
        params = job.ingest_params_json or {}
        if params.get("file_path") and not params.get("keep_file"):
            cleanup_upload(params["file_path"])

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------
    def recover_interrupted_jobs(
        self,
        stale_after_minutes: int | None = None,
        *,
        resume: bool = False,
    ) -> list[str]:
        """
        Fail or re-dispatch ``processing`` jobs whose worker stopped reporting.

        Returns the ids of the jobs acted upon.
        """

        minutes = stale_after_minutes if stale_after_minutes is not None else self.settings.stale_job_minutes
        cutoff = utc_now() - timedelta(minutes=minutes)
        stale_ids = [
            job_id
            for (job_id,) in self.session.query(ImportJob.job_id)
            .filter(ImportJob.status == ImportJobStatus.PROCESSING, ImportJob.updated_at < cutoff)
            .order_by(ImportJob.id)
            .all()
        ]

        recovered: list[str] = []
        for job_id in stale_ids:
            if resume:
                # Touching updated_at claims the job so a parallel sweep skips it.
                claimed = (
                    self.session.query(ImportJob)
                    .filter(
                        ImportJob.job_id == job_id,
                        ImportJob.status == ImportJobStatus.PROCESSING,
                        ImportJob.updated_at < cutoff,
                    )
                    .update({"updated_at": utc_now()}, synchronize_session=False)
                )
                self.session.commit()
                if not claimed:
                    continue
                self.logger.warning(
                    "Re-dispatching interrupted import job %s",
                    job_id,
                    extra={"importer_job_id": job_id},
                )
                recovered.append(job_id)
                self.dispatch(job_id, resume=True)
            else:
                failed = self._conditional_update(
                    job_id,
                    (ImportJobStatus.PROCESSING,),
                    status=ImportJobStatus.FAILED,
                    error_message=INTERRUPTED_MESSAGE,
                    completed_at=utc_now(),
                )
                if failed:
                    record_job_finished(ImportJobStatus.FAILED.value)
                    self.logger.warning(
                        "Marked interrupted import job %s as failed",
                        job_id,
                        extra={"importer_job_id": job_id},
                    )
                    recovered.append(job_id)
        return recovered

    def cleanup_old_jobs(self, days: int | None = None) -> int:
        """Delete terminal jobs finished before the retention cutoff, with their uploads."""

        retention = days if days is not None else self.settings.retention_days
        cutoff = utc_now() - timedelta(days=retention)
        jobs = (
            self.session.query(ImportJob)
            .filter(
                ImportJob.status.in_(tuple(TERMINAL_JOB_STATUSES)),
                ImportJob.completed_at.isnot(None),
                ImportJob.completed_at < cutoff,
            )
            .all()
        )
        for job in jobs:
            params = job.ingest_params_json or {}
            if params.get("file_path"):
                cleanup_upload(params["file_path"])
            self.session.delete(job)
        self.session.commit()
        if jobs:
            self.logger.info("Deleted %s import jobs older than %s days", len(jobs), retention)
        return len(jobs)
