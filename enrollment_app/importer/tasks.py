"""
Importer Celery tasks.

Job processing, recovery of interrupted jobs, retention cleanup and the worker
heartbeat. Each task runs inside a Flask application context supplied by
``FlaskContextTask``.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from celery import shared_task
from flask import current_app

from enrollment_app.importer.pipeline import PROCESS_TASK_NAME, ImportJobService


@shared_task(name="importer.healthcheck", bind=True)
def importer_healthcheck(self) -> dict[str, Any]:
    """
    Simple heartbeat task used by worker health checks.
    """
    now = datetime.now(timezone.utc)
    return {
        "status": "ok",
        "timestamp": now.isoformat(),
        "worker_hostname": self.request.hostname,
        "app_version": getattr(self.app, "user_options", {}).get("version"),
    }


@shared_task(name=PROCESS_TASK_NAME, bind=True)
def process_import_job(self, *, job_id: str, resume: bool = False) -> dict[str, Any]:
    """
    Run a Sage import job to completion on the worker.
    """

    service = ImportJobService(logger=current_app.logger)
    try:
        summary = service.run_job(job_id, resume=resume)
    except Exception as exc:
        current_app.logger.exception(
            "Import job failed",
            extra={
                "importer_job_id": job_id,
                "importer_error": str(exc),
                "importer_task_id": self.request.id,
            },
        )
        raise

    return {"job_id": job_id, "resume": resume, "summary": summary}


@shared_task(name="importer.sage.recover_interrupted_jobs", bind=True)
def recover_interrupted_jobs(
    self,
    *,
    stale_after_minutes: int | None = None,
    resume: bool = False,
) -> dict[str, Any]:
    """
    Fail or re-dispatch jobs left in ``processing`` by a worker that stopped.
    """

    recovered = ImportJobService(logger=current_app.logger).recover_interrupted_jobs(
        stale_after_minutes,
        resume=resume,
    )
    current_app.logger.info(
        "Interrupted import job sweep completed",
        extra={"importer_recovered_jobs": recovered, "importer_resume": resume},
    )
    return {"recovered": recovered, "resume": resume}


@shared_task(name="importer.sage.cleanup_old_jobs", bind=True)
def cleanup_old_jobs(self, *, days: int | None = None) -> dict[str, Any]:
    deleted = ImportJobService(logger=current_app.logger).cleanup_old_jobs(days)
    return {"deleted": deleted}
