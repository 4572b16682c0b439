"""
Operator CLI for the Sage importer.

Mounted as ``flask importer`` with ``sage``, ``decisions``, ``failed`` and
``worker`` sub-groups. Service errors surface as ``click.ClickException``.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import click
from celery import Celery
from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask.cli import ScriptInfo

from enrollment_app.importer.celery_app import DEFAULT_QUEUE_NAME, get_celery_app
from enrollment_app.importer.pipeline import (
    DecisionError,
    DecisionService,
    FailureVault,
    ImportJobError,
    ImportJobService,
)
from enrollment_app.importer.utils import UploadTooLargeError, ensure_json_serializable
from enrollment_app.models import DecisionAction, ImportDecision, ImportJob
from enrollment_app.utils.importer import is_importer_enabled

DATE_FORMATS = ["%Y-%m-%d", "%Y-%m-%dT%H:%M:%S"]


@click.group(name="importer", invoke_without_command=True)
@click.pass_context
def importer_cli(ctx):
    """
    Sage CSV importer management commands.
    """
    app = _load_app(ctx)
    if not is_importer_enabled(app):
        raise click.ClickException(
            "Importer is disabled via IMPORTER_ENABLED=false. Enable it to run importer CLI commands."
        )
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


def get_disabled_importer_group() -> click.Group:
    """
    Return a minimal command group that informs the operator the importer is disabled.
    """

    @click.group(name="importer", invoke_without_command=True)
    def disabled_group():
        raise click.ClickException("Importer commands are unavailable because IMPORTER_ENABLED=false.")

    return disabled_group


def _load_app(ctx: click.Context):
    info = ctx.ensure_object(ScriptInfo)
    return info.load_app()


def _resolve_celery(app) -> Celery:
    celery_app = get_celery_app(app)
    if celery_app is None:
        raise click.ClickException(
            "Importer Celery app is unavailable. Ensure IMPORTER_ENABLED=true and the "
            "importer package initialises before running worker commands."
        )
    return celery_app


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(ensure_json_serializable(payload), indent=2, sort_keys=True))


def _job_line(job: ImportJob) -> str:
    created = job.created_at.isoformat() if job.created_at else "-"
    return (
        f"{job.job_id}  {job.status.value:<10}  {job.processed_rows}/{job.total_rows} "
        f"({job.progress}%)  {created}  {job.source_filename or ''}".rstrip()
    )


def _decision_payload(decision: ImportDecision) -> dict[str, Any]:
    return {
        "id": decision.id,
        "job_id": decision.job_id,
        "row_number": decision.row_number,
        "dni_csv": decision.dni_csv,
        "name_csv": decision.name_csv,
        "surnames_csv": decision.csv_surnames,
        "candidate_user_id": decision.candidate_user_id,
        "selected_user_id": decision.selected_user_id,
        "name_db": " ".join(
            part for part in (decision.name_db, decision.first_surname_db, decision.second_surname_db) if part
        ),
        "dni_db": decision.dni_db,
        "similarity_score": float(decision.similarity_score),
        "match_kind": decision.match_kind.value,
        "processed": decision.processed,
        "decision_action": decision.decision_action.value if decision.decision_action else None,
        "notes": decision.notes,
        "resolved_at": decision.resolved_at,
    }


# ----------------------------------------------------------------------
# Sage jobs
# ----------------------------------------------------------------------
@importer_cli.group(name="sage")
def sage_group():
    """Submit and supervise Sage CSV import jobs."""


@sage_group.command("submit")
@click.argument("file_path", type=click.Path(path_type=Path, exists=True, dir_okay=False))
@click.option(
    "--dispatch/--no-dispatch",
    default=True,
    show_default=True,
    help="Queue the job on the worker immediately.",
)
@click.pass_context
def sage_submit(ctx, file_path: Path, dispatch: bool):
    """Create an import job for FILE_PATH and queue it."""
    app = _load_app(ctx)
    with app.app_context():
        service = ImportJobService(logger=app.logger)
        try:
            job_id = service.submit(file_path.read_bytes(), file_path.name, dispatch=dispatch)
        except (ImportJobError, UploadTooLargeError) as exc:
            raise click.ClickException(str(exc)) from exc
        _echo_json({"job_id": job_id, "status": service.get_status(job_id)["status"]})


@sage_group.command("run")
@click.argument("job_id")
@click.option("--resume", is_flag=True, help="Skip rows already processed by an interrupted run.")
@click.pass_context
def sage_run(ctx, job_id: str, resume: bool):
    """Process JOB_ID inline in this process instead of on the worker."""
    app = _load_app(ctx)
    with app.app_context():
        try:
            summary = ImportJobService(logger=app.logger).run_job(job_id, resume=resume)
        except ImportJobError as exc:
            raise click.ClickException(str(exc)) from exc
        except Exception as exc:
            raise click.ClickException(f"Import job {job_id} failed: {exc}") from exc
        _echo_json(summary)


@sage_group.command("status")
@click.argument("job_id")
@click.pass_context
def sage_status(ctx, job_id: str):
    """Show status and progress for JOB_ID."""
    app = _load_app(ctx)
    with app.app_context():
        try:
            payload = ImportJobService(logger=app.logger).get_status(job_id)
        except ImportJobError as exc:
            raise click.ClickException(str(exc)) from exc
        _echo_json(payload)


@sage_group.command("jobs")
@click.option("--limit", default=50, show_default=True, type=int)
@click.option("--active", is_flag=True, help="Only pending and processing jobs.")
@click.pass_context
def sage_jobs(ctx, limit: int, active: bool):
    """List recent import jobs."""
    app = _load_app(ctx)
    with app.app_context():
        service = ImportJobService(logger=app.logger)
        jobs = service.list_active() if active else service.list_recent(limit)
        if not jobs:
            click.echo("No import jobs found.")
            return
        for job in jobs:
            click.echo(_job_line(job))


@sage_group.command("cancel")
@click.argument("job_id")
@click.pass_context
def sage_cancel(ctx, job_id: str):
    """Cancel a pending or processing job."""
    app = _load_app(ctx)
    with app.app_context():
        try:
            cancelled = ImportJobService(logger=app.logger).cancel(job_id)
        except ImportJobError as exc:
            raise click.ClickException(str(exc)) from exc
    if not cancelled:
        raise click.ClickException(f"Import job {job_id} has already finished and cannot be cancelled.")
    click.echo(f"Import job {job_id} cancelled.")


@sage_group.command("recover")
@click.option("--stale-minutes", type=int, help="Override IMPORTER_STALE_JOB_MINUTES.")
@click.option("--resume", is_flag=True, help="Re-dispatch stale jobs instead of failing them.")
@click.pass_context
def sage_recover(ctx, stale_minutes: Optional[int], resume: bool):
    """Fail or resume jobs left processing by a stopped worker."""
    app = _load_app(ctx)
    with app.app_context():
        try:
            recovered = ImportJobService(logger=app.logger).recover_interrupted_jobs(stale_minutes, resume=resume)
        except ImportJobError as exc:
            raise click.ClickException(str(exc)) from exc
    action = "Re-dispatched" if resume else "Marked failed"
    click.echo(f"{action} {len(recovered)} interrupted job(s).")
    for job_id in recovered:
        click.echo(f"  - {job_id}")


@sage_group.command("cleanup")
@click.option("--days", type=int, help="Override IMPORTER_JOB_RETENTION_DAYS.")
@click.pass_context
def sage_cleanup(ctx, days: Optional[int]):
    """Delete finished jobs older than the retention window."""
    app = _load_app(ctx)
    with app.app_context():
        deleted = ImportJobService(logger=app.logger).cleanup_old_jobs(days)
    click.echo(f"Deleted {deleted} import job(s).")


# ----------------------------------------------------------------------
# Decisions
# ----------------------------------------------------------------------
@importer_cli.group(name="decisions")
def decisions_group():
    """Review and resolve ambiguous identity matches."""


@decisions_group.command("pending")
@click.option("--source", default="sage", show_default=True)
@click.option("--limit", type=int, help="Maximum number of decisions to list.")
@click.pass_context
def decisions_pending(ctx, source: str, limit: Optional[int]):
    """List decisions awaiting a resolution, best match first."""
    app = _load_app(ctx)
    with app.app_context():
        decisions = DecisionService(logger=app.logger).list_pending(source, limit=limit)
        _echo_json([_decision_payload(decision) for decision in decisions])


@decisions_group.command("processed")
@click.option("--action", type=click.Choice([action.value for action in DecisionAction]))
@click.option("--since", type=click.DateTime(formats=DATE_FORMATS), help="Resolved at or after.")
@click.option("--until", type=click.DateTime(formats=DATE_FORMATS), help="Resolved at or before.")
@click.option("--search", help="Match against CSV DNI, name or surnames.")
@click.option("--limit", type=int)
@click.pass_context
def decisions_processed(
    ctx,
    action: Optional[str],
    since: Optional[datetime],
    until: Optional[datetime],
    search: Optional[str],
    limit: Optional[int],
):
    """List resolved decisions."""
    app = _load_app(ctx)
    with app.app_context():
        decisions = DecisionService(logger=app.logger).list_processed(
            action=action,
            start=since.replace(tzinfo=timezone.utc) if since else None,
            end=until.replace(tzinfo=timezone.utc) if until else None,
            search=search,
            limit=limit,
        )
        _echo_json([_decision_payload(decision) for decision in decisions])


@decisions_group.command("resolve")
@click.argument("decision_id", type=int)
@click.argument("action", type=click.Choice([action.value for action in DecisionAction]))
@click.option("--user-id", "selected_user_id", type=int, help="Link to this user instead of the candidate.")
@click.option("--notes")
@click.pass_context
def decisions_resolve(ctx, decision_id: int, action: str, selected_user_id: Optional[int], notes: Optional[str]):
    """Apply ACTION to DECISION_ID."""
    app = _load_app(ctx)
    with app.app_context():
        try:
            result = DecisionService(logger=app.logger).resolve(
                decision_id,
                action,
                selected_user_id=selected_user_id,
                notes=notes,
            )
        except DecisionError as exc:
            raise click.ClickException(str(exc)) from exc
    _echo_json({"decision_id": result.decision_id, "action": result.action.value, "user_id": result.user_id})


@decisions_group.command("revert")
@click.argument("decision_id", type=int)
@click.option("--reason", required=True, help="Recorded in the decision notes.")
@click.pass_context
def decisions_revert(ctx, decision_id: int, reason: str):
    """Undo the resolution of DECISION_ID and return it to the pending queue."""
    app = _load_app(ctx)
    with app.app_context():
        try:
            DecisionService(logger=app.logger).revert(decision_id, reason)
        except DecisionError as exc:
            raise click.ClickException(str(exc)) from exc
    click.echo(f"Import decision {decision_id} reverted.")


# ----------------------------------------------------------------------
# Failed imports
# ----------------------------------------------------------------------
@importer_cli.group(name="failed")
def failed_group():
    """Inspect rows diverted to the failed-imports vault."""


@failed_group.command("list")
@click.option("--page", default=1, show_default=True, type=int)
@click.option("--limit", default=50, show_default=True, type=int)
@click.option("--job-id")
@click.pass_context
def failed_list(ctx, page: int, limit: int, job_id: Optional[str]):
    app = _load_app(ctx)
    with app.app_context():
        _echo_json(FailureVault(logger=app.logger).list_records(page=page, limit=limit, job_id=job_id))


@failed_group.command("stats")
@click.option("--job-id")
@click.pass_context
def failed_stats(ctx, job_id: Optional[str]):
    app = _load_app(ctx)
    with app.app_context():
        _echo_json(FailureVault(logger=app.logger).stats(job_id=job_id))


# ----------------------------------------------------------------------
# Worker
# ----------------------------------------------------------------------
@importer_cli.group(name="worker")
@click.pass_context
def worker_group(ctx):
    """Manage the importer background worker."""
    app = _load_app(ctx)
    state = app.extensions.get("importer", {})
    if not state.get("worker_enabled") and not app.config.get("IMPORTER_WORKER_ENABLED"):
        click.echo(
            "Warning: IMPORTER_WORKER_ENABLED is false. Commands will still run, "
            "but enable the flag to surface accurate health status.",
            err=True,
        )


@worker_group.command("run")
@click.option("--loglevel", default="info", show_default=True)
@click.option("--concurrency", type=int, help="Number of worker processes/threads.")
@click.option("--pool", type=str, help="Celery pool implementation (e.g., 'prefork', 'solo', 'threads').")
@click.option(
    "--queues",
    default=DEFAULT_QUEUE_NAME,
    show_default=True,
    help="Comma-separated queue list to consume.",
)
@click.option("--beat", is_flag=True, help="Embed celery beat to run the periodic recovery sweep.")
@click.pass_context
def worker_run(
    ctx, loglevel: str, concurrency: Optional[int], pool: Optional[str], queues: str, beat: bool
):
    """
    Start the Celery worker in the current process.
    """
    app = _load_app(ctx)
    celery_app = _resolve_celery(app)
    state = app.extensions.get("importer")
    if state is not None:
        state["worker_enabled"] = True

    argv = ["worker", "--loglevel", loglevel, "-Q", queues]
    if concurrency:
        argv.extend(["--concurrency", str(concurrency)])
    if pool:
        argv.extend(["--pool", pool])
    if beat:
        argv.append("--beat")

    pool_msg = f", pool: {pool}" if pool else ""
    click.echo(f"Starting importer worker (queues: {queues}, loglevel: {loglevel}{pool_msg})")
    try:
        celery_app.worker_main(argv=argv)
    except KeyboardInterrupt:
        click.echo("Worker shutdown requested. Exiting...")


@worker_group.command("ping")
@click.option("--timeout", default=10.0, show_default=True, help="Seconds to wait for a response.")
@click.pass_context
def worker_ping(ctx, timeout: float):
    """
    Validate worker connectivity by executing the heartbeat task.
    """
    app = _load_app(ctx)
    celery_app = _resolve_celery(app)
    task = celery_app.tasks.get("importer.healthcheck")
    if task is None:
        raise click.ClickException("Heartbeat task 'importer.healthcheck' is not registered.")
    result = task.apply_async()
    try:
        payload = result.get(timeout=timeout)
    except CeleryTimeoutError as exc:
        raise click.ClickException(f"Worker did not respond within {timeout}s") from exc
    except Exception as exc:  # pragma: no cover - surfacing unexpected errors
        raise click.ClickException(f"Worker ping failed: {exc}") from exc
    click.echo(json.dumps(payload, indent=2))
