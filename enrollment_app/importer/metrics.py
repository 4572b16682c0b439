"""Prometheus metrics helpers for the importer."""

from __future__ import annotations

from prometheus_client import Counter, Histogram

_row_outcomes = Counter(
    "importer_sage_rows_total",
    "Sage CSV rows processed by outcome.",
    ["outcome"],
)
_vault_writes = Counter(
    "importer_failed_vault_writes_total",
    "Failed-import vault writes by result.",
    ["result"],
)
_vault_write_errors = Counter(
    "importer_failed_vault_write_errors_total",
    "Failed-import vault writes that could not be persisted.",
)
_job_terminal = Counter(
    "importer_jobs_finished_total",
    "Import jobs reaching a terminal state.",
    ["status"],
)
_job_duration = Histogram(
    "importer_job_duration_seconds",
    "Wall-clock duration of import job processing in seconds.",
    buckets=(1, 5, 15, 30, 60, 120, 300, 600, 1800, 3600),
)
_decision_resolutions = Counter(
    "importer_decision_resolutions_total",
    "Import decisions resolved or reverted by action.",
    ["action", "operation"],
)


def record_row_outcome(outcome: str) -> None:
    """Increment the per-outcome row counter."""

    _row_outcomes.labels(outcome=outcome).inc()


def record_vault_write(*, success: bool) -> None:
    _vault_writes.labels(result="stored" if success else "lost").inc()
    if not success:
        _vault_write_errors.inc()


def record_job_finished(status: str, *, duration_seconds: float | None = None) -> None:
    """Capture a job's terminal status and, when known, how long it ran."""

    _job_terminal.labels(status=status).inc()
    if duration_seconds is not None:
        _job_duration.observe(max(duration_seconds, 0.0))


def record_decision_resolution(action: str, *, operation: str = "resolve") -> None:
    _decision_resolutions.labels(action=action, operation=operation).inc()
