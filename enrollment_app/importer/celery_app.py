"""
Celery configuration helpers for the importer worker.

Defaults to a SQLite transport and result backend so local development and
tests need no Redis; set ``CELERY_BROKER_URL``/``CELERY_RESULT_BACKEND`` to
switch.
"""

from __future__ import annotations

import json
import logging
from datetime import timedelta
from pathlib import Path
from typing import Any, Mapping

from celery import Celery
from celery.signals import worker_ready
from flask import Flask
from kombu import Queue

DEFAULT_QUEUE_NAME = "imports"
DEFAULT_SQLITE_FILENAME = "celery.sqlite"
RECOVERY_SCHEDULE_NAME = "importer-recover-interrupted-jobs"


def _configure_quiet_loggers(app: Flask) -> None:
    """Keep SQL echo and Celery worker-state chatter out of task logs."""

    if not app.config.get("SQLALCHEMY_ECHO", False):
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("celery.worker.strategy").setLevel(logging.WARNING)


def _normalize_sqlite_path(app: Flask) -> Path:
    """
    Determine the path backing the SQLite transport/result backend.

    ``CELERY_SQLITE_PATH`` overrides the default file in the Flask instance
    folder; relative paths resolve against the instance folder.
    """
    configured = app.config.get("CELERY_SQLITE_PATH")
    if configured:
        sqlite_path = Path(configured)
        if not sqlite_path.is_absolute():
            sqlite_path = Path(app.instance_path) / sqlite_path
    else:
        sqlite_path = Path(app.instance_path) / DEFAULT_SQLITE_FILENAME

    sqlite_path.parent.mkdir(parents=True, exist_ok=True)
    return sqlite_path


def _determine_connection_urls(app: Flask) -> tuple[str, str]:
    broker_url = app.config.get("CELERY_BROKER_URL")
    result_backend = app.config.get("CELERY_RESULT_BACKEND")

    if broker_url and result_backend:
        return broker_url, result_backend

    # Celery expects forward slashes even on Windows.
    normalized = _normalize_sqlite_path(app).as_posix()
    default_broker = f"sqla+sqlite:///{normalized}"
    default_backend = f"db+sqlite:///{normalized}"

    return broker_url or default_broker, result_backend or default_backend


def _load_extra_conf(app: Flask) -> Mapping[str, Any] | None:
    extra_conf: Mapping[str, Any] | str | None = app.config.get("CELERY_CONFIG")
    if isinstance(extra_conf, str):
        try:
            extra_conf = json.loads(extra_conf)
        except json.JSONDecodeError:
            app.logger.warning("CELERY_CONFIG is not valid JSON; ignoring value.", exc_info=True)
            return None
    return extra_conf


def sweep_interrupted_jobs(app: Flask) -> list[str]:
    """
    Recover every job left in ``processing``, however recently it reported.

    Runs when a worker comes up: that worker owns no running job yet, so any
    ``processing`` job belongs to a process that is gone.
    """
    from enrollment_app.importer.pipeline import ImportJobService

    with app.app_context():
        recovered = ImportJobService(logger=app.logger).recover_interrupted_jobs(
            0,
            resume=bool(app.config.get("IMPORTER_RESUME_ON_STARTUP", False)),
        )
        if recovered:
            app.logger.warning(
                "Recovered %s interrupted import jobs on worker startup",
                len(recovered),
                extra={"importer_recovered_jobs": recovered},
            )
    return recovered


def _register_startup_recovery(app: Flask, celery_app: Celery) -> None:
    def _recover_on_ready(sender=None, **kwargs):
        if getattr(sender, "app", None) is not celery_app:
            return
        sweep_interrupted_jobs(app)

    worker_ready.connect(_recover_on_ready, weak=False)


def _recovery_schedule(app: Flask) -> dict[str, Any]:
    interval = int(app.config.get("IMPORTER_RECOVERY_INTERVAL_MINUTES", 0) or 0)
    if interval <= 0:
        return {}
    return {
        RECOVERY_SCHEDULE_NAME: {
            "task": "importer.sage.recover_interrupted_jobs",
            "schedule": timedelta(minutes=interval),
            "kwargs": {"resume": bool(app.config.get("IMPORTER_RESUME_ON_STARTUP", False))},
            "options": {"queue": DEFAULT_QUEUE_NAME},
        }
    }


def create_celery_app(app: Flask) -> Celery:
    """
    Create and configure a Celery instance bound to the given Flask app.
    """
    broker_url, result_backend = _determine_connection_urls(app)
    celery_app = Celery(
        app.import_name,
        broker=broker_url,
        backend=result_backend,
        include=("enrollment_app.importer.tasks",),
    )

    celery_app.conf.update(
        task_default_queue=DEFAULT_QUEUE_NAME,
        task_queues=[Queue(DEFAULT_QUEUE_NAME)],
        task_default_exchange=DEFAULT_QUEUE_NAME,
        task_default_routing_key=DEFAULT_QUEUE_NAME,
        task_acks_late=True,
        worker_prefetch_multiplier=1,
        task_track_started=True,
        result_extended=True,
        broker_connection_retry_on_startup=True,
        task_time_limit=app.config.get("IMPORTER_TASK_TIME_LIMIT", 60 * 60),
        task_soft_time_limit=app.config.get("IMPORTER_TASK_SOFT_TIME_LIMIT", 55 * 60),
        worker_log_format="[%(asctime)s: %(levelname)s/%(processName)s] %(message)s",
        worker_task_log_format="[%(asctime)s: %(levelname)s/%(processName)s][%(task_name)s(%(task_id)s)] %(message)s",
        worker_hijack_root_logger=False,
        beat_schedule=_recovery_schedule(app),
    )

    extra_conf = _load_extra_conf(app)
    app.logger.info(
        "Importer Celery configuration resolved",
        extra={
            "importer_celery_extra_conf": extra_conf,
            "importer_celery_broker_url": broker_url,
            "importer_celery_result_backend": result_backend,
            "importer_worker_enabled": app.config.get("IMPORTER_WORKER_ENABLED"),
        },
    )
    if extra_conf:
        celery_app.conf.update(extra_conf)

    _configure_quiet_loggers(app)

    class FlaskContextTask(celery_app.Task):  # type: ignore[misc]
        """
        Run Celery tasks inside a Flask application context automatically.
        """

        def __call__(self, *args, **kwargs):
            with app.app_context():
                return super().__call__(*args, **kwargs)

    celery_app.Task = FlaskContextTask  # type: ignore[assignment]
    celery_app.loader.import_default_modules()

    if app.config.get("IMPORTER_RECOVER_ON_STARTUP"):
        _register_startup_recovery(app, celery_app)
    return celery_app


def ensure_celery_app(app: Flask, state: dict[str, Any]) -> Celery:
    """
    Return (and cache) the Celery instance inside the importer extension state.
    """
    celery_app: Celery | None = state.get("celery_app")
    if celery_app is None:
        celery_app = create_celery_app(app)
        state["celery_app"] = celery_app
    return celery_app


def get_celery_app(app: Flask) -> Celery | None:
    """
    Fetch the Celery instance from the importer extension, initialising it if
    the importer is enabled but the worker has not yet been configured.
    """
    state: dict[str, Any] | None = app.extensions.get("importer")  # type: ignore[arg-type]
    if not state:
        return None
    celery_app: Celery | None = state.get("celery_app")
    if celery_app is None and state.get("enabled"):
        celery_app = ensure_celery_app(app, state)
    return celery_app
