"""
Sage CSV importer package.

``init_importer(app)`` mounts the CLI and the Celery worker when
``IMPORTER_ENABLED`` is set, and records importer state inside
``app.extensions['importer']``.
"""

from __future__ import annotations

from typing import Any

from flask import Flask

from enrollment_app.utils.importer import is_importer_enabled, is_worker_enabled

from .celery_app import ensure_celery_app, get_celery_app
from .cli import get_disabled_importer_group, importer_cli
from .pipeline import DecisionService, FailureVault, ImportJobService

IMPORTER_EXTENSION_KEY = "importer"

__all__ = [
    "init_importer",
    "IMPORTER_EXTENSION_KEY",
    "get_celery_app",
    "DecisionService",
    "FailureVault",
    "ImportJobService",
]


def _ensure_extension_state(app: Flask) -> dict[str, Any]:
    return app.extensions.setdefault(
        IMPORTER_EXTENSION_KEY,
        {
            "enabled": False,
            "worker_enabled": False,
            "celery_app": None,
        },
    )


def _set_cli(app: Flask, enabled: bool) -> None:
    """Register the appropriate CLI group based on flag state."""
    # Avoid duplicate registrations when running tests
    command_name = importer_cli.name
    if command_name in app.cli.commands:
        app.cli.commands.pop(command_name)

    if enabled:
        app.cli.add_command(importer_cli)
    else:
        app.cli.add_command(get_disabled_importer_group())


def init_importer(app: Flask) -> None:
    """
    Conditionally mount the importer CLI and worker based on configuration.
    """
    enabled = is_importer_enabled(app)
    state = _ensure_extension_state(app)
    state.update({"enabled": enabled, "worker_enabled": is_worker_enabled(app)})

    if not enabled:
        state["celery_app"] = None
        _set_cli(app, enabled=False)
        app.logger.info("Importer disabled via IMPORTER_ENABLED flag; skipping registration.")
        return

    # Rebuild so configuration changes (tests, reloads) reach the worker.
    state["celery_app"] = None
    ensure_celery_app(app, state)
    _set_cli(app, enabled=True)
    app.logger.info("Importer enabled for Sage CSV imports")
