"""
Importer-specific utilities for handling uploaded files and cleanup.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from datetime import date, datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from flask import current_app
from werkzeug.utils import secure_filename

DEFAULT_UPLOAD_SUBDIR = "import_uploads"


class UploadTooLargeError(ValueError):
    """Raised when an upload exceeds ``IMPORTER_MAX_UPLOAD_MB``."""


def _normalize_upload_dir(configured_path: str | None, instance_path: str) -> Path:
    if not configured_path:
        return Path(instance_path) / DEFAULT_UPLOAD_SUBDIR

    candidate = Path(configured_path)
    if candidate.is_absolute():
        return candidate

    return Path(instance_path) / candidate


def resolve_upload_directory(app) -> Path:
    """
    Determine and create (if necessary) the importer upload directory.
    """

    upload_dir = _normalize_upload_dir(app.config.get("IMPORTER_UPLOAD_DIR"), app.instance_path)
    upload_dir.mkdir(parents=True, exist_ok=True)
    return upload_dir


def persist_bytes(content: bytes, filename: str | None, app) -> Path:
    """
    Persist raw upload bytes and return the fully-qualified path.

    Files are stored under ``resolve_upload_directory(app)`` using a UUID-based
    filename; the original extension is kept when it is a sanitized one.
    """

    max_mb = app.config.get("IMPORTER_MAX_UPLOAD_MB")
    if max_mb and len(content) > int(max_mb) * 1024 * 1024:
        raise UploadTooLargeError(f"Upload exceeds the {max_mb} MB limit.")

    upload_dir = resolve_upload_directory(app)
    original_name = secure_filename(filename or "")
    extension = Path(original_name).suffix.lower() if original_name else ""
    if not extension:
        extension = ".csv"

    target_path = upload_dir / f"{uuid4().hex}{extension}"
    target_path.write_bytes(content)
    app.logger.debug("Importer upload persisted to %s", target_path)
    return target_path


def cleanup_upload(path: Path | str | None) -> None:
    """
    Remove a stored upload, logging but ignoring filesystem errors.
    """

    if not path:
        return
    try:
        Path(path).unlink(missing_ok=True)
    except OSError as exc:
        current_app.logger.warning("Failed to remove importer upload %s: %s", path, exc)


def ensure_json_serializable(value: Any) -> Any:
    """
    Best-effort conversion of values to JSON-serializable representations.
    """

    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, Mapping):
        return {str(key): ensure_json_serializable(inner) for key, inner in value.items()}
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        return [ensure_json_serializable(item) for item in value]
    if isinstance(value, Path):
        return str(value)
    return str(value)
