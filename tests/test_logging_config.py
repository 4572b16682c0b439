import json
import logging
import sys

from enrollment_app.utils.logging_config import JSONFormatter, setup_logging


def _record(**extra):
    record = logging.LogRecord("enrollment", logging.WARNING, __file__, 10, "Row %s failed", (3,), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_keeps_extra_fields():
    payload = json.loads(JSONFormatter().format(_record(importer_job_id="sage_1", importer_row_number=3)))

    assert payload["msg"] == "Row 3 failed"
    assert payload["level"] == "WARNING"
    assert payload["importer_job_id"] == "sage_1"
    assert payload["importer_row_number"] == 3


def test_json_formatter_serializes_exceptions():
    try:
        raise ValueError("bad row")
    except ValueError:
        record = _record()
        record.exc_info = sys.exc_info()

    payload = json.loads(JSONFormatter().format(record))

    assert payload["error_type"] == "ValueError"
    assert "bad row" in payload["exception"]


def test_setup_logging_replaces_its_handlers(app, monkeypatch, tmp_path):
    monkeypatch.setitem(app.config, "ENABLE_CONSOLE_LOGGING", True)
    monkeypatch.setitem(app.config, "ENABLE_FILE_LOGGING", True)
    monkeypatch.setitem(app.config, "LOG_DIR", str(tmp_path))
    monkeypatch.setitem(app.config, "LOG_FORMAT", "json")

    setup_logging(app)
    setup_logging(app)

    managed = [handler for handler in app.logger.handlers if getattr(handler, "_enrollment_managed", False)]
    assert len(managed) == 2
    assert all(isinstance(handler.formatter, JSONFormatter) for handler in managed)
    assert (tmp_path / "enrollment_admin.log").exists()

    monkeypatch.setitem(app.config, "ENABLE_CONSOLE_LOGGING", False)
    monkeypatch.setitem(app.config, "ENABLE_FILE_LOGGING", False)
    setup_logging(app)
