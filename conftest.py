# conftest.py

import os
import tempfile

import pytest

# Set testing environment BEFORE importing app so it picks TestingConfig.
# The engine is bound at import time, hence the database file is chosen here.
os.environ["FLASK_ENV"] = "testing"
_db_fd, _test_db_path = tempfile.mkstemp(suffix="_enrollment_test.db")
os.close(_db_fd)
os.environ.setdefault("TEST_DATABASE_URL", f"sqlite:///{_test_db_path}")

# Now import app and other modules after environment is set
from app import app as flask_app  # noqa: E402
from enrollment_app.importer import init_importer  # noqa: E402
from enrollment_app.models import db  # noqa: E402
from enrollment_app.utils.logging_config import setup_logging  # noqa: E402


@pytest.fixture(scope="function")
def app(tmp_path):
    """Create and configure a test Flask application with a clean schema."""

    flask_app.config.update(
        {
            "TESTING": True,
            "SECRET_KEY": "test-secret-key-for-testing-only",
            "ENABLE_FILE_LOGGING": False,
            "ENABLE_CONSOLE_LOGGING": False,
            "LOG_LEVEL": "WARNING",
            "IMPORTER_ENABLED": True,
            "IMPORTER_WORKER_ENABLED": False,
            "IMPORTER_UPLOAD_DIR": str(tmp_path / "uploads"),
            "IMPORTER_BATCH_PAUSE_SECONDS": 0.0,
            "IMPORTER_PROGRESS_INTERVAL": 50,
            "IMPORTER_RECOVER_ON_STARTUP": False,
            "CELERY_SQLITE_PATH": str(tmp_path / "celery.sqlite"),
            "CELERY_CONFIG": {"task_always_eager": True, "task_eager_propagates": True},
        }
    )
    setup_logging(flask_app)
    init_importer(flask_app)

    with flask_app.app_context():
        db.drop_all()
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()


@pytest.fixture(autouse=True)
def app_context(app):
    """Automatically provide app context for all tests"""
    with app.app_context():
        yield


@pytest.fixture
def runner(app):
    return app.test_cli_runner()


def pytest_sessionfinish(session, exitstatus):
    for suffix in ("", "-wal", "-shm"):
        try:
            os.unlink(_test_db_path + suffix)
        except OSError:
            pass
