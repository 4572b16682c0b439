# config/base.py
import os


def _coerce_bool(value, default=False):
    """Convert environment-style truthy/falsey values to bool."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    value_str = str(value).strip().lower()
    if value_str in {"1", "true", "yes", "on"}:
        return True
    if value_str in {"0", "false", "no", "off"}:
        return False
    return default


def _coerce_int(value, default, *, minimum=None):
    try:
        number = int(value) if value is not None else default
    except (TypeError, ValueError):
        number = default
    if minimum is not None and number < minimum:
        number = minimum
    return number


def _coerce_float(value, default, *, minimum=None):
    try:
        number = float(value) if value is not None else default
    except (TypeError, ValueError):
        number = default
    if minimum is not None and number < minimum:
        number = minimum
    return number


class Config:
    _flask_env = os.environ.get("FLASK_ENV", "development")
    _is_testing = _flask_env == "testing"
    _is_production = _flask_env == "production"

    SECRET_KEY = os.environ.get("SECRET_KEY")

    # Only require SECRET_KEY in production mode
    if not SECRET_KEY and _is_production:
        raise ValueError(
            "SECRET_KEY environment variable is required in production. "
            'Generate with: python -c "import secrets; print(secrets.token_hex(32))"'
        )

    if not SECRET_KEY and not _is_testing:
        import warnings

        warnings.warn(
            "SECRET_KEY not set. Using default for development only. "
            "Set SECRET_KEY environment variable for any shared deployment.",
            UserWarning,
        )
        SECRET_KEY = "dev-secret-key-change-in-production"

    if not SECRET_KEY:
        SECRET_KEY = "test-secret-key-placeholder"

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {}

    # Importer feature flags and worker wiring
    IMPORTER_ENABLED = _coerce_bool(os.environ.get("IMPORTER_ENABLED"), default=True)
    IMPORTER_WORKER_ENABLED = _coerce_bool(os.environ.get("IMPORTER_WORKER_ENABLED"), default=False)
    CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL")
    CELERY_RESULT_BACKEND = os.environ.get("CELERY_RESULT_BACKEND")
    CELERY_SQLITE_PATH = os.environ.get("CELERY_SQLITE_PATH")
    CELERY_CONFIG = os.environ.get("CELERY_CONFIG")
    IMPORTER_TASK_TIME_LIMIT = _coerce_int(os.environ.get("IMPORTER_TASK_TIME_LIMIT"), 60 * 60, minimum=60)
    IMPORTER_TASK_SOFT_TIME_LIMIT = _coerce_int(
        os.environ.get("IMPORTER_TASK_SOFT_TIME_LIMIT"), 55 * 60, minimum=30
    )

    # Uploads
    IMPORTER_UPLOAD_DIR = os.environ.get("IMPORTER_UPLOAD_DIR")
    IMPORTER_MAX_UPLOAD_MB = _coerce_int(os.environ.get("IMPORTER_MAX_UPLOAD_MB"), 25, minimum=1)

    # Matching thresholds
    IMPORTER_SIMILARITY_THRESHOLD = _coerce_float(os.environ.get("IMPORTER_SIMILARITY_THRESHOLD"), 0.90)
    IMPORTER_NSS_COLLISION_SCORE = _coerce_float(os.environ.get("IMPORTER_NSS_COLLISION_SCORE"), 0.95)
    IMPORTER_MIN_NAME_LENGTH = _coerce_int(os.environ.get("IMPORTER_MIN_NAME_LENGTH"), 3, minimum=1)

    # Job processing
    IMPORTER_MAX_PARSE_ERRORS = _coerce_int(os.environ.get("IMPORTER_MAX_PARSE_ERRORS"), 100, minimum=0)
    IMPORTER_PROGRESS_INTERVAL = _coerce_int(os.environ.get("IMPORTER_PROGRESS_INTERVAL"), 50, minimum=1)
    IMPORTER_BATCH_PAUSE_SECONDS = _coerce_float(
        os.environ.get("IMPORTER_BATCH_PAUSE_SECONDS"), 0.1, minimum=0.0
    )
    IMPORTER_UNKNOWN_CENTER_NAME = os.environ.get("IMPORTER_UNKNOWN_CENTER_NAME", "UNKNOWN")

    # Recovery and retention
    IMPORTER_STALE_JOB_MINUTES = _coerce_int(os.environ.get("IMPORTER_STALE_JOB_MINUTES"), 15, minimum=1)
    IMPORTER_JOB_RETENTION_DAYS = _coerce_int(os.environ.get("IMPORTER_JOB_RETENTION_DAYS"), 30, minimum=1)
    # The startup sweep ignores the staleness cutoff; disable it when several
    # worker hosts share one database and rely on the periodic sweep instead.
    IMPORTER_RECOVER_ON_STARTUP = _coerce_bool(os.environ.get("IMPORTER_RECOVER_ON_STARTUP"), default=True)
    IMPORTER_RESUME_ON_STARTUP = _coerce_bool(os.environ.get("IMPORTER_RESUME_ON_STARTUP"), default=False)
    # Periodic sweep via celery beat; 0 disables the schedule.
    IMPORTER_RECOVERY_INTERVAL_MINUTES = _coerce_int(
        os.environ.get("IMPORTER_RECOVERY_INTERVAL_MINUTES"), 5, minimum=0
    )


class DevelopmentConfig(Config):
    DEBUG = True
    # Get the project root directory (parent of config directory)
    _config_dir = os.path.dirname(os.path.abspath(__file__))
    _project_root = os.path.dirname(_config_dir)
    instance_path = os.path.join(_project_root, "instance")

    if not os.path.exists(instance_path):
        os.makedirs(instance_path, exist_ok=True)

    # SQLite URIs need forward slashes, including on Windows
    db_path = os.path.join(instance_path, "enrollment_dev.db").replace("\\", "/")
    db_uri = f"sqlite:///{db_path}"

    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL", db_uri)
    SQLALCHEMY_ECHO = _coerce_bool(os.environ.get("SQLALCHEMY_ECHO"), default=False)
    if SQLALCHEMY_DATABASE_URI.startswith("sqlite"):
        SQLALCHEMY_ENGINE_OPTIONS = {
            "connect_args": {
                "check_same_thread": False,
                "timeout": 5,
            }
        }
    else:
        SQLALCHEMY_ENGINE_OPTIONS = {}


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = os.environ.get("SECRET_KEY", "test-secret-key-for-testing-only")
    # A file database: the worker runs in its own app context and session.
    SQLALCHEMY_DATABASE_URI = os.environ.get("TEST_DATABASE_URL", "sqlite:///enrollment_test.db")
    SQLALCHEMY_ECHO = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "connect_args": {
            "check_same_thread": False,
            "timeout": 5,
        }
    }
    IMPORTER_BATCH_PAUSE_SECONDS = 0.0
    CELERY_CONFIG = {"task_always_eager": True, "task_eager_propagates": True}


class ProductionConfig(Config):
    DEBUG = False
    uri = os.environ.get("DATABASE_URL")
    if uri and uri.startswith("postgres://"):
        uri = uri.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = uri
    SQLALCHEMY_ECHO = False
