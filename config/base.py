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
        number = int(value) if value not in (None, "") else default
    except (TypeError, ValueError):
        number = default
    if minimum is not None and number < minimum:
        return minimum
    return number


def _parse_name_list(value):
    """
    Parse a comma-separated name list while keeping order and removing duplicates.

    Returns:
        tuple[str, ...]: Normalized identifiers.
    """
    if not value:
        return ()

    seen = set()
    names = []
    for raw_item in value.split(","):
        item = raw_item.strip().lower()
        if not item or item in seen:
            continue
        seen.add(item)
        names.append(item)
    return tuple(names)


class Config:
    _flask_env = os.environ.get("FLASK_ENV", "development")
    _is_testing = _flask_env == "testing"
    _is_production = _flask_env == "production"

    SECRET_KEY = os.environ.get("SECRET_KEY")

    if not SECRET_KEY and _is_production:
        raise ValueError(
            "SECRET_KEY environment variable is required in production. "
            'Generate with: python -c "import secrets; print(secrets.token_hex(32))"'
        )

    if not SECRET_KEY and not _is_testing:
        import warnings

        warnings.warn(
            "SECRET_KEY not set. Using default for development only. "
            "Set SECRET_KEY before deploying.",
            UserWarning,
        )
        SECRET_KEY = "dev-secret-key-change-in-production"

    if not SECRET_KEY:
        SECRET_KEY = "test-secret-key-placeholder"

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {}

    # Sync engine
    SYNC_ENABLED = _coerce_bool(os.environ.get("SYNC_ENABLED"), default=False)
    SYNC_JOB_FAMILIES = _parse_name_list(os.environ.get("SYNC_JOB_FAMILIES", "export,thumbnail,sync"))

    if SYNC_ENABLED and not SYNC_JOB_FAMILIES:
        raise ValueError("SYNC_ENABLED is true but SYNC_JOB_FAMILIES is empty. Provide at least one job family.")

    SYNC_WORKER_ENABLED = _coerce_bool(os.environ.get("SYNC_WORKER_ENABLED"), default=False)
    CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL")
    CELERY_RESULT_BACKEND = os.environ.get("CELERY_RESULT_BACKEND")
    CELERY_SQLITE_PATH = os.environ.get("CELERY_SQLITE_PATH")
    CELERY_CONFIG = os.environ.get("CELERY_CONFIG")

    SYNC_CONNECTION_ID = os.environ.get("SYNC_CONNECTION_ID", "default")
    SYNC_API_VERSION = os.environ.get("SYNC_API_VERSION", "2024-01")

    # Relational target; the app database when unset
    SYNC_TARGET_DATABASE_URL = os.environ.get("SYNC_TARGET_DATABASE_URL")
    SYNC_WRITER_CHUNK_SIZE = _coerce_int(os.environ.get("SYNC_WRITER_CHUNK_SIZE"), 100, minimum=1)
    SYNC_WRITER_EXACT_COUNTS = _coerce_bool(os.environ.get("SYNC_WRITER_EXACT_COUNTS"), default=True)

    # Job families
    SYNC_ARTIFACT_DIR = os.environ.get("SYNC_ARTIFACT_DIR")
    SYNC_EXPORT_TTL_HOURS = _coerce_int(os.environ.get("SYNC_EXPORT_TTL_HOURS"), 24, minimum=1)
    SYNC_EXPORT_CONCURRENCY = _coerce_int(os.environ.get("SYNC_EXPORT_CONCURRENCY"), 2, minimum=1)
    SYNC_THUMBNAIL_CONCURRENCY = _coerce_int(os.environ.get("SYNC_THUMBNAIL_CONCURRENCY"), 1, minimum=1)
    SYNC_THUMBNAIL_MAX_WORKERS = _coerce_int(os.environ.get("SYNC_THUMBNAIL_MAX_WORKERS"), 4, minimum=1)
    SYNC_SYNC_CONCURRENCY = _coerce_int(os.environ.get("SYNC_SYNC_CONCURRENCY"), 1, minimum=1)
    SYNC_JOB_ERROR_MAX_LENGTH = _coerce_int(os.environ.get("SYNC_JOB_ERROR_MAX_LENGTH"), 500, minimum=50)

    # Transforms
    SYNC_LOOKUP_MAX_ROWS = _coerce_int(os.environ.get("SYNC_LOOKUP_MAX_ROWS"), 10000, minimum=1)
    SYNC_EXPRESSION_MAX_LENGTH = _coerce_int(os.environ.get("SYNC_EXPRESSION_MAX_LENGTH"), 500, minimum=1)

    # Remote API and webhooks
    SYNC_REMOTE_GRAPHQL_URL = os.environ.get("SYNC_REMOTE_GRAPHQL_URL")
    SYNC_REMOTE_ACCESS_TOKEN = os.environ.get("SYNC_REMOTE_ACCESS_TOKEN")
    SYNC_REMOTE_PAGE_SIZE = _coerce_int(os.environ.get("SYNC_REMOTE_PAGE_SIZE"), 250, minimum=1)
    SYNC_WEBHOOK_SECRET = os.environ.get("SYNC_WEBHOOK_SECRET")
    SYNC_MAPPINGS_DIR = os.environ.get("SYNC_MAPPINGS_DIR")


class DevelopmentConfig(Config):
    DEBUG = True
    _config_dir = os.path.dirname(os.path.abspath(__file__))
    _project_root = os.path.dirname(_config_dir)
    instance_path = os.path.join(_project_root, "instance")

    if not os.path.exists(instance_path):
        os.makedirs(instance_path, exist_ok=True)

    # SQLite URIs need forward slashes on Windows too
    db_path = os.path.join(instance_path, "sync_dev.db").replace("\\", "/")
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
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_ECHO = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "connect_args": {
            "check_same_thread": False,
            "timeout": 5,
        }
    }


class ProductionConfig(Config):
    DEBUG = False
    uri = os.environ.get("DATABASE_URL")
    if uri and uri.startswith("postgres://"):
        uri = uri.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = uri
    SQLALCHEMY_ECHO = False
