# config.py
import os

DEFAULT_PUBLIC_EMAIL_DOMAINS = (
    "gmail.com",
    "googlemail.com",
    "yahoo.com",
    "yahoo.co.uk",
    "hotmail.com",
    "outlook.com",
    "live.com",
    "msn.com",
    "aol.com",
    "icloud.com",
    "me.com",
    "mac.com",
    "proton.me",
    "protonmail.com",
    "gmx.com",
    "gmx.de",
    "mail.com",
    "yandex.com",
    "zoho.com",
)

AMBIGUOUS_POLICIES = ("skip", "create")


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
    """Parse an integer setting, falling back to ``default`` on bad input."""
    if value is None or str(value).strip() == "":
        return default
    try:
        number = int(str(value).strip())
    except ValueError:
        return default
    if minimum is not None and number < minimum:
        return default
    return number


def _parse_domain_list(value):
    """
    Parse a comma-separated domain list while keeping order and removing duplicates.

    Returns:
        tuple[str, ...]: Lower-cased domains.
    """
    if not value:
        return ()

    seen = set()
    domains = []
    for raw_item in value.split(","):
        item = raw_item.strip().lower()
        if not item or item in seen:
            continue
        seen.add(item)
        domains.append(item)
    return tuple(domains)


class Config:
    # SECRET_KEY must be set via environment variable for security
    # Generate with: python -c "import secrets; print(secrets.token_hex(32))"
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
            "Set SECRET_KEY environment variable before deploying.",
            UserWarning,
        )
        SECRET_KEY = "dev-secret-key-change-in-production"

    if not SECRET_KEY:
        SECRET_KEY = "test-secret-key-placeholder"

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {}

    # Logging
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
    LOG_DIR = os.environ.get("LOG_DIR", "logs")
    ENABLE_FILE_LOGGING = _coerce_bool(os.environ.get("ENABLE_FILE_LOGGING"), default=False)
    ENABLE_CONSOLE_LOGGING = _coerce_bool(os.environ.get("ENABLE_CONSOLE_LOGGING"), default=True)

    # Importer configuration
    IMPORTER_ENABLED = _coerce_bool(os.environ.get("IMPORTER_ENABLED"), default=False)
    IMPORTER_WORKER_ENABLED = _coerce_bool(os.environ.get("IMPORTER_WORKER_ENABLED"), default=False)
    CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL")
    CELERY_RESULT_BACKEND = os.environ.get("CELERY_RESULT_BACKEND")
    CELERY_SQLITE_PATH = os.environ.get("CELERY_SQLITE_PATH")
    CELERY_CONFIG = os.environ.get("CELERY_CONFIG")

    IMPORTER_UPLOAD_DIR = os.environ.get("IMPORTER_UPLOAD_DIR")
    IMPORTER_STORAGE_DIR = os.environ.get("IMPORTER_STORAGE_DIR")
    IMPORTER_FIELD_SCHEMA_DIR = os.environ.get(
        "IMPORTER_FIELD_SCHEMA_DIR",
        os.path.join(os.path.dirname(__file__), "import_fields"),
    )
    IMPORTER_MAX_UPLOAD_MB = _coerce_int(os.environ.get("IMPORTER_MAX_UPLOAD_MB"), 25, minimum=1)
    IMPORTER_MAX_ROWS = _coerce_int(os.environ.get("IMPORTER_MAX_ROWS"), 10000, minimum=1)
    IMPORTER_BATCH_SIZE = _coerce_int(os.environ.get("IMPORTER_BATCH_SIZE"), 500, minimum=1)
    IMPORTER_SESSION_TTL_HOURS = _coerce_int(os.environ.get("IMPORTER_SESSION_TTL_HOURS"), 24, minimum=1)
    IMPORTER_COMPLETED_TTL_HOURS = _coerce_int(os.environ.get("IMPORTER_COMPLETED_TTL_HOURS"), 2, minimum=0)
    IMPORTER_PREVIEW_SAMPLE_SIZE = _coerce_int(os.environ.get("IMPORTER_PREVIEW_SAMPLE_SIZE"), 50, minimum=1)
    IMPORTER_VALUES_PAGE_SIZE = _coerce_int(os.environ.get("IMPORTER_VALUES_PAGE_SIZE"), 50, minimum=1)
    IMPORTER_ALLOW_TWO_DIGIT_YEARS = _coerce_bool(
        os.environ.get("IMPORTER_ALLOW_TWO_DIGIT_YEARS"),
        default=True,
    )

    # Ambiguous matches are never resolved silently; operators choose the policy.
    IMPORTER_AMBIGUOUS_POLICY = os.environ.get("IMPORTER_AMBIGUOUS_POLICY", "skip").strip().lower()
    if IMPORTER_AMBIGUOUS_POLICY not in AMBIGUOUS_POLICIES:
        raise ValueError(
            f"IMPORTER_AMBIGUOUS_POLICY must be one of {', '.join(AMBIGUOUS_POLICIES)}; "
            f"got '{IMPORTER_AMBIGUOUS_POLICY}'."
        )

    IMPORTER_PUBLIC_EMAIL_DOMAINS_ENABLED = _coerce_bool(
        os.environ.get("IMPORTER_PUBLIC_EMAIL_DOMAINS_ENABLED"),
        default=True,
    )
    IMPORTER_PUBLIC_EMAIL_DOMAINS = (
        _parse_domain_list(os.environ.get("IMPORTER_PUBLIC_EMAIL_DOMAINS", "")) or DEFAULT_PUBLIC_EMAIL_DOMAINS
    )
    IMPORTER_TASK_TIME_LIMIT = _coerce_int(os.environ.get("IMPORTER_TASK_TIME_LIMIT"), 30 * 60, minimum=60)
    IMPORTER_TASK_SOFT_TIME_LIMIT = _coerce_int(
        os.environ.get("IMPORTER_TASK_SOFT_TIME_LIMIT"),
        25 * 60,
        minimum=30,
    )


class DevelopmentConfig(Config):
    DEBUG = True
    _config_dir = os.path.dirname(os.path.abspath(__file__))
    _project_root = os.path.dirname(_config_dir)
    instance_path = os.path.join(_project_root, "instance")

    if not os.path.exists(instance_path):
        os.makedirs(instance_path, exist_ok=True)

    # SQLite URI format: sqlite:///absolute/path (3 slashes for absolute path)
    db_path_normalized = os.path.join(instance_path, "crm_dev.db").replace("\\", "/")
    db_uri = f"sqlite:///{db_path_normalized}"

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
    IMPORTER_ENABLED = True
    IMPORTER_WORKER_ENABLED = False
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
    SESSION_COOKIE_SECURE = True
