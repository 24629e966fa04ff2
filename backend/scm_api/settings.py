import os
from pathlib import Path


BASE_DIR = Path(__file__).resolve().parent.parent


def _load_env_file(path: Path) -> None:
    """
    Read KEY=VALUE pairs from a local .env file into os.environ.
    Values already present in the environment win.
    """
    if not path.exists():
        return
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if key.lower().startswith("export "):
            key = key[7:].strip()
        if not key:
            continue
        os.environ.setdefault(key, value.strip().strip('"').strip("'"))


def _get_csv_env(name: str, default: list[str]) -> list[str]:
    value = os.getenv(name)
    if value is None:
        return default
    return [item.strip() for item in value.split(",") if item.strip()]


def _get_int_env(name: str, default: int | None) -> int | None:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise RuntimeError(f"Invalid {name} value: {raw!r}") from exc


_load_env_file(BASE_DIR / ".env")

SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "dev-only-insecure-key")
DEBUG = os.getenv("DJANGO_DEBUG", "0") == "1"
ALLOWED_HOSTS = _get_csv_env("DJANGO_ALLOWED_HOSTS", ["*"])

if not DEBUG:
    if SECRET_KEY == "dev-only-insecure-key":
        raise RuntimeError("DEBUG is False but DJANGO_SECRET_KEY is still the dev default.")
    if not ALLOWED_HOSTS or "*" in ALLOWED_HOSTS:
        raise RuntimeError("DEBUG is False but DJANGO_ALLOWED_HOSTS is empty or contains '*'.")

INSTALLED_APPS = [
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    "rest_framework",
    "api",
    "orders",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
]

ROOT_URLCONF = "scm_api.urls"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.debug",
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
                "django.contrib.messages.context_processors.messages",
            ],
        },
    }
]

WSGI_APPLICATION = "scm_api.wsgi.application"

# PostgreSQL is the runtime database; row locks (select_for_update) rely on it.
use_sqlite = os.getenv("DJANGO_USE_SQLITE", "0") == "1"
allow_sqlite = os.getenv("DJANGO_ALLOW_SQLITE", "0") == "1"
if use_sqlite and not allow_sqlite:
    raise RuntimeError(
        "SQLite backend is disabled by default. "
        "Set DJANGO_ALLOW_SQLITE=1 only for temporary local tooling."
    )

if use_sqlite:
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": BASE_DIR / "db.sqlite3",
        }
    }
else:
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.postgresql",
            "NAME": os.getenv("DB_NAME", ""),
            "USER": os.getenv("DB_USER", ""),
            "PASSWORD": os.getenv("DB_PASSWORD", ""),
            "HOST": os.getenv("DB_HOST", ""),
            "PORT": os.getenv("DB_PORT", "5432"),
        }
    }

AUTH_PASSWORD_VALIDATORS = []

LANGUAGE_CODE = "en-us"
TIME_ZONE = "UTC"
USE_I18N = True
USE_TZ = True

STATIC_URL = "/static/"

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "plain": {
            "format": "%(asctime)s %(levelname)s %(name)s %(message)s",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "plain",
        },
    },
    "loggers": {
        "scm.audit": {"handlers": ["console"], "level": LOG_LEVEL, "propagate": False},
        "api": {"handlers": ["console"], "level": LOG_LEVEL, "propagate": False},
    },
    "root": {"handlers": ["console"], "level": "WARNING"},
}

# AuthN/AuthZ configuration (env-driven; no claim-name assumptions).
AUTH_ENABLED = os.getenv("AUTH_ENABLED", "0") == "1"
AUTH_ISSUER = os.getenv("AUTH_ISSUER", "")
AUTH_AUDIENCE = os.getenv("AUTH_AUDIENCE", "")
AUTH_JWKS_URL = os.getenv("AUTH_JWKS_URL", "")
AUTH_ALGORITHMS = _get_csv_env("AUTH_ALGORITHMS", ["RS256"])
AUTH_USER_ID_CLAIM = os.getenv("AUTH_USER_ID_CLAIM", "")
AUTH_USERNAME_CLAIM = os.getenv("AUTH_USERNAME_CLAIM", "")
AUTH_ROLES_CLAIM = os.getenv("AUTH_ROLES_CLAIM", "")
AUTH_WAREHOUSE_CLAIM = os.getenv("AUTH_WAREHOUSE_CLAIM", "")
AUTH_SUPPLIER_CLAIM = os.getenv("AUTH_SUPPLIER_CLAIM", "")

if AUTH_ENABLED:
    missing = [
        name
        for name, value in (
            ("AUTH_ISSUER", AUTH_ISSUER),
            ("AUTH_AUDIENCE", AUTH_AUDIENCE),
            ("AUTH_JWKS_URL", AUTH_JWKS_URL),
            ("AUTH_USER_ID_CLAIM", AUTH_USER_ID_CLAIM),
            ("AUTH_ALGORITHMS", AUTH_ALGORITHMS),
            ("AUTH_ROLES_CLAIM", AUTH_ROLES_CLAIM),
        )
        if not value
    ]
    if missing:
        raise RuntimeError(
            "AUTH_ENABLED is true but required settings are missing: "
            + ", ".join(missing)
        )

DEV_AUTH_ENABLED = os.getenv("DEV_AUTH_ENABLED", "0") == "1"
DEV_AUTH_USER_ID = os.getenv("DEV_AUTH_USER_ID", "dev-user")
DEV_AUTH_ROLES = _get_csv_env("DEV_AUTH_ROLES", [])
DEV_AUTH_WAREHOUSE_ID = _get_int_env("DEV_AUTH_WAREHOUSE_ID", None)
DEV_AUTH_SUPPLIER_ID = _get_int_env("DEV_AUTH_SUPPLIER_ID", None)
DEV_AUTH_PERMISSIONS = _get_csv_env("DEV_AUTH_PERMISSIONS", [])

# Order lifecycle settings.
INVOICE_DUE_DAYS = _get_int_env("INVOICE_DUE_DAYS", 30)
PUTAWAY_TASK_DUE_DAYS = _get_int_env("PUTAWAY_TASK_DUE_DAYS", 1)
RECEIPT_DEFAULT_REORDER_LEVEL = _get_int_env("RECEIPT_DEFAULT_REORDER_LEVEL", 0)
PAYMENT_CURRENCY = os.getenv("PAYMENT_CURRENCY", "BDT")
PAYMENT_GATEWAY_NAME = os.getenv("PAYMENT_GATEWAY_NAME", "SSLCommerz")
