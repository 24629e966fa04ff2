"""Settings for the test runner: SQLite and dev auth switched on by default."""
import os

os.environ.setdefault("DJANGO_DEBUG", "1")
os.environ.setdefault("DJANGO_USE_SQLITE", "1")
os.environ.setdefault("DJANGO_ALLOW_SQLITE", "1")

from scm_api.settings import *  # noqa: E402,F401,F403

DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": ":memory:",
    }
}

LOGGING["root"]["level"] = "CRITICAL"  # noqa: F405
LOGGING["loggers"]["scm.audit"]["level"] = "CRITICAL"  # noqa: F405
