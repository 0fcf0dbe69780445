"""Settings for the exam portal and timed quiz attempts."""

from __future__ import annotations

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent


def _as_bool_env(name: str, *, default: str = "0") -> bool:
    return os.environ.get(name, default).strip().lower() in {"1", "true", "yes", "on"}


def _as_csv_env(name: str, *, default: str = "") -> list[str]:
    value = os.environ.get(name, default)
    return [part.strip() for part in value.split(",") if part.strip()]


SECRET_KEY = os.environ.get("EXAM_PORTAL_SECRET_KEY", "dev-insecure-secret-change-me")

DEBUG = _as_bool_env("EXAM_PORTAL_DEBUG", default="false")

ALLOWED_HOSTS = _as_csv_env("EXAM_PORTAL_ALLOWED_HOSTS") or [
    "127.0.0.1",
    "localhost",
]
CSRF_TRUSTED_ORIGINS = _as_csv_env("EXAM_PORTAL_CSRF_TRUSTED_ORIGINS")

INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    "attempts",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
]

ROOT_URLCONF = "exam_portal.urls"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
                "django.contrib.messages.context_processors.messages",
            ],
        },
    },
]

WSGI_APPLICATION = "exam_portal.wsgi.application"

DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": os.environ.get("EXAM_PORTAL_DB_PATH", str(BASE_DIR / "db.sqlite3")),
    }
}

LANGUAGE_CODE = "en-us"
TIME_ZONE = "UTC"
USE_I18N = True
USE_TZ = True

STATIC_URL = "/static/"

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "plain": {"format": "%(asctime)s %(levelname)s %(name)s: %(message)s"},
    },
    "handlers": {
        "console": {"class": "logging.StreamHandler", "formatter": "plain"},
    },
    "loggers": {
        "attempts": {
            "handlers": ["console"],
            "level": os.environ.get("EXAM_PORTAL_LOG_LEVEL", "INFO").upper(),
            "propagate": False,
        },
    },
}

# If there is less than this long left before the deadline, a page submit is
# treated as the final one.
EXAM_ATTEMPTS_MIN_TIME_TO_CONTINUE_SECONDS = int(
    os.environ.get("EXAM_ATTEMPTS_MIN_TIME_TO_CONTINUE_SECONDS", "2")
)
# Extra time after the deadline during which a late submit is still accepted.
EXAM_ATTEMPTS_GRACE_PERIOD_MIN_SECONDS = int(
    os.environ.get("EXAM_ATTEMPTS_GRACE_PERIOD_MIN_SECONDS", "60")
)

# Dotted paths for the external collaborators.
EXAM_ATTEMPTS_ITEM_USAGE_STORE = os.environ.get("EXAM_ATTEMPTS_ITEM_USAGE_STORE", "")
EXAM_ATTEMPTS_ACCESS_MANAGER = os.environ.get(
    "EXAM_ATTEMPTS_ACCESS_MANAGER",
    "attempts.access.QuizAccessManager",
)
EXAM_ATTEMPTS_GRADE_AGGREGATOR = os.environ.get(
    "EXAM_ATTEMPTS_GRADE_AGGREGATOR",
    "attempts.collaborators.LoggingGradeAggregator",
)
