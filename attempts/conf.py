"""Settings accessors and collaborator loading for quiz attempts."""

from __future__ import annotations

from datetime import timedelta

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured
from django.utils.module_loading import import_string


def min_time_to_continue() -> timedelta:
    value = int(getattr(settings, "EXAM_ATTEMPTS_MIN_TIME_TO_CONTINUE_SECONDS", 2))
    return timedelta(seconds=max(0, value))


def grace_period_min() -> timedelta:
    value = int(getattr(settings, "EXAM_ATTEMPTS_GRACE_PERIOD_MIN_SECONDS", 60))
    return timedelta(seconds=max(0, value))


def _load(setting_name: str, default: str = ""):
    dotted_path = str(getattr(settings, setting_name, default) or "").strip()
    if not dotted_path:
        raise ImproperlyConfigured(f"{setting_name} must name a class by dotted path.")
    return import_string(dotted_path)


def item_usage_store():
    """Instantiate the configured item usage store."""
    return _load("EXAM_ATTEMPTS_ITEM_USAGE_STORE")()


def grade_aggregator():
    return _load(
        "EXAM_ATTEMPTS_GRADE_AGGREGATOR",
        "attempts.collaborators.LoggingGradeAggregator",
    )()


def access_manager(quiz, user, now):
    manager_class = _load("EXAM_ATTEMPTS_ACCESS_MANAGER", "attempts.access.QuizAccessManager")
    return manager_class(quiz, user, now)
