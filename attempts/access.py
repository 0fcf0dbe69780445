"""Default access rules: open and close dates, time limit and number of attempts."""

from __future__ import annotations

import logging
from datetime import datetime

from django.utils import formats

from .models import Quiz, QuizOverride
from .timing import EffectiveTiming, attempt_deadline, effective_timing

logger = logging.getLogger(__name__)


def load_overrides(quiz: Quiz, user) -> tuple[QuizOverride | None, list[QuizOverride]]:
    """Return the user's own override and the overrides of every group the user belongs to."""
    if user is None or getattr(user, "pk", None) is None:
        return None, []
    user_override = QuizOverride.objects.filter(quiz=quiz, user=user).first()
    group_overrides = list(
        QuizOverride.objects.filter(quiz=quiz, group__in=user.groups.all()).order_by("pk")
    )
    return user_override, group_overrides


def _display(value: datetime) -> str:
    return formats.date_format(value, "DATETIME_FORMAT")


class QuizAccessManager:
    """Deadline and eligibility checks for one user at one moment."""

    def __init__(self, quiz: Quiz, user, now: datetime, *, timing: EffectiveTiming | None = None) -> None:
        self.quiz = quiz
        self.user = user
        self.now = now
        if timing is None:
            user_override, group_overrides = load_overrides(quiz, user)
            timing = effective_timing(quiz, user_override, group_overrides)
        self.timing = timing

    def end_time(self, attempt) -> datetime | None:
        return attempt_deadline(attempt.time_start, self.timing)

    def prevent_access(self) -> list[str]:
        messages: list[str] = []
        quiz = self.quiz
        if quiz.time_open and self.now < quiz.time_open:
            messages.append(f"This quiz is not available until {_display(quiz.time_open)}.")
            return messages

        close = self.timing.time_close
        if close is None or self.now <= close:
            return messages
        if quiz.overdue_handling == Quiz.OverdueHandling.GRACEPERIOD and self.now <= close + quiz.grace_period:
            return messages
        messages.append(f"This quiz closed on {_display(close)}.")
        return messages

    def prevent_new_attempt(self, attempt_count: int, last_attempt) -> list[str]:
        allowed = self.quiz.attempts_allowed_limit
        if allowed is not None and attempt_count >= allowed:
            return ["No more attempts are allowed."]
        return []

    def is_finished(self, attempt_count: int, last_attempt) -> bool:
        allowed = self.quiz.attempts_allowed_limit
        if allowed is not None and attempt_count >= allowed:
            return True
        close = self.timing.time_close
        return close is not None and self.now > close

    def current_attempt_finished(self) -> None:
        logger.debug("Attempt finished for quiz=%s user=%s", self.quiz.pk, getattr(self.user, "pk", None))
