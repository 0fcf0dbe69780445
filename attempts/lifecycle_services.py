"""State transitions of a quiz attempt: time checks, overdue, abandon and finish.

Every transition locks the attempt row and runs in one transaction together
with the matching item usage write.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Mapping

from django.db import transaction

from .collaborators import AccessManager, GradeAggregator, ItemUsage, ItemUsageStore
from .exceptions import InvalidAttemptOperation
from .models import Quiz, QuizAttempt

logger = logging.getLogger(__name__)

_STATE_FIELDS = (
    "state",
    "current_page",
    "layout",
    "time_finish",
    "time_modified",
    "time_modified_offline",
    "time_check_state",
    "sum_grades",
    "redo_origins",
)


def lock_attempt(attempt: QuizAttempt) -> QuizAttempt:
    """Re-read the attempt row under a row lock. Must be called inside ``transaction.atomic``."""
    return QuizAttempt.objects.select_for_update().select_related("quiz").get(pk=attempt.pk)


def sync_attempt(target: QuizAttempt, source: QuizAttempt) -> QuizAttempt:
    """Copy the mutable columns of ``source`` onto the caller's instance."""
    if target is not source:
        for name in _STATE_FIELDS:
            setattr(target, name, getattr(source, name))
    return target


def update_time_check_state(attempt: QuizAttempt, when: datetime | None) -> None:
    """Write only the check time. A non-null value only lands on a row that is still open."""
    if attempt.time_check_state == when:
        return
    rows = QuizAttempt.objects.filter(pk=attempt.pk)
    if when is not None:
        rows = rows.filter(state__in=QuizAttempt.OPEN_STATES)
    if rows.update(time_check_state=when):
        attempt.time_check_state = when


def process_going_overdue(attempt: QuizAttempt, now: datetime, *, recheck_at: datetime | None = None) -> QuizAttempt:
    """Move an in-progress attempt to OVERDUE.

    ``time_check_state`` becomes ``recheck_at`` when the grace deadline is known,
    otherwise ``now`` so the next sweep works it out.
    """
    with transaction.atomic():
        locked = lock_attempt(attempt)
        if not locked.is_open:
            raise InvalidAttemptOperation(f"Attempt {locked.pk} is already {locked.state}.")
        locked.state = QuizAttempt.State.OVERDUE
        locked.time_modified = now
        locked.time_check_state = recheck_at or now
        locked.save(update_fields=["state", "time_modified", "time_check_state"])
    logger.info("Attempt %s is overdue", locked.pk)
    return sync_attempt(attempt, locked)


def process_abandon(attempt: QuizAttempt, now: datetime) -> QuizAttempt:
    with transaction.atomic():
        locked = lock_attempt(attempt)
        if not locked.is_open:
            raise InvalidAttemptOperation(f"Attempt {locked.pk} is already {locked.state}.")
        locked.state = QuizAttempt.State.ABANDONED
        locked.time_modified = now
        locked.time_finish = now
        locked.time_check_state = None
        locked.save(update_fields=["state", "time_modified", "time_finish", "time_check_state"])
    logger.info("Attempt %s abandoned", locked.pk)
    return sync_attempt(attempt, locked)


def process_finish(
    attempt: QuizAttempt,
    now: datetime,
    *,
    usage: ItemUsage,
    usage_store: ItemUsageStore,
    process_submitted: bool = True,
    responses: Mapping[int, Any] | None = None,
    grade_aggregator: GradeAggregator | None = None,
    access_manager: AccessManager | None = None,
) -> QuizAttempt:
    """Finish every item, store the total mark and close the attempt.

    The usage save and the attempt row update commit together or not at all.
    """
    with transaction.atomic():
        locked = lock_attempt(attempt)
        if not locked.is_open:
            raise InvalidAttemptOperation(f"Attempt {locked.pk} is already {locked.state}.")

        if process_submitted:
            usage.process_actions(now, responses)
        usage.finish_all(now)
        usage_store.save(usage)

        locked.state = QuizAttempt.State.FINISHED
        locked.time_modified = now
        locked.time_finish = now
        locked.time_check_state = None
        locked.sum_grades = usage.total_mark()
        locked.save(update_fields=["state", "time_modified", "time_finish", "time_check_state", "sum_grades"])

        if not locked.is_preview:
            if grade_aggregator is not None:
                grade_aggregator.attempt_finished(locked.quiz, locked.user_id)
            if access_manager is not None:
                access_manager.current_attempt_finished()

    logger.info("Attempt %s finished with sum_grades=%s", locked.pk, locked.sum_grades)
    return sync_attempt(attempt, locked)


def handle_time_check(
    attempt: QuizAttempt,
    now: datetime,
    *,
    access_manager: AccessManager,
    usage_store: ItemUsageStore,
    grade_aggregator: GradeAggregator | None = None,
) -> QuizAttempt:
    """Apply whatever transition the clock calls for. Safe to repeat on any attempt."""
    if attempt.is_finished:
        update_time_check_state(attempt, None)
        return attempt

    deadline = access_manager.end_time(attempt)
    if deadline is None or attempt.is_preview:
        update_time_check_state(attempt, None)
        return attempt
    if now < deadline:
        update_time_check_state(attempt, deadline)
        return attempt

    quiz: Quiz = attempt.quiz
    if attempt.state == QuizAttempt.State.OVERDUE:
        if now - deadline >= quiz.grace_period:
            return process_abandon(attempt, now)
        update_time_check_state(attempt, deadline + quiz.grace_period)
        return attempt

    if attempt.state != QuizAttempt.State.IN_PROGRESS:
        update_time_check_state(attempt, None)
        return attempt

    policy = quiz.overdue_handling
    if policy == Quiz.OverdueHandling.AUTOSUBMIT:
        usage = usage_store.load(attempt.usage_id)
        return process_finish(
            attempt,
            now,
            usage=usage,
            usage_store=usage_store,
            process_submitted=False,
            grade_aggregator=grade_aggregator,
            access_manager=access_manager,
        )
    if policy == Quiz.OverdueHandling.GRACEPERIOD:
        return process_going_overdue(attempt, now, recheck_at=deadline + quiz.grace_period)
    if policy != Quiz.OverdueHandling.AUTOABANDON:
        logger.warning("Quiz %s has unknown overdue handling %r; abandoning attempt %s", quiz.pk, policy, attempt.pk)
    return process_abandon(attempt, now)
