"""Batch maintenance of open attempts.

``recheck_open_attempts`` recomputes when each open attempt is next due for a
time check; it never changes an attempt's state. ``process_overdue_attempts``
then applies the transitions for attempts whose check time has come.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime
from typing import Callable, Iterable

from django.contrib.auth import get_user_model
from django.db import transaction

from . import conf
from .collaborators import AccessManager, GradeAggregator, ItemUsageStore
from .lifecycle_services import handle_time_check
from .models import QuizAttempt, QuizOverride
from .timing import attempt_time_check_state, effective_timing

logger = logging.getLogger(__name__)

AccessManagerFactory = Callable[..., AccessManager]


def _open_attempts(
    *,
    course_keys: Iterable[str] | None = None,
    user_ids: Iterable[int] | None = None,
    quiz_ids: Iterable[int] | None = None,
    group_ids: Iterable[int] | None = None,
):
    attempts = QuizAttempt.objects.filter(state__in=QuizAttempt.OPEN_STATES).select_related("quiz")
    if course_keys is not None:
        attempts = attempts.filter(quiz__course_key__in=list(course_keys))
    if user_ids is not None:
        attempts = attempts.filter(user_id__in=list(user_ids))
    if quiz_ids is not None:
        attempts = attempts.filter(quiz_id__in=list(quiz_ids))
    if group_ids is not None:
        overridden_quizzes = QuizOverride.objects.filter(group_id__in=list(group_ids)).values("quiz_id")
        attempts = attempts.filter(quiz_id__in=overridden_quizzes)
    return attempts


def _group_memberships(user_ids: set[int]) -> dict[int, set[int]]:
    membership_model = get_user_model().groups.through
    memberships: dict[int, set[int]] = defaultdict(set)
    rows = membership_model.objects.filter(user_id__in=user_ids).values_list("user_id", "group_id")
    for user_id, group_id in rows:
        memberships[user_id].add(group_id)
    return memberships


@transaction.atomic
def recheck_open_attempts(
    *,
    course_keys: Iterable[str] | None = None,
    user_ids: Iterable[int] | None = None,
    quiz_ids: Iterable[int] | None = None,
    group_ids: Iterable[int] | None = None,
    batch_size: int = 500,
) -> int:
    """Recompute ``time_check_state`` for every open attempt matching the filters.

    Overrides for all affected quizzes are loaded once and resolved per
    (quiz, user) in memory; only changed rows are written, and only that column.
    """
    attempts = list(
        _open_attempts(course_keys=course_keys, user_ids=user_ids, quiz_ids=quiz_ids, group_ids=group_ids)
    )
    if not attempts:
        return 0

    quiz_ids_seen = {attempt.quiz_id for attempt in attempts}
    user_overrides: dict[tuple[int, int], QuizOverride] = {}
    group_overrides: dict[int, dict[int, QuizOverride]] = defaultdict(dict)
    for override in QuizOverride.objects.filter(quiz_id__in=quiz_ids_seen):
        if override.user_id is not None:
            user_overrides[(override.quiz_id, override.user_id)] = override
        elif override.group_id is not None:
            group_overrides[override.quiz_id][override.group_id] = override

    memberships = _group_memberships({attempt.user_id for attempt in attempts})

    changed: list[QuizAttempt] = []
    for attempt in attempts:
        quiz_groups = group_overrides.get(attempt.quiz_id, {})
        applicable = [
            override for group_id, override in quiz_groups.items() if group_id in memberships.get(attempt.user_id, ())
        ]
        timing = effective_timing(attempt.quiz, user_overrides.get((attempt.quiz_id, attempt.user_id)), applicable)
        value = attempt_time_check_state(
            time_start=attempt.time_start,
            state=attempt.state,
            timing=timing,
            grace_period=attempt.quiz.grace_period,
            is_preview=attempt.is_preview,
        )
        if value != attempt.time_check_state:
            attempt.time_check_state = value
            changed.append(attempt)

    if changed:
        QuizAttempt.objects.bulk_update(changed, ["time_check_state"], batch_size=batch_size)
    logger.info("Rechecked %s open attempt(s); %s time check(s) changed", len(attempts), len(changed))
    return len(attempts)


def process_overdue_attempts(
    now: datetime,
    *,
    process_to: datetime | None = None,
    usage_store: ItemUsageStore | None = None,
    grade_aggregator: GradeAggregator | None = None,
    access_manager_factory: AccessManagerFactory | None = None,
) -> tuple[int, int]:
    """Run the time check on every open attempt due by ``process_to``.

    Returns the number of attempts processed and the number of quizzes they
    belong to. A failing attempt is logged and skipped.
    """
    process_to = process_to or now
    if usage_store is None:
        usage_store = conf.item_usage_store()
    if grade_aggregator is None:
        grade_aggregator = conf.grade_aggregator()
    if access_manager_factory is None:
        access_manager_factory = conf.access_manager

    attempts = (
        QuizAttempt.objects.filter(state__in=QuizAttempt.OPEN_STATES, time_check_state__lte=process_to)
        .select_related("quiz", "user")
        .order_by("quiz__course_key", "quiz_id", "pk")
    )

    count = 0
    quiz_count = 0
    current_quiz_id = None
    for attempt in list(attempts):
        if attempt.quiz_id != current_quiz_id:
            current_quiz_id = attempt.quiz_id
            quiz_count += 1
        try:
            with transaction.atomic():
                handle_time_check(
                    attempt,
                    now,
                    access_manager=access_manager_factory(attempt.quiz, attempt.user, now),
                    usage_store=usage_store,
                    grade_aggregator=grade_aggregator,
                )
            count += 1
        except Exception:
            logger.exception("Error while processing attempt %s of quiz %s", attempt.pk, attempt.quiz_id)

    logger.info("Processed %s overdue attempt(s) across %s quiz(zes)", count, quiz_count)
    return count, quiz_count
