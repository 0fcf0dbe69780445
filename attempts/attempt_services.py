"""Services for starting, submitting, redoing and navigating quiz attempts."""

from __future__ import annotations

import logging
import random
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterable, Mapping

from django.db import transaction
from django.db.models import Max

from . import conf
from .attempt_view import AttemptView, QuizStructure, load_quiz_structure
from .collaborators import (
    AccessManager,
    GradeAggregator,
    ItemSelector,
    ItemUsage,
    ItemUsageStore,
    VariantStrategy,
)
from .exceptions import (
    AttemptError,
    ConfigurationMismatch,
    InsufficientItemPool,
    InvalidAttemptOperation,
    LayoutError,
    OutOfSequence,
    ResponseProcessingError,
    SubmissionOutOfSequence,
)
from .layout import check_layout, remap_layout_for_build_on_last, split_pages
from .lifecycle_services import (
    handle_time_check,
    lock_attempt,
    process_abandon,
    process_finish,
    process_going_overdue,
    sync_attempt,
)
from .models import Quiz, QuizAttempt
from .variants import ForcedVariantStrategy, LeastUsedVariantStrategy

logger = logging.getLogger(__name__)

GRADE_EPSILON = Decimal("0.000005")

ATTEMPT_STATUS_FILTERS = {
    "all": None,
    "finished": (QuizAttempt.State.FINISHED, QuizAttempt.State.ABANDONED),
    "unfinished": QuizAttempt.OPEN_STATES,
}


@dataclass(frozen=True)
class NewAttemptCheck:
    unfinished_attempt: QuizAttempt | None
    attempt_number: int | None
    last_attempt: QuizAttempt | None
    messages: list[str]

    @property
    def can_start(self) -> bool:
        return self.unfinished_attempt is None and not self.messages


def get_user_attempts(
    quiz: Quiz,
    user,
    *,
    status: str = "finished",
    include_previews: bool = False,
) -> list[QuizAttempt]:
    if status not in ATTEMPT_STATUS_FILTERS:
        raise ValueError(f"Unknown attempt status filter: {status}")
    attempts = QuizAttempt.objects.filter(quiz=quiz, user=user).select_related("quiz")
    states = ATTEMPT_STATUS_FILTERS[status]
    if states is not None:
        attempts = attempts.filter(state__in=states)
    if not include_previews:
        attempts = attempts.filter(is_preview=False)
    return list(attempts.order_by("attempt_number"))


def get_user_attempt_unfinished(quiz: Quiz, user) -> QuizAttempt | None:
    attempts = get_user_attempts(quiz, user, status="unfinished", include_previews=True)
    return attempts[0] if attempts else None


def next_attempt_number(quiz: Quiz, user) -> int:
    latest = QuizAttempt.objects.filter(quiz=quiz, user=user, is_preview=False).aggregate(
        latest=Max("attempt_number")
    )["latest"]
    return int(latest or 0) + 1


def validate_new_attempt(
    quiz: Quiz,
    user,
    now: datetime,
    *,
    access_manager: AccessManager,
    usage_store: ItemUsageStore,
    grade_aggregator: GradeAggregator | None = None,
) -> NewAttemptCheck:
    """Work out whether the user continues an open attempt or may start the next one."""
    attempts = get_user_attempts(quiz, user, status="all", include_previews=True)
    last_attempt = attempts[-1] if attempts else None

    if last_attempt is not None and last_attempt.is_open:
        handle_time_check(
            last_attempt,
            now,
            access_manager=access_manager,
            usage_store=usage_store,
            grade_aggregator=grade_aggregator,
        )
        if last_attempt.is_open:
            return NewAttemptCheck(
                unfinished_attempt=last_attempt,
                attempt_number=None,
                last_attempt=last_attempt,
                messages=access_manager.prevent_access(),
            )

    real_attempts = [attempt for attempt in attempts if not attempt.is_preview]
    last_real = real_attempts[-1] if real_attempts else None
    attempt_number = last_real.attempt_number + 1 if last_real else 1
    messages = access_manager.prevent_access() + access_manager.prevent_new_attempt(len(real_attempts), last_real)
    return NewAttemptCheck(
        unfinished_attempt=None,
        attempt_number=attempt_number,
        last_attempt=last_real,
        messages=messages,
    )


def create_attempt(
    quiz: Quiz,
    attempt_number: int,
    last_attempt: QuizAttempt | None,
    now: datetime,
    *,
    user,
    is_preview: bool = False,
    access_manager: AccessManager,
) -> QuizAttempt:
    """Build the in-memory attempt row. Nothing is saved here."""
    if Decimal(quiz.sum_grades) < GRADE_EPSILON and Decimal(quiz.grade) > GRADE_EPSILON:
        raise ConfigurationMismatch(
            f"Quiz {quiz.pk} has a maximum grade of {quiz.grade} but no marks to award."
        )

    if attempt_number == 1 or not quiz.attempt_on_last:
        attempt = QuizAttempt(quiz=quiz, user=user, is_preview=False, layout=[], redo_origins={})
    else:
        if last_attempt is None:
            raise ConfigurationMismatch(f"Cannot find the previous attempt to build attempt {attempt_number} on.")
        attempt = QuizAttempt(
            quiz=quiz,
            user_id=last_attempt.user_id,
            is_preview=last_attempt.is_preview,
            layout=list(last_attempt.layout or []),
            redo_origins=dict(last_attempt.redo_origins or {}),
        )

    attempt.attempt_number = attempt_number
    attempt.time_start = now
    attempt.time_finish = None
    attempt.time_modified = now
    attempt.time_modified_offline = None
    attempt.state = QuizAttempt.State.IN_PROGRESS
    attempt.current_page = 0
    attempt.sum_grades = None
    if is_preview:
        attempt.is_preview = True

    if attempt.is_preview:
        attempt.time_check_state = None
    else:
        attempt.time_check_state = access_manager.end_time(attempt)
    return attempt


def _resolve_item_ids(
    structure: QuizStructure,
    item_selector: ItemSelector | None,
    forced_item_ids: Mapping[int, int],
) -> dict[int, int]:
    item_ids: dict[int, int] = {}
    for number in sorted(structure.slots):
        spec = structure.slots[number]
        if not spec.is_random:
            item_ids[number] = int(spec.item_id)
            continue
        if item_selector is None:
            raise ConfigurationMismatch(f"Slot {number} is random but no item selector was supplied.")

        forced = forced_item_ids.get(number)
        if forced is not None:
            if not item_selector.is_item_available(
                spec.random_category, spec.random_include_subcategories, forced, spec.random_tag_ids
            ):
                raise InvalidAttemptOperation(f"Forced item {forced} is not available for slot {number}.")
            item_ids[number] = int(forced)
            continue

        item_id = item_selector.next_item_id(
            spec.random_category, spec.random_include_subcategories, spec.random_tag_ids
        )
        if item_id is None:
            raise InsufficientItemPool(spec.random_category, number)
        item_ids[number] = int(item_id)
    return item_ids


def start_fresh(
    attempt: QuizAttempt,
    structure: QuizStructure,
    usage: ItemUsage,
    *,
    now: datetime,
    item_selector: ItemSelector | None = None,
    usage_store: ItemUsageStore | None = None,
    previous_usage_ids: Iterable[str] = (),
    variant_strategy: VariantStrategy | None = None,
    forced_item_ids: Mapping[int, int] | None = None,
    forced_variants: Mapping[int, int] | None = None,
    rng: random.Random | None = None,
) -> QuizAttempt:
    """Fill a new usage with the quiz's items, start them and lay the attempt out."""
    item_ids = _resolve_item_ids(structure, item_selector, forced_item_ids or {})

    for number, item_id in item_ids.items():
        new_slot = usage.add_item(item_id, structure.slots[number].max_mark)
        if new_slot != number:
            raise LayoutError(f"Item for slot {number} was added as slot {new_slot}.")

    if variant_strategy is None:
        variant_strategy = LeastUsedVariantStrategy(usage_store, list(previous_usage_ids), rng)
    if forced_variants:
        variant_strategy = ForcedVariantStrategy(forced_variants, variant_strategy)
    usage.start_items(variant_strategy, now)

    attempt.layout = structure.compute_layout(rng=rng)
    check_layout(attempt.layout, structure.slot_count)
    return attempt


def start_built_on_last(
    attempt: QuizAttempt,
    usage: ItemUsage,
    previous_usage: ItemUsage,
    *,
    now: datetime,
) -> QuizAttempt:
    """Carry every item of the previous usage over, keeping its state so far.

    ``attempt.layout`` and ``attempt.redo_origins`` still hold the previous
    attempt's values here and are renumbered for the new usage.
    """
    old_to_new: dict[int, int] = {}
    for old_slot in previous_usage.slots():
        new_slot = usage.add_item(previous_usage.item_id(old_slot), previous_usage.max_mark(old_slot))
        usage.start_item_based_on(new_slot, previous_usage, old_slot, now)
        old_to_new[old_slot] = new_slot

    attempt.layout = remap_layout_for_build_on_last(attempt.layout or [], old_to_new)
    attempt.redo_origins = {
        str(old_to_new[int(slot)]): old_to_new[int(original)]
        for slot, original in (attempt.redo_origins or {}).items()
    }
    return attempt


def attempt_save_started(attempt: QuizAttempt, usage: ItemUsage, *, usage_store: ItemUsageStore) -> QuizAttempt:
    with transaction.atomic():
        usage_store.save(usage)
        attempt.usage_id = usage.usage_id
        attempt.save(force_insert=True)
    logger.info(
        "Started %sattempt %s (#%s) on quiz=%s for user=%s",
        "preview " if attempt.is_preview else "",
        attempt.pk,
        attempt.attempt_number,
        attempt.quiz_id,
        attempt.user_id,
    )
    return attempt


def delete_attempt(
    attempt: QuizAttempt,
    *,
    usage_store: ItemUsageStore,
    grade_aggregator: GradeAggregator | None = None,
) -> None:
    with transaction.atomic():
        usage_store.delete(attempt.usage_id)
        attempt_id = attempt.pk
        attempt.delete()
        if not attempt.is_preview and grade_aggregator is not None:
            grade_aggregator.attempt_finished(attempt.quiz, attempt.user_id)
    logger.info("Deleted attempt %s of quiz=%s user=%s", attempt_id, attempt.quiz_id, attempt.user_id)


def delete_previews(quiz: Quiz, *, user=None, usage_store: ItemUsageStore) -> int:
    previews = QuizAttempt.objects.filter(quiz=quiz, is_preview=True).select_related("quiz")
    if user is not None:
        previews = previews.filter(user=user)
    deleted = 0
    for attempt in previews:
        delete_attempt(attempt, usage_store=usage_store)
        deleted += 1
    return deleted


def prepare_and_start_new_attempt(
    quiz: Quiz,
    user,
    now: datetime,
    *,
    attempt_number: int,
    last_attempt: QuizAttempt | None,
    usage_store: ItemUsageStore,
    access_manager: AccessManager,
    item_selector: ItemSelector | None = None,
    is_preview: bool = False,
    offline: bool = False,
    forced_item_ids: Mapping[int, int] | None = None,
    forced_variants: Mapping[int, int] | None = None,
    rng: random.Random | None = None,
) -> QuizAttempt:
    """Create, start and save a new attempt in one transaction."""
    with transaction.atomic():
        delete_previews(quiz, user=user, usage_store=usage_store)
        if get_user_attempt_unfinished(quiz, user) is not None:
            raise InvalidAttemptOperation(f"User {user.pk} already has an unfinished attempt on quiz {quiz.pk}.")

        attempt = create_attempt(
            quiz,
            attempt_number,
            last_attempt,
            now,
            user=user,
            is_preview=is_preview,
            access_manager=access_manager,
        )
        usage = usage_store.create(owner=f"quiz:{quiz.pk}")

        if quiz.attempt_on_last and last_attempt is not None and attempt_number > 1:
            previous_usage = usage_store.load(last_attempt.usage_id)
            start_built_on_last(attempt, usage, previous_usage, now=now)
        else:
            previous_usage_ids = list(
                QuizAttempt.objects.filter(quiz=quiz, user=user).values_list("usage_id", flat=True)
            )
            start_fresh(
                attempt,
                load_quiz_structure(quiz),
                usage,
                now=now,
                item_selector=item_selector,
                usage_store=usage_store,
                previous_usage_ids=previous_usage_ids,
                forced_item_ids=forced_item_ids,
                forced_variants=forced_variants,
                rng=rng,
            )

        if offline:
            attempt.time_modified_offline = attempt.time_modified
        return attempt_save_started(attempt, usage, usage_store=usage_store)


def process_submitted_actions(
    attempt: QuizAttempt,
    now: datetime,
    *,
    usage: ItemUsage,
    usage_store: ItemUsageStore,
    responses: Mapping[int, Any] | None = None,
    becoming_overdue: bool = False,
) -> QuizAttempt:
    with transaction.atomic():
        locked = lock_attempt(attempt)
        if not locked.is_open:
            raise InvalidAttemptOperation(f"Attempt {locked.pk} is already {locked.state}.")
        usage.process_actions(now, responses)
        usage_store.save(usage)

        locked.time_modified = now
        locked.save(update_fields=["time_modified"])
        if becoming_overdue:
            process_going_overdue(locked, now)
    return sync_attempt(attempt, locked)


def process_auto_save(
    attempt: QuizAttempt,
    now: datetime,
    *,
    usage: ItemUsage,
    usage_store: ItemUsageStore,
    responses: Mapping[int, Any] | None = None,
) -> QuizAttempt:
    with transaction.atomic():
        locked = lock_attempt(attempt)
        if not locked.is_open:
            raise InvalidAttemptOperation(f"Attempt {locked.pk} is already {locked.state}.")
        usage.process_autosaves(now, responses)
        usage_store.save(usage)
        locked.time_modified = now
        locked.save(update_fields=["time_modified"])
    return sync_attempt(attempt, locked)


def redo_item(
    attempt: QuizAttempt,
    slot: int,
    now: datetime,
    *,
    usage: ItemUsage,
    usage_store: ItemUsageStore,
    structure: QuizStructure,
    item_selector: ItemSelector | None = None,
    variant_strategy: VariantStrategy | None = None,
) -> int:
    """Replace the finished item in ``slot`` with a fresh one and return the slot now holding the old item."""
    with transaction.atomic():
        locked = lock_attempt(attempt)
        view = AttemptView(locked, structure, usage)
        spec = structure.slots.get(slot)
        if spec is None or not view.can_item_be_redone_now(slot):
            raise InvalidAttemptOperation(f"The item in slot {slot} cannot be redone now.")

        if not spec.is_random:
            item_id = int(spec.item_id)
        else:
            if item_selector is None:
                raise ConfigurationMismatch(f"Slot {slot} is random but no item selector was supplied.")
            item_id = item_selector.next_item_id(
                spec.random_category, spec.random_include_subcategories, spec.random_tag_ids
            )
            if item_id is None:
                raise InsufficientItemPool(spec.random_category, slot)

        # Add first: the variant seed belongs to the new item.
        new_slot = usage.add_item_in_place_of_other(slot, item_id)
        num_variants = usage.num_variants(slot)
        if num_variants == 1:
            variant = 1
        else:
            if variant_strategy is None:
                previous_usage_ids = list(
                    QuizAttempt.objects.filter(quiz=locked.quiz_id, user=locked.user_id).values_list(
                        "usage_id", flat=True
                    )
                )
                variant_strategy = LeastUsedVariantStrategy(usage_store, previous_usage_ids)
            variant = variant_strategy.choose_variant(slot, item_id, num_variants, usage.variant_seed(slot))
        usage.start_item(slot, variant, now)
        usage.set_max_mark(new_slot, Decimal("0"))

        origins = dict(locked.redo_origins or {})
        origins[str(new_slot)] = slot
        locked.redo_origins = origins
        locked.time_modified = now
        locked.save(update_fields=["redo_origins", "time_modified"])
        usage_store.save(usage)

    logger.info("Attempt %s: slot %s redone, previous item kept in slot %s", locked.pk, slot, new_slot)
    sync_attempt(attempt, locked)
    return new_slot


def _check_page_move(attempt: QuizAttempt, page: int) -> bool:
    current = attempt.current_page
    if current != page and attempt.quiz.is_sequential and current > page:
        return False
    return True


def set_current_page(attempt: QuizAttempt, page: int) -> QuizAttempt:
    with transaction.atomic():
        locked = lock_attempt(attempt)
        if not _check_page_move(locked, page):
            raise InvalidAttemptOperation(
                f"Attempt {locked.pk} uses sequential navigation and cannot go back to page {page}."
            )
        if locked.current_page != page:
            locked.current_page = page
            locked.save(update_fields=["current_page"])
    return sync_attempt(attempt, locked)


def set_offline_modified_time(attempt: QuizAttempt, when: datetime | None) -> QuizAttempt:
    attempt.time_modified_offline = when
    QuizAttempt.objects.filter(pk=attempt.pk).update(time_modified_offline=when)
    return attempt


def _page_after_submit(attempt: QuizAttempt, this_page: int, next_page: int | None) -> int:
    page_count = len(split_pages(attempt.layout or []))
    target = this_page + 1 if next_page is None else next_page
    if page_count:
        target = max(0, min(target, page_count - 1))
    else:
        target = 0
    if not _check_page_move(attempt, target):
        return attempt.current_page
    return target


@contextmanager
def _usage_errors(attempt: QuizAttempt, this_page: int):
    try:
        yield
    except OutOfSequence as exc:
        raise SubmissionOutOfSequence(attempt.pk, this_page) from exc
    except AttemptError:
        raise
    except Exception as exc:
        raise ResponseProcessingError(f"Error processing the responses for attempt {attempt.pk}: {exc}") from exc


def submit_page(
    attempt: QuizAttempt,
    *,
    now: datetime,
    responses: Mapping[int, Any] | None,
    this_page: int,
    usage_store: ItemUsageStore,
    access_manager: AccessManager,
    next_page: int | None = None,
    finish_requested: bool = False,
    time_up: bool = False,
    redo_slots: Iterable[int] = (),
    structure: QuizStructure | None = None,
    item_selector: ItemSelector | None = None,
    grade_aggregator: GradeAggregator | None = None,
) -> str:
    """Process one submitted page and return the attempt's resulting state.

    Close to the deadline the page cannot be continued, so the attempt is
    finished, sent overdue or abandoned according to the quiz's overdue policy.
    """
    min_time_to_continue = conf.min_time_to_continue()
    grace_period_min = conf.grace_period_min()

    with transaction.atomic():
        locked = lock_attempt(attempt)
        if not locked.is_open:
            raise InvalidAttemptOperation(f"Attempt {locked.pk} is already {locked.state}.")
        quiz = locked.quiz

        deadline = None if locked.is_preview else access_manager.end_time(locked)
        too_late = False
        if deadline is not None and now > deadline - min_time_to_continue:
            time_up = True
            if now > deadline + grace_period_min:
                too_late = True

        finishing = finish_requested
        becoming_overdue = False
        becoming_abandoned = False
        if time_up:
            if quiz.overdue_handling == Quiz.OverdueHandling.GRACEPERIOD and deadline is not None:
                if now > deadline + quiz.grace_period + grace_period_min:
                    finishing = True
                    becoming_abandoned = True
                else:
                    becoming_overdue = True
            else:
                finishing = True

        if not finishing:
            if too_late:
                process_going_overdue(locked, now)
            else:
                usage = usage_store.load(locked.usage_id)
                with _usage_errors(locked, this_page):
                    process_submitted_actions(
                        locked,
                        now,
                        usage=usage,
                        usage_store=usage_store,
                        responses=responses,
                        becoming_overdue=becoming_overdue,
                    )
                if not becoming_overdue:
                    for slot in redo_slots:
                        redo_item(
                            locked,
                            slot,
                            now,
                            usage=usage,
                            usage_store=usage_store,
                            structure=structure or load_quiz_structure(quiz),
                            item_selector=item_selector,
                        )
                    page = _page_after_submit(locked, this_page, next_page)
                    if page != locked.current_page:
                        locked.current_page = page
                        locked.save(update_fields=["current_page"])
            sync_attempt(attempt, locked)
            return QuizAttempt.State.OVERDUE if locked.state == QuizAttempt.State.OVERDUE else QuizAttempt.State.IN_PROGRESS

        if becoming_abandoned:
            process_abandon(locked, now)
        else:
            usage = usage_store.load(locked.usage_id)
            with _usage_errors(locked, this_page):
                process_finish(
                    locked,
                    now,
                    usage=usage,
                    usage_store=usage_store,
                    process_submitted=not too_late,
                    responses=responses,
                    grade_aggregator=grade_aggregator,
                    access_manager=access_manager,
                )
    sync_attempt(attempt, locked)
    return locked.state
