from __future__ import annotations

from datetime import datetime, timedelta, timezone as dt_timezone
from decimal import Decimal

from django.test import TestCase, override_settings

from attempts.attempt_services import (
    create_attempt,
    delete_previews,
    get_user_attempt_unfinished,
    get_user_attempts,
    next_attempt_number,
    prepare_and_start_new_attempt,
    process_auto_save,
    redo_item,
    set_current_page,
    set_offline_modified_time,
    submit_page,
    validate_new_attempt,
)
from attempts.attempt_view import load_quiz_structure
from attempts.collaborators import ItemState
from attempts.exceptions import (
    ConfigurationMismatch,
    InsufficientItemPool,
    InvalidAttemptOperation,
    OutOfSequence,
    ResponseProcessingError,
    SubmissionOutOfSequence,
)
from attempts.lifecycle_services import process_finish
from attempts.models import Quiz, QuizAttempt, QuizSlot
from attempts.tests.fakes import (
    FakeAccessManager,
    FakeItemSelector,
    FakeItemUsageStore,
    RecordingGradeAggregator,
    create_quiz,
    create_user,
    save_attempt,
    started_usage,
)

START = datetime(2026, 6, 1, 8, 0, tzinfo=dt_timezone.utc)
DEADLINE = START + timedelta(hours=1)


class AttemptServiceTestCase(TestCase):
    def setUp(self) -> None:
        self.user = create_user()
        self.store = FakeItemUsageStore()
        self.access = FakeAccessManager(DEADLINE)

    def start(self, quiz: Quiz, *, attempt_number: int = 1, last_attempt=None, **kwargs) -> QuizAttempt:
        return prepare_and_start_new_attempt(
            quiz,
            self.user,
            START,
            attempt_number=attempt_number,
            last_attempt=last_attempt,
            usage_store=self.store,
            access_manager=self.access,
            **kwargs,
        )

    def submit(self, attempt: QuizAttempt, now: datetime, responses, this_page: int, **kwargs) -> str:
        return submit_page(
            attempt,
            now=now,
            responses=responses,
            this_page=this_page,
            usage_store=self.store,
            access_manager=self.access,
            **kwargs,
        )


class StartAttemptTests(AttemptServiceTestCase):
    def test_fresh_attempt_is_saved_with_layout_and_usage(self) -> None:
        quiz = create_quiz(slot_count=3)

        attempt = self.start(quiz)

        row = QuizAttempt.objects.get(pk=attempt.pk)
        self.assertEqual(row.state, QuizAttempt.State.IN_PROGRESS)
        self.assertEqual(row.layout, [1, 0, 2, 0, 3, 0])
        self.assertEqual(row.current_page, 0)
        self.assertEqual(row.time_start, START)
        self.assertEqual(row.time_check_state, DEADLINE)
        self.assertIsNone(row.sum_grades)
        usage = self.store.saved[row.usage_id]
        self.assertEqual([usage.item_id(slot) for slot in usage.slots()], [101, 102, 103])
        self.assertTrue(all(usage.item_state(slot) == ItemState.TODO for slot in usage.slots()))

    def test_preview_has_no_time_check(self) -> None:
        quiz = create_quiz(slot_count=1)

        attempt = self.start(quiz, is_preview=True)

        self.assertTrue(attempt.is_preview)
        self.assertIsNone(attempt.time_check_state)

    def test_offline_attempt_records_offline_modified_time(self) -> None:
        quiz = create_quiz(slot_count=1)

        attempt = self.start(quiz, offline=True)

        self.assertEqual(attempt.time_modified_offline, START)
        set_offline_modified_time(attempt, None)
        self.assertIsNone(QuizAttempt.objects.get(pk=attempt.pk).time_modified_offline)

    def test_random_slot_draws_from_selector(self) -> None:
        quiz = create_quiz(slot_count=2)
        QuizSlot.objects.filter(quiz=quiz, slot=2).update(item_id=None, random_category="algebra")
        selector = FakeItemSelector({"algebra": [555, 556]})

        attempt = self.start(quiz, item_selector=selector)

        usage = self.store.saved[attempt.usage_id]
        self.assertEqual(usage.item_id(2), 555)
        self.assertEqual(selector.requests, [("algebra", False, ())])

    def test_forced_items_and_variants(self) -> None:
        quiz = create_quiz(slot_count=2)
        QuizSlot.objects.filter(quiz=quiz, slot=2).update(item_id=None, random_category="algebra")
        selector = FakeItemSelector({"algebra": [555, 556]})

        attempt = self.start(quiz, item_selector=selector, forced_item_ids={2: 556}, forced_variants={1: 3})

        usage = self.store.saved[attempt.usage_id]
        self.assertEqual(usage.item_id(2), 556)
        self.assertEqual(usage.variant(1), 3)
        self.assertEqual(selector.requests, [])

    def test_forced_item_must_be_available(self) -> None:
        quiz = create_quiz(slot_count=2)
        QuizSlot.objects.filter(quiz=quiz, slot=2).update(item_id=None, random_category="algebra")

        with self.assertRaises(InvalidAttemptOperation):
            self.start(quiz, item_selector=FakeItemSelector({"algebra": [555]}), forced_item_ids={2: 999})
        self.assertFalse(QuizAttempt.objects.exists())

    def test_exhausted_pool_leaves_nothing_behind(self) -> None:
        quiz = create_quiz(slot_count=2)
        QuizSlot.objects.filter(quiz=quiz, slot=1).update(item_id=None, random_category="geometry")

        with self.assertRaises(InsufficientItemPool) as ctx:
            self.start(quiz, item_selector=FakeItemSelector({"geometry": []}))

        self.assertEqual(ctx.exception.slot, 1)
        self.assertFalse(QuizAttempt.objects.exists())
        self.assertEqual(self.store.saved, {})

    def test_quiz_without_marks_cannot_be_attempted(self) -> None:
        quiz = create_quiz(slot_count=1, sum_grades=Decimal("0"), grade=Decimal("10"))

        with self.assertRaises(ConfigurationMismatch):
            create_attempt(quiz, 1, None, START, user=self.user, access_manager=self.access)

    def test_build_on_last_needs_the_previous_attempt(self) -> None:
        quiz = create_quiz(slot_count=1, attempt_on_last=True)

        with self.assertRaises(ConfigurationMismatch):
            create_attempt(quiz, 2, None, START, user=self.user, access_manager=self.access)

    def test_second_open_attempt_is_refused(self) -> None:
        quiz = create_quiz(slot_count=1)
        self.start(quiz)

        with self.assertRaises(InvalidAttemptOperation):
            self.start(quiz, attempt_number=2)
        self.assertEqual(QuizAttempt.objects.count(), 1)

    def test_starting_deletes_the_users_previews(self) -> None:
        quiz = create_quiz(slot_count=1)
        preview = self.start(quiz, is_preview=True)
        process_finish(preview, START, usage=self.store.load(preview.usage_id), usage_store=self.store)

        attempt = self.start(quiz)

        self.assertEqual(list(QuizAttempt.objects.values_list("pk", flat=True)), [attempt.pk])
        self.assertNotIn(preview.usage_id, self.store.saved)

    def test_build_on_last_carries_responses_and_layout(self) -> None:
        quiz = create_quiz(slot_count=3, attempt_on_last=True)
        first = self.start(quiz)
        QuizAttempt.objects.filter(pk=first.pk).update(layout=[3, 0, 1, 2, 0], redo_origins={})
        first.refresh_from_db()
        process_finish(
            first,
            START + timedelta(minutes=5),
            usage=self.store.load(first.usage_id),
            usage_store=self.store,
            responses={3: 1},
        )

        second = self.start(quiz, attempt_number=2, last_attempt=first)

        self.assertEqual(second.layout, [3, 0, 1, 2, 0])
        self.assertEqual(second.attempt_number, 2)
        usage = self.store.saved[second.usage_id]
        self.assertEqual(usage.item_state(3), ItemState.COMPLETE)
        self.assertEqual(usage.item_state(1), ItemState.TODO)
        self.assertNotEqual(second.usage_id, first.usage_id)


class SubmitPageTests(AttemptServiceTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.quiz = create_quiz(slot_count=3)
        self.attempt = self.start(self.quiz)

    def test_three_page_attempt_submitted_just_after_deadline(self) -> None:
        aggregator = RecordingGradeAggregator()

        state = self.submit(self.attempt, DEADLINE - timedelta(seconds=10), {1: 1}, 0)
        self.assertEqual(state, QuizAttempt.State.IN_PROGRESS)
        self.assertEqual(self.attempt.current_page, 1)

        self.submit(self.attempt, DEADLINE - timedelta(seconds=8), {2: "0.5"}, 1)
        self.assertEqual(self.attempt.current_page, 2)

        finish_at = DEADLINE + timedelta(seconds=1)
        state = self.submit(self.attempt, finish_at, {3: 0}, 2, finish_requested=True, grade_aggregator=aggregator)

        self.assertEqual(state, QuizAttempt.State.FINISHED)
        row = QuizAttempt.objects.get(pk=self.attempt.pk)
        self.assertEqual(row.state, QuizAttempt.State.FINISHED)
        self.assertEqual(row.time_finish, finish_at)
        self.assertEqual(row.sum_grades, Decimal("1.5"))
        self.assertIsNone(row.time_check_state)
        self.assertEqual(aggregator.calls, [(self.quiz.pk, self.user.pk)])
        self.assertEqual(self.access.finished_calls, 1)

    def test_explicit_next_page_is_clamped(self) -> None:
        self.submit(self.attempt, START, {}, 0, next_page=12)

        self.assertEqual(self.attempt.current_page, 2)

    def test_sequential_quiz_never_moves_back(self) -> None:
        Quiz.objects.filter(pk=self.quiz.pk).update(navigation_method=Quiz.NavigationMethod.SEQUENTIAL)
        self.submit(self.attempt, START, {}, 0, next_page=2)

        self.submit(self.attempt, START, {}, 2, next_page=0)

        self.assertEqual(QuizAttempt.objects.get(pk=self.attempt.pk).current_page, 2)

    def test_stale_submission_is_reported_out_of_sequence(self) -> None:
        self.store.saved[self.attempt.usage_id].fail_with = OutOfSequence("sequence check failed")

        with self.assertRaises(SubmissionOutOfSequence) as ctx:
            self.submit(self.attempt, START, {1: 1}, 0)

        self.assertEqual((ctx.exception.attempt_id, ctx.exception.page), (self.attempt.pk, 0))
        self.assertEqual(QuizAttempt.objects.get(pk=self.attempt.pk).current_page, 0)

    def test_unexpected_usage_failure_is_wrapped(self) -> None:
        self.store.saved[self.attempt.usage_id].fail_with = ValueError("bad response")

        with self.assertRaises(ResponseProcessingError):
            self.submit(self.attempt, START, {1: 1}, 0)

    def test_late_submit_under_autosubmit_ignores_the_late_responses(self) -> None:
        state = self.submit(self.attempt, DEADLINE + timedelta(minutes=5), {1: 1}, 0)

        self.assertEqual(state, QuizAttempt.State.FINISHED)
        usage = self.store.saved[self.attempt.usage_id]
        self.assertIsNone(usage.items[1]["response"])
        self.assertEqual(QuizAttempt.objects.get(pk=self.attempt.pk).sum_grades, Decimal("0"))

    def test_graceperiod_submit_after_deadline_goes_overdue(self) -> None:
        Quiz.objects.filter(pk=self.quiz.pk).update(
            overdue_handling=Quiz.OverdueHandling.GRACEPERIOD,
            grace_period_seconds=600,
        )
        now = DEADLINE + timedelta(seconds=30)

        state = self.submit(self.attempt, now, {1: 1}, 0)

        self.assertEqual(state, QuizAttempt.State.OVERDUE)
        row = QuizAttempt.objects.get(pk=self.attempt.pk)
        self.assertEqual(row.state, QuizAttempt.State.OVERDUE)
        self.assertEqual(row.time_check_state, now)
        self.assertEqual(self.store.saved[row.usage_id].items[1]["response"], Decimal("1"))

    def test_graceperiod_submit_after_grace_is_abandoned(self) -> None:
        Quiz.objects.filter(pk=self.quiz.pk).update(
            overdue_handling=Quiz.OverdueHandling.GRACEPERIOD,
            grace_period_seconds=600,
        )

        state = self.submit(self.attempt, DEADLINE + timedelta(seconds=600 + 61), {1: 1}, 0)

        self.assertEqual(state, QuizAttempt.State.ABANDONED)
        self.assertIsNone(QuizAttempt.objects.get(pk=self.attempt.pk).sum_grades)

    @override_settings(EXAM_ATTEMPTS_MIN_TIME_TO_CONTINUE_SECONDS=30)
    def test_minimum_time_to_continue_is_configurable(self) -> None:
        state = self.submit(self.attempt, DEADLINE - timedelta(seconds=10), {1: 1}, 0)

        self.assertEqual(state, QuizAttempt.State.FINISHED)

    def test_closed_attempt_cannot_be_submitted(self) -> None:
        self.submit(self.attempt, START, {}, 0, finish_requested=True)

        with self.assertRaises(InvalidAttemptOperation):
            self.submit(self.attempt, START, {}, 0)


class RedoTests(AttemptServiceTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.quiz = create_quiz(slot_count=3, can_redo_items=True)
        self.attempt = self.start(self.quiz)
        self.store.saved[self.attempt.usage_id].finish_item(2, "0.5")

    def _redo(self, slot: int) -> int:
        return redo_item(
            self.attempt,
            slot,
            START + timedelta(minutes=1),
            usage=self.store.load(self.attempt.usage_id),
            usage_store=self.store,
            structure=load_quiz_structure(self.quiz),
        )

    def test_redo_keeps_the_old_item_in_a_new_slot(self) -> None:
        new_slot = self._redo(2)

        self.assertEqual(new_slot, 4)
        self.assertEqual(self.attempt.original_slot(4), 2)
        self.assertEqual(self.attempt.original_slot(2), 2)
        self.assertEqual(QuizAttempt.objects.get(pk=self.attempt.pk).redo_origins, {"4": 2})
        usage = self.store.saved[self.attempt.usage_id]
        self.assertEqual(usage.max_mark(4), Decimal("0"))
        self.assertEqual(usage.item_state(4), ItemState.GRADED_PARTIAL)
        self.assertEqual(usage.item_state(2), ItemState.TODO)
        self.assertEqual(usage.item_id(2), 102)
        self.assertEqual(self.attempt.layout, [1, 0, 2, 0, 3, 0])

    def test_unfinished_item_cannot_be_redone(self) -> None:
        with self.assertRaises(InvalidAttemptOperation):
            self._redo(1)

    def test_redo_through_submit_page(self) -> None:
        self.submit(self.attempt, START, {}, 1, redo_slots=[2], next_page=1)

        self.assertEqual(QuizAttempt.objects.get(pk=self.attempt.pk).redo_origins, {"4": 2})


class AttemptQueryTests(AttemptServiceTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.quiz = create_quiz(slot_count=1)

    def _attempt(self, number: int, state: str, *, user=None, is_preview: bool = False) -> QuizAttempt:
        usage = started_usage(self.store, [101])
        return save_attempt(
            self.quiz,
            user or self.user,
            usage,
            self.store,
            attempt_number=number,
            state=state,
            is_preview=is_preview,
            time_start=START,
        )

    def test_status_filters_and_previews(self) -> None:
        first = self._attempt(1, QuizAttempt.State.FINISHED)
        second = self._attempt(2, QuizAttempt.State.ABANDONED)
        open_attempt = self._attempt(3, QuizAttempt.State.IN_PROGRESS)
        preview = self._attempt(4, QuizAttempt.State.FINISHED, is_preview=True)

        self.assertEqual(get_user_attempts(self.quiz, self.user), [first, second])
        self.assertEqual(get_user_attempts(self.quiz, self.user, status="unfinished"), [open_attempt])
        self.assertEqual(
            get_user_attempts(self.quiz, self.user, status="all", include_previews=True),
            [first, second, open_attempt, preview],
        )
        self.assertEqual(get_user_attempt_unfinished(self.quiz, self.user), open_attempt)
        with self.assertRaises(ValueError):
            get_user_attempts(self.quiz, self.user, status="recent")

    def test_next_attempt_number_ignores_previews(self) -> None:
        self.assertEqual(next_attempt_number(self.quiz, self.user), 1)
        self._attempt(1, QuizAttempt.State.FINISHED)
        self._attempt(5, QuizAttempt.State.FINISHED, is_preview=True)

        self.assertEqual(next_attempt_number(self.quiz, self.user), 2)

    def test_delete_previews_only_touches_previews(self) -> None:
        other = create_user("other")
        kept = self._attempt(1, QuizAttempt.State.FINISHED)
        mine = self._attempt(2, QuizAttempt.State.IN_PROGRESS, is_preview=True)
        theirs = self._attempt(1, QuizAttempt.State.IN_PROGRESS, user=other, is_preview=True)

        self.assertEqual(delete_previews(self.quiz, user=self.user, usage_store=self.store), 1)
        self.assertTrue(QuizAttempt.objects.filter(pk=theirs.pk).exists())
        self.assertEqual(delete_previews(self.quiz, usage_store=self.store), 1)

        self.assertEqual(list(QuizAttempt.objects.values_list("pk", flat=True)), [kept.pk])
        self.assertNotIn(mine.usage_id, self.store.saved)
        self.assertIn(kept.usage_id, self.store.saved)

    def test_auto_save_stores_draft_responses(self) -> None:
        attempt = self._attempt(1, QuizAttempt.State.IN_PROGRESS)
        later = START + timedelta(minutes=3)

        process_auto_save(
            attempt,
            later,
            usage=self.store.load(attempt.usage_id),
            usage_store=self.store,
            responses={1: "draft"},
        )

        self.assertEqual(self.store.saved[attempt.usage_id].autosaved, {1: "draft"})
        self.assertEqual(QuizAttempt.objects.get(pk=attempt.pk).time_modified, later)

    def test_sequential_quiz_refuses_to_go_back(self) -> None:
        Quiz.objects.filter(pk=self.quiz.pk).update(navigation_method=Quiz.NavigationMethod.SEQUENTIAL)
        attempt = self._attempt(1, QuizAttempt.State.IN_PROGRESS)
        set_current_page(attempt, 2)

        with self.assertRaises(InvalidAttemptOperation):
            set_current_page(attempt, 1)

        set_current_page(attempt, 2)
        self.assertEqual(QuizAttempt.objects.get(pk=attempt.pk).current_page, 2)


class ValidateNewAttemptTests(AttemptServiceTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.quiz = create_quiz(slot_count=1)

    def test_first_attempt_may_start(self) -> None:
        check = validate_new_attempt(self.quiz, self.user, START, access_manager=self.access, usage_store=self.store)

        self.assertTrue(check.can_start)
        self.assertEqual(check.attempt_number, 1)
        self.assertIsNone(check.last_attempt)

    def test_open_attempt_in_time_is_continued(self) -> None:
        attempt = self.start(self.quiz)

        check = validate_new_attempt(
            self.quiz, self.user, START + timedelta(minutes=1), access_manager=self.access, usage_store=self.store
        )

        self.assertFalse(check.can_start)
        self.assertEqual(check.unfinished_attempt, attempt)

    def test_expired_attempt_is_closed_before_the_next_one(self) -> None:
        attempt = self.start(self.quiz)

        check = validate_new_attempt(
            self.quiz, self.user, DEADLINE + timedelta(minutes=1), access_manager=self.access, usage_store=self.store
        )

        self.assertTrue(check.can_start)
        self.assertEqual(check.attempt_number, 2)
        self.assertEqual(check.last_attempt.pk, attempt.pk)
        self.assertEqual(QuizAttempt.objects.get(pk=attempt.pk).state, QuizAttempt.State.FINISHED)

    def test_access_messages_block_a_new_attempt(self) -> None:
        blocked = FakeAccessManager(messages=["This quiz closed."])

        check = validate_new_attempt(self.quiz, self.user, START, access_manager=blocked, usage_store=self.store)

        self.assertFalse(check.can_start)
        self.assertEqual(check.messages, ["This quiz closed."])
