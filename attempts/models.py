"""Data model for quizzes, their structure, and learner attempts."""

from __future__ import annotations

from datetime import timedelta

from django.conf import settings
from django.contrib.auth.models import Group
from django.core.exceptions import ValidationError
from django.db import models


class Quiz(models.Model):
    class OverdueHandling(models.TextChoices):
        AUTOSUBMIT = "autosubmit", "Submit open attempts automatically"
        GRACEPERIOD = "graceperiod", "Allow a grace period to submit"
        AUTOABANDON = "autoabandon", "Abandon open attempts"

    class NavigationMethod(models.TextChoices):
        FREE = "free", "Free"
        SEQUENTIAL = "sequential", "Sequential"

    name = models.CharField(max_length=255)
    course_key = models.CharField(max_length=64, blank=True, db_index=True)
    time_open = models.DateTimeField(blank=True, null=True)
    time_close = models.DateTimeField(blank=True, null=True)
    # Zero means unlimited for the three counters below.
    time_limit_seconds = models.PositiveIntegerField(default=0)
    items_per_page = models.PositiveIntegerField(default=1)
    attempts_allowed = models.PositiveIntegerField(default=0)
    overdue_handling = models.CharField(
        max_length=16,
        choices=OverdueHandling.choices,
        default=OverdueHandling.AUTOSUBMIT,
    )
    grace_period_seconds = models.PositiveIntegerField(default=0)
    navigation_method = models.CharField(
        max_length=16,
        choices=NavigationMethod.choices,
        default=NavigationMethod.FREE,
    )
    attempt_on_last = models.BooleanField(default=False)
    can_redo_items = models.BooleanField(default=False)
    shuffle_answers = models.BooleanField(default=True)
    sum_grades = models.DecimalField(max_digits=10, decimal_places=5, default=0)
    grade = models.DecimalField(max_digits=10, decimal_places=5, default=10)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name_plural = "quizzes"

    def __str__(self) -> str:
        return f"{self.pk}:{self.name}"

    @property
    def time_limit(self) -> timedelta | None:
        if not self.time_limit_seconds:
            return None
        return timedelta(seconds=self.time_limit_seconds)

    @property
    def grace_period(self) -> timedelta:
        return timedelta(seconds=self.grace_period_seconds)

    @property
    def items_per_page_limit(self) -> int | None:
        return self.items_per_page or None

    @property
    def attempts_allowed_limit(self) -> int | None:
        return self.attempts_allowed or None

    @property
    def is_sequential(self) -> bool:
        return self.navigation_method == self.NavigationMethod.SEQUENTIAL


class QuizSection(models.Model):
    quiz = models.ForeignKey(Quiz, on_delete=models.CASCADE, related_name="sections")
    first_slot = models.PositiveIntegerField()
    heading = models.CharField(max_length=255, blank=True, null=True)
    shuffle_items = models.BooleanField(default=False)

    class Meta:
        ordering = ["quiz", "first_slot"]
        constraints = [
            models.UniqueConstraint(fields=["quiz", "first_slot"], name="uq_quiz_section_first_slot"),
        ]

    def __str__(self) -> str:
        return f"{self.quiz_id}:section@{self.first_slot}"


class QuizSlot(models.Model):
    quiz = models.ForeignKey(Quiz, on_delete=models.CASCADE, related_name="slots")
    slot = models.PositiveIntegerField()
    page = models.PositiveIntegerField(default=1)
    # Null item_id marks a random slot, resolved when an attempt starts.
    item_id = models.PositiveIntegerField(blank=True, null=True)
    random_category = models.CharField(max_length=64, blank=True)
    random_include_subcategories = models.BooleanField(default=False)
    random_tag_ids = models.JSONField(default=list, blank=True)
    max_mark = models.DecimalField(max_digits=12, decimal_places=7, default=1)
    require_previous = models.BooleanField(default=False)

    class Meta:
        ordering = ["quiz", "slot"]
        constraints = [
            models.UniqueConstraint(fields=["quiz", "slot"], name="uq_quiz_slot"),
        ]

    def __str__(self) -> str:
        return f"{self.quiz_id}:slot{self.slot}"

    @property
    def is_random(self) -> bool:
        return self.item_id is None


class QuizOverride(models.Model):
    quiz = models.ForeignKey(Quiz, on_delete=models.CASCADE, related_name="overrides")
    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, blank=True, null=True)
    group = models.ForeignKey(Group, on_delete=models.CASCADE, blank=True, null=True)
    # Null means "inherit from the quiz".
    time_close = models.DateTimeField(blank=True, null=True)
    time_close_unlimited = models.BooleanField(default=False)
    # Null inherits, zero means unlimited.
    time_limit_seconds = models.PositiveIntegerField(blank=True, null=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["quiz", "user"], name="uq_quiz_override_user"),
            models.UniqueConstraint(fields=["quiz", "group"], name="uq_quiz_override_group"),
        ]

    def __str__(self) -> str:
        target = f"user={self.user_id}" if self.user_id else f"group={self.group_id}"
        return f"{self.quiz_id}:{target}"

    def clean(self) -> None:
        if bool(self.user_id) == bool(self.group_id):
            raise ValidationError("An override applies to exactly one user or one group.")
        if self.time_close is not None and self.time_close_unlimited:
            raise ValidationError("Set either a close time or remove the close time, not both.")


class QuizAttempt(models.Model):
    class State(models.TextChoices):
        IN_PROGRESS = "inprogress", "In progress"
        OVERDUE = "overdue", "Overdue"
        FINISHED = "finished", "Finished"
        ABANDONED = "abandoned", "Never submitted"

    OPEN_STATES = (State.IN_PROGRESS, State.OVERDUE)

    quiz = models.ForeignKey(Quiz, on_delete=models.CASCADE, related_name="attempts")
    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE)
    attempt_number = models.PositiveIntegerField()
    usage_id = models.CharField(max_length=64, unique=True)
    state = models.CharField(max_length=16, choices=State.choices, default=State.IN_PROGRESS)
    is_preview = models.BooleanField(default=False)
    layout = models.JSONField(default=list, blank=True)
    current_page = models.PositiveIntegerField(default=0)
    time_start = models.DateTimeField()
    time_finish = models.DateTimeField(blank=True, null=True)
    time_modified = models.DateTimeField()
    time_modified_offline = models.DateTimeField(blank=True, null=True)
    time_check_state = models.DateTimeField(blank=True, null=True)
    sum_grades = models.DecimalField(max_digits=12, decimal_places=5, blank=True, null=True)
    # new slot -> slot it was redone from
    redo_origins = models.JSONField(default=dict, blank=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["quiz", "user", "attempt_number"],
                name="uq_quiz_user_attempt_number",
            ),
        ]
        indexes = [
            models.Index(fields=["state", "time_check_state"], name="attempt_state_check_idx"),
            models.Index(fields=["quiz", "user"], name="attempt_quiz_user_idx"),
        ]

    def __str__(self) -> str:
        return f"{self.quiz_id}:{self.user_id}:#{self.attempt_number}:{self.state}"

    @property
    def is_finished(self) -> bool:
        return self.state in (self.State.FINISHED, self.State.ABANDONED)

    @property
    def is_open(self) -> bool:
        return self.state in self.OPEN_STATES

    def original_slot(self, slot: int) -> int:
        original = (self.redo_origins or {}).get(str(slot))
        return int(original) if original else slot
