from django.contrib import admin

from .models import Quiz, QuizAttempt, QuizOverride, QuizSection, QuizSlot


class QuizSectionInline(admin.TabularInline):
    model = QuizSection
    extra = 0


class QuizSlotInline(admin.TabularInline):
    model = QuizSlot
    extra = 0


@admin.register(Quiz)
class QuizAdmin(admin.ModelAdmin):
    list_display = (
        "id",
        "name",
        "course_key",
        "time_open",
        "time_close",
        "time_limit_seconds",
        "overdue_handling",
        "navigation_method",
        "updated_at",
    )
    search_fields = ("name", "course_key")
    list_filter = ("overdue_handling", "navigation_method", "attempt_on_last", "can_redo_items")
    inlines = (QuizSectionInline, QuizSlotInline)


@admin.register(QuizOverride)
class QuizOverrideAdmin(admin.ModelAdmin):
    list_display = ("id", "quiz", "user", "group", "time_close", "time_close_unlimited", "time_limit_seconds")
    search_fields = ("quiz__name", "user__username", "group__name")
    list_filter = ("time_close_unlimited", "updated_at")


@admin.register(QuizAttempt)
class QuizAttemptAdmin(admin.ModelAdmin):
    list_display = (
        "id",
        "quiz",
        "user",
        "attempt_number",
        "state",
        "is_preview",
        "current_page",
        "time_start",
        "time_finish",
        "time_check_state",
        "sum_grades",
    )
    search_fields = ("quiz__name", "user__username", "usage_id")
    list_filter = ("state", "is_preview", "time_start")
    readonly_fields = ("usage_id", "layout", "redo_origins")
