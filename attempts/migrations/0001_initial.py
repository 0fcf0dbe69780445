from django.conf import settings
from django.db import migrations, models
import django.db.models.deletion


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ("auth", "0012_alter_user_first_name_max_length"),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Quiz",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("name", models.CharField(max_length=255)),
                ("course_key", models.CharField(blank=True, db_index=True, max_length=64)),
                ("time_open", models.DateTimeField(blank=True, null=True)),
                ("time_close", models.DateTimeField(blank=True, null=True)),
                ("time_limit_seconds", models.PositiveIntegerField(default=0)),
                ("items_per_page", models.PositiveIntegerField(default=1)),
                ("attempts_allowed", models.PositiveIntegerField(default=0)),
                (
                    "overdue_handling",
                    models.CharField(
                        choices=[
                            ("autosubmit", "Submit open attempts automatically"),
                            ("graceperiod", "Allow a grace period to submit"),
                            ("autoabandon", "Abandon open attempts"),
                        ],
                        default="autosubmit",
                        max_length=16,
                    ),
                ),
                ("grace_period_seconds", models.PositiveIntegerField(default=0)),
                (
                    "navigation_method",
                    models.CharField(
                        choices=[("free", "Free"), ("sequential", "Sequential")],
                        default="free",
                        max_length=16,
                    ),
                ),
                ("attempt_on_last", models.BooleanField(default=False)),
                ("can_redo_items", models.BooleanField(default=False)),
                ("shuffle_answers", models.BooleanField(default=True)),
                ("sum_grades", models.DecimalField(decimal_places=5, default=0, max_digits=10)),
                ("grade", models.DecimalField(decimal_places=5, default=10, max_digits=10)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "verbose_name_plural": "quizzes",
            },
        ),
        migrations.CreateModel(
            name="QuizSection",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("first_slot", models.PositiveIntegerField()),
                ("heading", models.CharField(blank=True, max_length=255, null=True)),
                ("shuffle_items", models.BooleanField(default=False)),
                (
                    "quiz",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="sections",
                        to="attempts.quiz",
                    ),
                ),
            ],
            options={
                "ordering": ["quiz", "first_slot"],
            },
        ),
        migrations.CreateModel(
            name="QuizSlot",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("slot", models.PositiveIntegerField()),
                ("page", models.PositiveIntegerField(default=1)),
                ("item_id", models.PositiveIntegerField(blank=True, null=True)),
                ("random_category", models.CharField(blank=True, max_length=64)),
                ("random_include_subcategories", models.BooleanField(default=False)),
                ("random_tag_ids", models.JSONField(blank=True, default=list)),
                ("max_mark", models.DecimalField(decimal_places=7, default=1, max_digits=12)),
                ("require_previous", models.BooleanField(default=False)),
                (
                    "quiz",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="slots",
                        to="attempts.quiz",
                    ),
                ),
            ],
            options={
                "ordering": ["quiz", "slot"],
            },
        ),
        migrations.CreateModel(
            name="QuizOverride",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("time_close", models.DateTimeField(blank=True, null=True)),
                ("time_close_unlimited", models.BooleanField(default=False)),
                ("time_limit_seconds", models.PositiveIntegerField(blank=True, null=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "group",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.CASCADE,
                        to="auth.group",
                    ),
                ),
                (
                    "quiz",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="overrides",
                        to="attempts.quiz",
                    ),
                ),
                (
                    "user",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.CASCADE,
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
        ),
        migrations.CreateModel(
            name="QuizAttempt",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("attempt_number", models.PositiveIntegerField()),
                ("usage_id", models.CharField(max_length=64, unique=True)),
                (
                    "state",
                    models.CharField(
                        choices=[
                            ("inprogress", "In progress"),
                            ("overdue", "Overdue"),
                            ("finished", "Finished"),
                            ("abandoned", "Never submitted"),
                        ],
                        default="inprogress",
                        max_length=16,
                    ),
                ),
                ("is_preview", models.BooleanField(default=False)),
                ("layout", models.JSONField(blank=True, default=list)),
                ("current_page", models.PositiveIntegerField(default=0)),
                ("time_start", models.DateTimeField()),
                ("time_finish", models.DateTimeField(blank=True, null=True)),
                ("time_modified", models.DateTimeField()),
                ("time_modified_offline", models.DateTimeField(blank=True, null=True)),
                ("time_check_state", models.DateTimeField(blank=True, null=True)),
                ("sum_grades", models.DecimalField(blank=True, decimal_places=5, max_digits=12, null=True)),
                ("redo_origins", models.JSONField(blank=True, default=dict)),
                (
                    "quiz",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="attempts",
                        to="attempts.quiz",
                    ),
                ),
                (
                    "user",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
        ),
        migrations.AddConstraint(
            model_name="quizsection",
            constraint=models.UniqueConstraint(fields=("quiz", "first_slot"), name="uq_quiz_section_first_slot"),
        ),
        migrations.AddConstraint(
            model_name="quizslot",
            constraint=models.UniqueConstraint(fields=("quiz", "slot"), name="uq_quiz_slot"),
        ),
        migrations.AddConstraint(
            model_name="quizoverride",
            constraint=models.UniqueConstraint(fields=("quiz", "user"), name="uq_quiz_override_user"),
        ),
        migrations.AddConstraint(
            model_name="quizoverride",
            constraint=models.UniqueConstraint(fields=("quiz", "group"), name="uq_quiz_override_group"),
        ),
        migrations.AddIndex(
            model_name="quizattempt",
            index=models.Index(fields=["state", "time_check_state"], name="attempt_state_check_idx"),
        ),
        migrations.AddIndex(
            model_name="quizattempt",
            index=models.Index(fields=["quiz", "user"], name="attempt_quiz_user_idx"),
        ),
        migrations.AddConstraint(
            model_name="quizattempt",
            constraint=models.UniqueConstraint(
                fields=("quiz", "user", "attempt_number"),
                name="uq_quiz_user_attempt_number",
            ),
        ),
    ]
