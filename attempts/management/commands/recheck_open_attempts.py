from __future__ import annotations

from django.core.management.base import BaseCommand, CommandError

from attempts.sweep_services import recheck_open_attempts


class Command(BaseCommand):
    help = "Recompute when each open quiz attempt is next due for a time check."

    def add_arguments(self, parser) -> None:
        parser.add_argument("--all", action="store_true", help="Recheck every open attempt.")
        parser.add_argument(
            "--course",
            action="append",
            default=[],
            help="Course key to recheck. Can be provided multiple times.",
        )
        parser.add_argument("--user-id", action="append", type=int, default=[], help="User id to recheck.")
        parser.add_argument("--quiz-id", action="append", type=int, default=[], help="Quiz id to recheck.")
        parser.add_argument(
            "--group-id",
            action="append",
            type=int,
            default=[],
            help="Recheck quizzes that have an override for this group.",
        )

    def handle(self, *args, **options):
        courses = [str(item).strip() for item in options.get("course") or [] if str(item).strip()]
        user_ids = list(options.get("user_id") or [])
        quiz_ids = list(options.get("quiz_id") or [])
        group_ids = list(options.get("group_id") or [])
        if not options.get("all") and not (courses or user_ids or quiz_ids or group_ids):
            raise CommandError("Provide --all or at least one of --course, --user-id, --quiz-id, --group-id")

        rechecked = recheck_open_attempts(
            course_keys=courses or None,
            user_ids=user_ids or None,
            quiz_ids=quiz_ids or None,
            group_ids=group_ids or None,
        )
        self.stdout.write(self.style.SUCCESS(f"Rechecked {rechecked} open attempt(s)."))
