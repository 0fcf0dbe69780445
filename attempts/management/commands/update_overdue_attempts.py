from __future__ import annotations

from datetime import timedelta

from django.core.exceptions import ImproperlyConfigured
from django.core.management.base import BaseCommand, CommandError
from django.utils import timezone

from attempts.sweep_services import process_overdue_attempts


class Command(BaseCommand):
    help = "Finish, send overdue or abandon open attempts whose time check is due."

    def add_arguments(self, parser) -> None:
        parser.add_argument(
            "--lookahead",
            type=int,
            default=0,
            help="Also process attempts due within this many seconds from now.",
        )

    def handle(self, *args, **options):
        lookahead = int(options.get("lookahead") or 0)
        if lookahead < 0:
            raise CommandError("--lookahead must not be negative")

        now = timezone.now()
        try:
            count, quiz_count = process_overdue_attempts(now, process_to=now + timedelta(seconds=lookahead))
        except ImproperlyConfigured as exc:
            raise CommandError(str(exc)) from exc
        self.stdout.write(
            self.style.SUCCESS(f"Looked at {count} overdue attempt(s) in {quiz_count} quiz(zes).")
        )
