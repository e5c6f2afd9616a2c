from django.core.management.base import BaseCommand, CommandError
from django.utils.dateparse import parse_date

from custody.services import send_reminders


class Command(BaseCommand):
    help = (
        "Refresh storage statuses and queue renewal reminders / final warnings.\n"
        "Renewal reminders go to EXPIRING storages once per day; a final warning is sent once\n"
        "to storages that stayed EXPIRED longer than --final-warning-after days.\n"
        "Use --dry-run to preview counts without writing notifications."
    )

    def add_arguments(self, parser):
        parser.add_argument("--date", type=str, help="Evaluate as of this date (YYYY-MM-DD), default today")
        parser.add_argument("--final-warning-after", type=int, help="Days past expiry before the final warning")
        parser.add_argument("--dry-run", action="store_true", help="Preview counts only")

    def handle(self, *args, **options):
        today = None
        if options.get("date"):
            try:
                today = parse_date(options["date"])
            except ValueError:
                today = None
            if today is None:
                raise CommandError(f"Invalid --date {options['date']!r}, use YYYY-MM-DD")

        counts = send_reminders(
            today=today,
            final_warning_after_days=options.get("final_warning_after"),
            dry_run=options.get("dry_run"),
        )
        prefix = "[dry-run] " if options.get("dry_run") else ""
        self.stdout.write(
            self.style.SUCCESS(
                f"{prefix}Renewal reminders: {counts['renewal_reminders']}, "
                f"final warnings: {counts['final_warnings']}"
            )
        )
