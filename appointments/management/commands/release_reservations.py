from django.core.management.base import BaseCommand

from appointments.services import release_expired_reservations
from doctors.services import expire_stale_slots


class Command(BaseCommand):
    help = (
        "Returns reservations older than RESERVATION_TIMEOUT_MINUTES to AVAILABLE "
        "and cancels their pending bookings"
    )

    def add_arguments(self, parser):
        parser.add_argument(
            "--expire",
            action="store_true",
            help="Also mark AVAILABLE slots whose start time has passed as EXPIRED.",
        )

    def handle(self, *args, **options):
        released = release_expired_reservations()
        self.stdout.write(self.style.SUCCESS(f"Released {released} reservation(s)."))

        if options["expire"]:
            expired = expire_stale_slots()
            self.stdout.write(self.style.SUCCESS(f"Expired {expired} slot(s)."))
