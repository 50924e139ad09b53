from django.core.management.base import BaseCommand

from doctors.services import expire_stale_slots


class Command(BaseCommand):
    help = "Marks AVAILABLE slots whose start time has passed as EXPIRED"

    def handle(self, *args, **options):
        expired = expire_stale_slots()
        self.stdout.write(self.style.SUCCESS(f"Expired {expired} slot(s)."))
