import os
from django.core.management.base import BaseCommand
from django.contrib.auth import get_user_model


class Command(BaseCommand):
    help = "Creates a super administrative user non-interactively if it doesn't exist"

    def handle(self, *args, **options):
        User = get_user_model()
        email = os.environ.get("DJANGO_SUPERUSER_EMAIL")
        password = os.environ.get("DJANGO_SUPERUSER_PASSWORD")
        name = os.environ.get("DJANGO_SUPERUSER_NAME", "Super Admin")

        if not email or not password:
            self.stdout.write(
                self.style.ERROR(
                    "Missing DJANGO_SUPERUSER_EMAIL or DJANGO_SUPERUSER_PASSWORD environment variables."
                )
            )
            return

        email = email.strip().lower()
        user = User.objects.filter(email=email).first()
        if user is None:
            User.objects.create_superuser(email=email, password=password, name=name)
            self.stdout.write(
                self.style.SUCCESS(f"Successfully created superuser '{email}'.")
            )
            return

        if user.is_superuser and user.is_staff:
            self.stdout.write(self.style.SUCCESS(f"Superuser '{email}' already exists."))
            return

        user.is_superuser = True
        user.is_staff = True
        user.role = User.Role.ADMIN
        user.save(update_fields=["is_superuser", "is_staff", "role"])
        self.stdout.write(
            self.style.SUCCESS(f"User '{email}' already exists. Granted superuser privileges.")
        )
