from django.conf import settings
from django.db import models
from django.db.models import F, Q
from django.utils import timezone


class DoctorProfile(models.Model):
    """
    Extended profile for doctor users.

        CustomUser (auth/identity) ← OneToOne → DoctorProfile (domain data)

    The timezone is the doctor's local calendar: daily slot windows are
    expressed in it and "today" is evaluated in it.
    """

    user = models.OneToOneField(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="doctor_profile",
        limit_choices_to={"role": "DOCTOR"},
    )
    specialization = models.CharField(max_length=120, blank=True)
    bio = models.TextField(
        blank=True,
        help_text="Public bio displayed on the booking page.",
    )
    consultation_fee = models.DecimalField(
        max_digits=8,
        decimal_places=2,
        default=0,
        help_text="Fee charged per booked slot.",
    )
    timezone = models.CharField(
        max_length=64,
        default=settings.TIME_ZONE,
        help_text="IANA timezone name used for the doctor's daily schedule.",
    )

    class Meta:
        verbose_name = "Doctor Profile"
        verbose_name_plural = "Doctor Profiles"

    def __str__(self):
        return f"Dr. {self.user.name}"


class SlotQuerySet(models.QuerySet):
    def for_doctor(self, doctor_id):
        return self.filter(doctor_id=doctor_id)

    def occupying(self, now=None):
        """
        Slots that hold their interval on the doctor's calendar.

        An AVAILABLE slot whose start has passed counts as expired even
        before the sweep has rewritten its status.
        """
        now = now or timezone.now()
        return self.filter(
            Q(status=Slot.Status.AVAILABLE, start_time__gt=now)
            | Q(status__in=[Slot.Status.RESERVED, Slot.Status.BOOKED])
        )

    def bookable(self, now=None):
        now = now or timezone.now()
        return self.filter(status=Slot.Status.AVAILABLE, start_time__gt=now)

    def overlapping(self, start, end):
        """Half-open overlap with [start, end)."""
        return self.filter(start_time__lt=end, end_time__gt=start)


class Slot(models.Model):
    """
    A fixed-duration bookable interval on one doctor's calendar.

    Lifecycle:
        AVAILABLE → RESERVED   (patient claims it, awaiting payment)
        RESERVED  → BOOKED     (payment confirmed)
        RESERVED  → AVAILABLE  (payment failed or reservation timed out)
        AVAILABLE → EXPIRED    (start time passed without a booking)
        any       → CANCELLED  (doctor withdrew it)
    """

    class Status(models.TextChoices):
        AVAILABLE = "AVAILABLE", "Available"
        RESERVED = "RESERVED", "Reserved"
        BOOKED = "BOOKED", "Booked"
        EXPIRED = "EXPIRED", "Expired"
        CANCELLED = "CANCELLED", "Cancelled"

    ACTIVE_STATUSES = (Status.AVAILABLE, Status.RESERVED, Status.BOOKED)

    doctor = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="slots",
    )
    start_time = models.DateTimeField()
    end_time = models.DateTimeField()
    duration_minutes = models.PositiveIntegerField()
    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.AVAILABLE,
    )
    reserved_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="reserved_slots",
    )
    reserved_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = SlotQuerySet.as_manager()

    class Meta:
        verbose_name = "Slot"
        verbose_name_plural = "Slots"
        ordering = ["start_time"]
        indexes = [
            models.Index(fields=["doctor", "start_time"], name="slot_doctor_start_idx"),
            models.Index(fields=["status", "start_time"], name="slot_status_start_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=Q(end_time__gt=F("start_time")),
                name="slot_end_after_start",
            ),
        ]

    def __str__(self):
        local_start = timezone.localtime(self.start_time)
        return f"Slot #{self.pk} {local_start:%Y-%m-%d %H:%M} ({self.duration_minutes}min) - {self.status}"

    @property
    def has_started(self):
        return self.start_time <= timezone.now()

    @property
    def is_bookable(self):
        return self.status == self.Status.AVAILABLE and not self.has_started

    @property
    def effective_status(self):
        """Status as seen by readers; unswept past AVAILABLE slots read as EXPIRED."""
        if self.status == self.Status.AVAILABLE and self.has_started:
            return self.Status.EXPIRED
        return self.status
