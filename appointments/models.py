from django.conf import settings
from django.db import models
from django.db.models import Q

from doctors.models import Slot


class Booking(models.Model):
    """
    Durable record of a patient claiming a slot.

    Created PENDING when the slot is reserved, CONFIRMED once payment is
    verified, CANCELLED on payment failure/timeout or by either party, and
    COMPLETED by the doctor after the consultation.
    """

    class Status(models.TextChoices):
        PENDING = "PENDING", "Pending"
        CONFIRMED = "CONFIRMED", "Confirmed"
        CANCELLED = "CANCELLED", "Cancelled"
        COMPLETED = "COMPLETED", "Completed"

    slot = models.ForeignKey(Slot, on_delete=models.PROTECT, related_name="bookings")
    patient = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="bookings",
    )
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.PENDING)
    amount = models.DecimalField(
        max_digits=8,
        decimal_places=2,
        default=0,
        help_text="Consultation fee captured at reservation time.",
    )
    cancellation_reason = models.CharField(max_length=50, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Booking"
        verbose_name_plural = "Bookings"
        constraints = [
            # One live booking per slot; cancelled rows are history.
            models.UniqueConstraint(
                fields=["slot"],
                condition=~Q(status="CANCELLED"),
                name="unique_active_booking_per_slot",
            ),
        ]

    def __str__(self):
        return f"Booking #{self.pk} - {self.patient.name} ({self.status})"

    @property
    def doctor_id(self):
        return self.slot.doctor_id
