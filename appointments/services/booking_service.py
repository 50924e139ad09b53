"""
Slot reservation coordinator.

Handles the booking lifecycle of a single slot:
1. reserve   AVAILABLE → RESERVED, booking PENDING
2. confirm   RESERVED  → BOOKED,   booking CONFIRMED   (payment success)
3. cancel    RESERVED/BOOKED → AVAILABLE, booking CANCELLED
4. reclaim   RESERVED past the payment timeout → AVAILABLE

Every slot transition is a single conditional UPDATE whose WHERE clause
carries the expected state; the affected-row count decides the outcome.
Two patients racing for one slot therefore get exactly one winner no
matter how many server processes are running, and a timeout reclaim
cannot undo a confirmation that committed first.
"""

import logging
from datetime import timedelta
from decimal import Decimal

from django.conf import settings
from django.db import IntegrityError, transaction
from django.utils import timezone

from appointments.models import Booking
from doctors.models import DoctorProfile, Slot
from doctors.services import get_doctor_timezone
from notifications import events

logger = logging.getLogger(__name__)


class BookingError(Exception):
    """Base exception for booking failures."""

    def __init__(self, message, code="booking_error"):
        self.message = message
        self.code = code
        super().__init__(self.message)


class SlotNotFoundError(BookingError):
    def __init__(self, message="Slot not found."):
        super().__init__(message, code="slot_not_found")


class SlotUnavailableError(BookingError):
    """Raised when the requested slot is taken, expired or withdrawn."""

    def __init__(self, message="This slot was just taken. Please choose another."):
        super().__init__(message, code="slot_unavailable")


class StaleReservationError(BookingError):
    """Raised when a confirmation arrives for a reservation that no longer holds."""

    def __init__(self, message="This reservation has expired. Please book the slot again."):
        super().__init__(message, code="stale_reservation")


class BookingNotFoundError(BookingError):
    def __init__(self, message="Booking not found."):
        super().__init__(message, code="booking_not_found")


def reservation_timeout():
    return timedelta(minutes=getattr(settings, "RESERVATION_TIMEOUT_MINUTES", 15))


def _consultation_fee(doctor_id):
    fee = (
        DoctorProfile.objects.filter(user_id=doctor_id)
        .values_list("consultation_fee", flat=True)
        .first()
    )
    return fee if fee is not None else Decimal("0.00")


def _event_payload(booking, **extra):
    slot = booking.slot
    local_start = slot.start_time.astimezone(get_doctor_timezone(slot.doctor_id))
    payload = {
        "booking_id": booking.id,
        "slot_id": slot.id,
        "doctor_id": slot.doctor_id,
        "doctor_name": slot.doctor.name,
        "patient_id": booking.patient_id,
        "patient_name": booking.patient.name,
        "start_time": slot.start_time.isoformat(),
        "start_display": f"{local_start:%Y-%m-%d %H:%M}",
        "status": booking.status,
    }
    payload.update(extra)
    return payload


def _publish_after_commit(event, booking, recipients, **extra):
    payload = _event_payload(booking, **extra)

    def _send():
        for recipient in recipients:
            events.publish(event, payload, recipient)

    transaction.on_commit(_send)


def _load_booking_for_update(booking_id):
    try:
        return (
            Booking.objects.select_for_update(of=("self",))
            .select_related("slot", "slot__doctor", "patient")
            .get(pk=booking_id)
        )
    except Booking.DoesNotExist:
        raise BookingNotFoundError()


# ── Reserve ──────────────────────────────────────────────────────────────────


def reserve_slot(*, slot_id, patient, now=None):
    """
    Reserve a slot for a patient and open a PENDING booking.

    Args:
        slot_id: PK of the Slot to claim.
        patient: The User instance (role=PATIENT) booking the slot.
        now: Override of the current time.

    Returns:
        The created Booking instance.

    Raises:
        SlotNotFoundError: No slot with this id.
        SlotUnavailableError: Slot is not AVAILABLE or has already started.
    """
    now = now or timezone.now()

    with transaction.atomic():
        claimed = Slot.objects.filter(
            pk=slot_id,
            status=Slot.Status.AVAILABLE,
            start_time__gt=now,
        ).update(
            status=Slot.Status.RESERVED,
            reserved_by=patient,
            reserved_at=now,
            updated_at=now,
        )

        if not claimed:
            if not Slot.objects.filter(pk=slot_id).exists():
                raise SlotNotFoundError()
            logger.info(
                "[BOOKING] Slot unavailable slot_id=%s patient_id=%s",
                slot_id,
                patient.id,
            )
            raise SlotUnavailableError()

        slot = Slot.objects.select_related("doctor").get(pk=slot_id)
        try:
            booking = Booking.objects.create(
                slot=slot,
                patient=patient,
                status=Booking.Status.PENDING,
                amount=_consultation_fee(slot.doctor_id),
            )
        except IntegrityError:
            # Live booking already exists; the claim above is rolled back.
            raise SlotUnavailableError()

        _publish_after_commit(events.BOOKING_CREATED, booking, [slot.doctor])

    logger.info(
        "[BOOKING] Reserved slot_id=%s booking_id=%s patient_id=%s",
        slot_id,
        booking.id,
        patient.id,
    )
    return booking


# ── Confirm ──────────────────────────────────────────────────────────────────


def confirm_booking(*, booking_id, now=None):
    """
    Confirm a PENDING booking after successful payment.

    The slot moves RESERVED → BOOKED only while it is still reserved by
    the booking's patient; a reservation reclaimed (and perhaps re-taken)
    in the meantime yields StaleReservationError and nothing changes.
    """
    now = now or timezone.now()

    with transaction.atomic():
        booking = _load_booking_for_update(booking_id)

        if booking.status != Booking.Status.PENDING:
            raise StaleReservationError()

        booked = Slot.objects.filter(
            pk=booking.slot_id,
            status=Slot.Status.RESERVED,
            reserved_by_id=booking.patient_id,
        ).update(status=Slot.Status.BOOKED, updated_at=now)

        if not booked:
            logger.warning(
                "[BOOKING] Stale confirmation booking_id=%s slot_id=%s",
                booking.id,
                booking.slot_id,
            )
            raise StaleReservationError()

        booking.status = Booking.Status.CONFIRMED
        booking.save(update_fields=["status", "updated_at"])

        _publish_after_commit(
            events.PAYMENT_CONFIRMED,
            booking,
            [booking.slot.doctor, booking.patient],
        )

    logger.info("[BOOKING] Confirmed booking_id=%s", booking.id)
    return booking


# ── Cancel ───────────────────────────────────────────────────────────────────

_CANCELLABLE_STATUSES = (Booking.Status.PENDING, Booking.Status.CONFIRMED)


def cancel_booking(*, booking_id, reason, actor=None, now=None):
    """
    Cancel a booking and release its slot.

    Used for payment failure and for either party cancelling. A PENDING
    booking hands its RESERVED slot back; a CONFIRMED booking frees its
    BOOKED slot if the appointment has not started yet.

    Args:
        booking_id: PK of the Booking.
        reason: Short machine-readable reason stored on the booking.
        actor: Optional User; when given it must be the booking's patient
            or the slot's doctor (ownership enforced here).

    Raises:
        BookingNotFoundError: Unknown booking or not owned by actor.
        BookingError: Booking already cancelled or completed, or a
            patient cancelling a confirmed appointment that has started.
    """
    now = now or timezone.now()

    with transaction.atomic():
        booking = _load_booking_for_update(booking_id)

        if actor is not None and actor.id not in (booking.patient_id, booking.slot.doctor_id):
            raise BookingNotFoundError()

        if booking.status not in _CANCELLABLE_STATUSES:
            raise BookingError("This booking can no longer be cancelled.", code="invalid_status")

        if (
            booking.status == Booking.Status.CONFIRMED
            and actor is not None
            and actor.id == booking.patient_id
            and booking.slot.start_time <= now
        ):
            raise BookingError(
                "This appointment has already started and can no longer be cancelled.",
                code="invalid_status",
            )

        release = {
            "status": Slot.Status.AVAILABLE,
            "reserved_by": None,
            "reserved_at": None,
            "updated_at": now,
        }
        if booking.status == Booking.Status.PENDING:
            Slot.objects.filter(
                pk=booking.slot_id,
                status=Slot.Status.RESERVED,
                reserved_by_id=booking.patient_id,
            ).update(**release)
        else:
            Slot.objects.filter(
                pk=booking.slot_id,
                status=Slot.Status.BOOKED,
                start_time__gt=now,
            ).update(**release)

        booking.status = Booking.Status.CANCELLED
        booking.cancellation_reason = reason
        booking.save(update_fields=["status", "cancellation_reason", "updated_at"])

        _publish_after_commit(
            events.BOOKING_CANCELLED,
            booking,
            [booking.slot.doctor, booking.patient],
            reason=reason,
        )

    logger.info("[BOOKING] Cancelled booking_id=%s reason=%s", booking.id, reason)
    return booking


# ── Reclaim sweep ────────────────────────────────────────────────────────────


def release_expired_reservations(now=None):
    """
    Return slots whose reservation outlived the payment timeout to AVAILABLE.

    Each slot is handled in its own transaction: the PENDING booking row is
    locked first, then the slot is reverted by a conditional UPDATE (still
    RESERVED, reserved_at older than the cutoff). Only when that UPDATE hits
    a row is the booking cancelled, so a confirmation that committed first
    is never undone.

    Returns:
        Number of reservations released.
    """
    now = now or timezone.now()
    cutoff = now - reservation_timeout()

    stale_slot_ids = list(
        Slot.objects.filter(
            status=Slot.Status.RESERVED,
            reserved_at__lt=cutoff,
        ).values_list("pk", flat=True)
    )

    released = 0
    for slot_id in stale_slot_ids:
        with transaction.atomic():
            # Booking before slot, the same lock order as confirm and cancel.
            pending_ids = list(
                Booking.objects.select_for_update(of=("self",))
                .filter(slot_id=slot_id, status=Booking.Status.PENDING)
                .values_list("pk", flat=True)
            )

            reverted = Slot.objects.filter(
                pk=slot_id,
                status=Slot.Status.RESERVED,
                reserved_at__lt=cutoff,
            ).update(
                status=Slot.Status.AVAILABLE,
                reserved_by=None,
                reserved_at=None,
                updated_at=now,
            )
            if not reverted:
                continue

            Booking.objects.filter(pk__in=pending_ids).update(
                status=Booking.Status.CANCELLED,
                cancellation_reason="payment_timeout",
                updated_at=now,
            )
            released += 1

    if released:
        logger.info("[BOOKING] Released %s expired reservation(s)", released)
    return released


# ── Doctor-side status updates ───────────────────────────────────────────────


def update_booking_status(*, booking_id, doctor, status, now=None):
    """
    Apply a doctor's status change to one of their bookings.

    COMPLETED is accepted from PENDING or CONFIRMED; CANCELLED goes
    through cancel_booking() so the slot is released the same way.
    """
    if status == Booking.Status.CANCELLED:
        return cancel_booking(
            booking_id=booking_id,
            reason="cancelled_by_doctor",
            actor=doctor,
            now=now,
        )

    if status != Booking.Status.COMPLETED:
        raise BookingError(
            "Doctors can only mark bookings as completed or cancelled.",
            code="invalid_status",
        )

    now = now or timezone.now()
    with transaction.atomic():
        booking = _load_booking_for_update(booking_id)
        if booking.slot.doctor_id != doctor.id:
            raise BookingNotFoundError()

        if booking.status not in _CANCELLABLE_STATUSES:
            raise BookingError("This booking is already closed.", code="invalid_status")

        if booking.status == Booking.Status.PENDING:
            # Keep the reclaim sweep away from a slot that was consulted on.
            Slot.objects.filter(
                pk=booking.slot_id,
                status=Slot.Status.RESERVED,
                reserved_by_id=booking.patient_id,
            ).update(status=Slot.Status.BOOKED, updated_at=now)

        booking.status = Booking.Status.COMPLETED
        booking.save(update_fields=["status", "updated_at"])

    logger.info("[BOOKING] Completed booking_id=%s doctor_id=%s", booking.id, doctor.id)
    return booking
