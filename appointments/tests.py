"""
Tests for slot reservation and bookings.

Covers:
- Reservation coordinator (reserve, confirm, cancel, reclaim sweep)
- Race handling on a single slot
- Event publication after commit
- API endpoints under /appointments/api/
"""

from datetime import timedelta
from decimal import Decimal

from django.contrib.auth import get_user_model
from django.core.management import call_command
from django.db import connection
from django.test import TestCase, override_settings
from django.test.utils import CaptureQueriesContext
from django.urls import reverse
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APIClient

from appointments.models import Booking
from appointments.services import (
    BookingError,
    BookingNotFoundError,
    SlotNotFoundError,
    SlotUnavailableError,
    StaleReservationError,
    cancel_booking,
    confirm_booking,
    get_doctor_bookings,
    get_patient_bookings,
    release_expired_reservations,
    reserve_slot,
    update_booking_status,
)
from doctors.models import DoctorProfile, Slot
from notifications import events
from notifications.models import Notification

User = get_user_model()


class BookingTestMixin:
    """Shared setup for booking tests."""

    def setUp(self):
        self.doctor = User.objects.create_user(
            email="doctor@example.com",
            password="testpass123",
            name="Dr. Ahmad",
            role=User.Role.DOCTOR,
        )
        DoctorProfile.objects.create(
            user=self.doctor,
            consultation_fee=Decimal("500.00"),
            timezone="Asia/Kolkata",
        )
        self.patient = User.objects.create_user(
            email="ali@example.com",
            password="testpass123",
            name="Patient Ali",
        )
        self.patient2 = User.objects.create_user(
            email="sara@example.com",
            password="testpass123",
            name="Patient Sara",
        )

        self.now = timezone.now()
        self.slot = self.make_slot(days=2)

    def make_slot(self, days=2, hours=0, **extra):
        start = self.now + timedelta(days=days, hours=hours)
        return Slot.objects.create(
            doctor=self.doctor,
            start_time=start,
            end_time=start + timedelta(minutes=30),
            duration_minutes=30,
            **extra,
        )


# ═══════════════════════════════════════════════════════════════════
#  Reserve
# ═══════════════════════════════════════════════════════════════════


class ReserveSlotTests(BookingTestMixin, TestCase):
    def test_successful_reservation(self):
        """Happy path: slot moves to RESERVED and a PENDING booking is opened."""
        booking = reserve_slot(slot_id=self.slot.id, patient=self.patient, now=self.now)

        self.assertEqual(booking.status, Booking.Status.PENDING)
        self.assertEqual(booking.patient, self.patient)
        self.assertEqual(booking.amount, Decimal("500.00"))

        self.slot.refresh_from_db()
        self.assertEqual(self.slot.status, Slot.Status.RESERVED)
        self.assertEqual(self.slot.reserved_by, self.patient)
        self.assertEqual(self.slot.reserved_at, self.now)

    def test_second_patient_gets_unavailable(self):
        """Two claims on one slot: exactly one booking, the other is refused."""
        first = reserve_slot(slot_id=self.slot.id, patient=self.patient)

        with self.assertRaises(SlotUnavailableError) as ctx:
            reserve_slot(slot_id=self.slot.id, patient=self.patient2)

        self.assertEqual(ctx.exception.code, "slot_unavailable")
        self.assertEqual(Booking.objects.filter(slot=self.slot).count(), 1)
        self.slot.refresh_from_db()
        self.assertEqual(self.slot.reserved_by_id, first.patient_id)

    def test_many_claims_one_winner(self):
        """Of several patients claiming one slot, one wins and every other claim is refused."""
        patients = [self.patient, self.patient2] + [
            User.objects.create_user(
                email=f"patient{i}@example.com",
                password="testpass123",
                name=f"Patient {i}",
            )
            for i in range(3, 7)
        ]

        winners, refused = [], 0
        for patient in patients:
            try:
                winners.append(reserve_slot(slot_id=self.slot.id, patient=patient))
            except SlotUnavailableError:
                refused += 1

        self.assertEqual(len(winners), 1)
        self.assertEqual(refused, len(patients) - 1)
        self.assertEqual(Booking.objects.filter(slot=self.slot).count(), 1)
        self.slot.refresh_from_db()
        self.assertEqual(self.slot.reserved_by_id, winners[0].patient_id)

    def test_same_patient_cannot_reserve_twice(self):
        reserve_slot(slot_id=self.slot.id, patient=self.patient)
        with self.assertRaises(SlotUnavailableError):
            reserve_slot(slot_id=self.slot.id, patient=self.patient)

    def test_unknown_slot(self):
        with self.assertRaises(SlotNotFoundError):
            reserve_slot(slot_id=999999, patient=self.patient)

    def test_started_slot_unavailable(self):
        """An AVAILABLE slot whose start has passed is treated as expired."""
        past = self.make_slot(days=-1)
        with self.assertRaises(SlotUnavailableError):
            reserve_slot(slot_id=past.id, patient=self.patient)
        past.refresh_from_db()
        self.assertEqual(past.status, Slot.Status.AVAILABLE)

    def test_cancelled_slot_unavailable(self):
        withdrawn = self.make_slot(days=3, status=Slot.Status.CANCELLED)
        with self.assertRaises(SlotUnavailableError):
            reserve_slot(slot_id=withdrawn.id, patient=self.patient)

    def test_fee_defaults_to_zero_without_profile(self):
        DoctorProfile.objects.filter(user=self.doctor).delete()
        booking = reserve_slot(slot_id=self.slot.id, patient=self.patient)
        self.assertEqual(booking.amount, Decimal("0.00"))


# ═══════════════════════════════════════════════════════════════════
#  Confirm & reclaim
# ═══════════════════════════════════════════════════════════════════


class ConfirmAndReclaimTests(BookingTestMixin, TestCase):
    def test_confirm_books_slot(self):
        booking = reserve_slot(slot_id=self.slot.id, patient=self.patient)
        booking = confirm_booking(booking_id=booking.id)

        self.assertEqual(booking.status, Booking.Status.CONFIRMED)
        self.slot.refresh_from_db()
        self.assertEqual(self.slot.status, Slot.Status.BOOKED)

    def test_confirm_twice_is_stale(self):
        booking = reserve_slot(slot_id=self.slot.id, patient=self.patient)
        confirm_booking(booking_id=booking.id)
        with self.assertRaises(StaleReservationError):
            confirm_booking(booking_id=booking.id)

    def test_reservation_within_timeout_is_kept(self):
        reserve_slot(slot_id=self.slot.id, patient=self.patient, now=self.now)

        released = release_expired_reservations(now=self.now + timedelta(minutes=5))

        self.assertEqual(released, 0)
        self.slot.refresh_from_db()
        self.assertEqual(self.slot.status, Slot.Status.RESERVED)

    def test_timed_out_reservation_is_released_and_rebookable(self):
        """Abandoned payment: slot returns to AVAILABLE and another patient can take it."""
        booking = reserve_slot(slot_id=self.slot.id, patient=self.patient, now=self.now)

        released = release_expired_reservations(now=self.now + timedelta(minutes=16))

        self.assertEqual(released, 1)
        booking.refresh_from_db()
        self.assertEqual(booking.status, Booking.Status.CANCELLED)
        self.assertEqual(booking.cancellation_reason, "payment_timeout")
        self.slot.refresh_from_db()
        self.assertEqual(self.slot.status, Slot.Status.AVAILABLE)
        self.assertIsNone(self.slot.reserved_by)

        second = reserve_slot(slot_id=self.slot.id, patient=self.patient2)
        self.assertEqual(second.status, Booking.Status.PENDING)

    def test_sweep_locks_booking_before_slot(self):
        """The sweep touches the booking row before the slot, like confirm and cancel."""
        reserve_slot(slot_id=self.slot.id, patient=self.patient, now=self.now)

        with CaptureQueriesContext(connection) as ctx:
            released = release_expired_reservations(now=self.now + timedelta(minutes=16))

        self.assertEqual(released, 1)
        statements = [q["sql"] for q in ctx.captured_queries]
        booking_select = next(
            i for i, sql in enumerate(statements)
            if sql.startswith("SELECT") and '"appointments_booking"' in sql
        )
        slot_update = next(
            i for i, sql in enumerate(statements) if sql.startswith('UPDATE "doctors_slot"')
        )
        self.assertLess(booking_select, slot_update)

    def test_confirmed_booking_never_reclaimed(self):
        booking = reserve_slot(slot_id=self.slot.id, patient=self.patient, now=self.now)
        confirm_booking(booking_id=booking.id)

        released = release_expired_reservations(now=self.now + timedelta(hours=1))

        self.assertEqual(released, 0)
        booking.refresh_from_db()
        self.assertEqual(booking.status, Booking.Status.CONFIRMED)
        self.slot.refresh_from_db()
        self.assertEqual(self.slot.status, Slot.Status.BOOKED)

    def test_confirm_after_reclaim_is_stale(self):
        booking = reserve_slot(slot_id=self.slot.id, patient=self.patient, now=self.now)
        release_expired_reservations(now=self.now + timedelta(minutes=16))

        with self.assertRaises(StaleReservationError):
            confirm_booking(booking_id=booking.id)

        self.slot.refresh_from_db()
        self.assertEqual(self.slot.status, Slot.Status.AVAILABLE)

    def test_confirm_after_slot_retaken_is_stale(self):
        """A late confirmation cannot steal a slot another patient now holds."""
        stale = reserve_slot(slot_id=self.slot.id, patient=self.patient, now=self.now)
        release_expired_reservations(now=self.now + timedelta(minutes=16))
        reserve_slot(slot_id=self.slot.id, patient=self.patient2)

        with self.assertRaises(StaleReservationError):
            confirm_booking(booking_id=stale.id)

        self.slot.refresh_from_db()
        self.assertEqual(self.slot.status, Slot.Status.RESERVED)
        self.assertEqual(self.slot.reserved_by, self.patient2)

    @override_settings(RESERVATION_TIMEOUT_MINUTES=60)
    def test_timeout_is_configurable(self):
        reserve_slot(slot_id=self.slot.id, patient=self.patient, now=self.now)
        self.assertEqual(release_expired_reservations(now=self.now + timedelta(minutes=30)), 0)

    def test_release_reservations_command(self):
        reserve_slot(
            slot_id=self.slot.id,
            patient=self.patient,
            now=self.now - timedelta(hours=1),
        )
        call_command("release_reservations", verbosity=0)

        self.slot.refresh_from_db()
        self.assertEqual(self.slot.status, Slot.Status.AVAILABLE)


# ═══════════════════════════════════════════════════════════════════
#  Cancel & doctor status updates
# ═══════════════════════════════════════════════════════════════════


class CancelBookingTests(BookingTestMixin, TestCase):
    def test_cancel_pending_releases_slot(self):
        booking = reserve_slot(slot_id=self.slot.id, patient=self.patient)
        booking = cancel_booking(booking_id=booking.id, reason="payment_failed")

        self.assertEqual(booking.status, Booking.Status.CANCELLED)
        self.assertEqual(booking.cancellation_reason, "payment_failed")
        self.slot.refresh_from_db()
        self.assertEqual(self.slot.status, Slot.Status.AVAILABLE)

    def test_cancel_confirmed_frees_future_slot(self):
        booking = reserve_slot(slot_id=self.slot.id, patient=self.patient)
        confirm_booking(booking_id=booking.id)

        cancel_booking(booking_id=booking.id, reason="cancelled_by_patient", actor=self.patient)

        self.slot.refresh_from_db()
        self.assertEqual(self.slot.status, Slot.Status.AVAILABLE)
        # Cancelled bookings do not block a new one on the same slot
        reserve_slot(slot_id=self.slot.id, patient=self.patient2)

    def test_patient_cannot_cancel_started_appointment(self):
        booking = reserve_slot(slot_id=self.slot.id, patient=self.patient)
        confirm_booking(booking_id=booking.id)

        with self.assertRaises(BookingError) as ctx:
            cancel_booking(
                booking_id=booking.id,
                reason="cancelled_by_patient",
                actor=self.patient,
                now=self.slot.end_time + timedelta(hours=1),
            )

        self.assertEqual(ctx.exception.code, "invalid_status")
        booking.refresh_from_db()
        self.assertEqual(booking.status, Booking.Status.CONFIRMED)
        self.slot.refresh_from_db()
        self.assertEqual(self.slot.status, Slot.Status.BOOKED)

    def test_doctor_can_cancel_started_appointment(self):
        booking = reserve_slot(slot_id=self.slot.id, patient=self.patient)
        confirm_booking(booking_id=booking.id)

        booking = cancel_booking(
            booking_id=booking.id,
            reason="cancelled_by_doctor",
            actor=self.doctor,
            now=self.slot.start_time + timedelta(minutes=5),
        )
        self.assertEqual(booking.status, Booking.Status.CANCELLED)

    def test_stranger_cannot_cancel(self):
        booking = reserve_slot(slot_id=self.slot.id, patient=self.patient)
        with self.assertRaises(BookingNotFoundError):
            cancel_booking(booking_id=booking.id, reason="cancelled_by_patient", actor=self.patient2)

    def test_cancel_twice_rejected(self):
        booking = reserve_slot(slot_id=self.slot.id, patient=self.patient)
        cancel_booking(booking_id=booking.id, reason="cancelled_by_patient")

        with self.assertRaises(BookingError) as ctx:
            cancel_booking(booking_id=booking.id, reason="cancelled_by_patient")
        self.assertEqual(ctx.exception.code, "invalid_status")

    def test_doctor_completes_booking(self):
        booking = reserve_slot(slot_id=self.slot.id, patient=self.patient)
        confirm_booking(booking_id=booking.id)

        booking = update_booking_status(
            booking_id=booking.id, doctor=self.doctor, status=Booking.Status.COMPLETED
        )
        self.assertEqual(booking.status, Booking.Status.COMPLETED)

    def test_completing_pending_booking_books_slot(self):
        booking = reserve_slot(slot_id=self.slot.id, patient=self.patient, now=self.now)
        update_booking_status(
            booking_id=booking.id, doctor=self.doctor, status=Booking.Status.COMPLETED
        )

        self.slot.refresh_from_db()
        self.assertEqual(self.slot.status, Slot.Status.BOOKED)
        self.assertEqual(release_expired_reservations(now=self.now + timedelta(hours=1)), 0)

    def test_doctor_cancels_booking(self):
        booking = reserve_slot(slot_id=self.slot.id, patient=self.patient)
        booking = update_booking_status(
            booking_id=booking.id, doctor=self.doctor, status=Booking.Status.CANCELLED
        )
        self.assertEqual(booking.cancellation_reason, "cancelled_by_doctor")

    def test_other_doctor_cannot_update(self):
        other = User.objects.create_user(
            email="other@example.com", password="testpass123", name="Dr. Other", role=User.Role.DOCTOR
        )
        booking = reserve_slot(slot_id=self.slot.id, patient=self.patient)
        with self.assertRaises(BookingNotFoundError):
            update_booking_status(booking_id=booking.id, doctor=other, status=Booking.Status.COMPLETED)

    def test_unsupported_status_rejected(self):
        booking = reserve_slot(slot_id=self.slot.id, patient=self.patient)
        with self.assertRaises(BookingError):
            update_booking_status(booking_id=booking.id, doctor=self.doctor, status=Booking.Status.PENDING)


# ═══════════════════════════════════════════════════════════════════
#  Notifications
# ═══════════════════════════════════════════════════════════════════


@override_settings(BREVO_API_KEY="")
class BookingEventTests(BookingTestMixin, TestCase):
    def test_reservation_notifies_doctor(self):
        with self.captureOnCommitCallbacks(execute=True):
            reserve_slot(slot_id=self.slot.id, patient=self.patient)

        notification = Notification.objects.get()
        self.assertEqual(notification.recipient, self.doctor)
        self.assertEqual(notification.event, events.BOOKING_CREATED)
        self.assertIn("Patient Ali", notification.message)
        self.assertEqual(notification.payload["slot_id"], self.slot.id)

    def test_confirmation_notifies_both_parties(self):
        booking = reserve_slot(slot_id=self.slot.id, patient=self.patient)
        with self.captureOnCommitCallbacks(execute=True):
            confirm_booking(booking_id=booking.id)

        recipients = set(
            Notification.objects.filter(event=events.PAYMENT_CONFIRMED).values_list(
                "recipient_id", flat=True
            )
        )
        self.assertEqual(recipients, {self.doctor.id, self.patient.id})

    def test_failed_reservation_publishes_nothing(self):
        reserve_slot(slot_id=self.slot.id, patient=self.patient)
        with self.captureOnCommitCallbacks(execute=True) as callbacks:
            with self.assertRaises(SlotUnavailableError):
                reserve_slot(slot_id=self.slot.id, patient=self.patient2)

        self.assertEqual(len(callbacks), 0)

    def test_cancellation_carries_reason(self):
        booking = reserve_slot(slot_id=self.slot.id, patient=self.patient)
        with self.captureOnCommitCallbacks(execute=True):
            cancel_booking(booking_id=booking.id, reason="payment_failed")

        messages = Notification.objects.filter(event=events.BOOKING_CANCELLED)
        self.assertEqual(messages.count(), 2)
        self.assertIn("payment_failed", messages.first().message)


# ═══════════════════════════════════════════════════════════════════
#  Listings
# ═══════════════════════════════════════════════════════════════════


class ListingTests(BookingTestMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.upcoming = reserve_slot(slot_id=self.slot.id, patient=self.patient)
        later = self.make_slot(days=5)
        self.cancelled = reserve_slot(slot_id=later.id, patient=self.patient)
        cancel_booking(booking_id=self.cancelled.id, reason="cancelled_by_patient")

    def test_patient_bookings_split(self):
        result = get_patient_bookings(self.patient)

        self.assertEqual(result["upcoming"], [self.upcoming])
        self.assertEqual([b.id for b in result["past"]], [self.cancelled.id])
        self.assertEqual(result["upcoming_count"], 1)
        self.assertEqual(result["past_count"], 1)

    def test_limits_keep_counts(self):
        result = get_patient_bookings(self.patient, upcoming_limit=0)
        self.assertEqual(result["upcoming"], [])
        self.assertEqual(result["upcoming_count"], 1)

    def test_doctor_bookings_filtered_by_status(self):
        self.assertEqual(get_doctor_bookings(self.doctor).count(), 2)
        self.assertEqual(
            list(get_doctor_bookings(self.doctor, status=Booking.Status.PENDING)),
            [self.upcoming],
        )


# ═══════════════════════════════════════════════════════════════════
#  API Tests
# ═══════════════════════════════════════════════════════════════════


class BookingAPITests(BookingTestMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.client = APIClient()
        self.client.force_authenticate(user=self.patient)

    def _reserve(self, slot_id):
        return self.client.post(reverse("appointments:api_reserve_slot", args=[slot_id]))

    def test_reserve_returns_booking(self):
        response = self._reserve(self.slot.id)

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data["status"], Booking.Status.PENDING)
        self.assertEqual(response.data["slot"]["status"], Slot.Status.RESERVED)
        self.assertEqual(response.data["doctor"]["id"], self.doctor.id)

    def test_reserve_taken_slot_conflict(self):
        self._reserve(self.slot.id)

        self.client.force_authenticate(user=self.patient2)
        response = self._reserve(self.slot.id)

        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(response.data["code"], "slot_unavailable")

    def test_reserve_unknown_slot(self):
        response = self._reserve(999999)
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_doctor_cannot_reserve(self):
        self.client.force_authenticate(user=self.doctor)
        response = self._reserve(self.slot.id)
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_my_bookings(self):
        self._reserve(self.slot.id)
        response = self.client.get(reverse("appointments:api_my_bookings"))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["upcoming_count"], 1)
        self.assertEqual(len(response.data["upcoming"]), 1)

    def test_my_bookings_invalid_limit(self):
        response = self.client.get(reverse("appointments:api_my_bookings"), {"past_limit": "-1"})
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_cancel_booking(self):
        booking_id = self._reserve(self.slot.id).data["id"]

        response = self.client.post(reverse("appointments:api_cancel_booking", args=[booking_id]))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["status"], Booking.Status.CANCELLED)
        self.assertEqual(response.data["cancellation_reason"], "cancelled_by_patient")

    def test_cancel_someone_elses_booking(self):
        booking_id = self._reserve(self.slot.id).data["id"]
        self.client.force_authenticate(user=self.patient2)

        response = self.client.post(reverse("appointments:api_cancel_booking", args=[booking_id]))
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_doctor_booking_list_and_status(self):
        booking_id = self._reserve(self.slot.id).data["id"]
        self.client.force_authenticate(user=self.doctor)

        response = self.client.get(reverse("appointments:api_doctor_bookings"), {"status": "PENDING"})
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(len(response.data["results"]), 1)

        response = self.client.patch(
            reverse("appointments:api_doctor_booking_status", args=[booking_id]),
            {"status": "COMPLETED"},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["status"], Booking.Status.COMPLETED)

    def test_doctor_booking_list_unknown_status(self):
        self.client.force_authenticate(user=self.doctor)
        response = self.client.get(reverse("appointments:api_doctor_bookings"), {"status": "LOST"})
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_doctor_status_invalid_choice(self):
        booking_id = self._reserve(self.slot.id).data["id"]
        self.client.force_authenticate(user=self.doctor)

        response = self.client.patch(
            reverse("appointments:api_doctor_booking_status", args=[booking_id]),
            {"status": "CONFIRMED"},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
