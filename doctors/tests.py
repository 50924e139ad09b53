"""
Tests for doctor schedules.

Covers:
- Slot generation (single day, recurrence, validation, gap-fill)
- Doctor-side slot management (reschedule, delete, withdraw)
- Patient-side listing and lazy expiry
- API endpoints under /doctors/api/
"""

from datetime import date, datetime, time, timedelta, timezone as dt_timezone
from decimal import Decimal
from itertools import combinations
from zoneinfo import ZoneInfo

from django.contrib.auth import get_user_model
from django.core.management import call_command
from django.test import TestCase, override_settings
from django.urls import reverse
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APIClient

from appointments.models import Booking
from doctors.models import DoctorProfile, Slot
from doctors.services import (
    InvalidDurationError,
    InvalidRecurrenceError,
    PastDateError,
    Recurrence,
    SlotLockedError,
    SlotNotFoundError,
    SlotOverlapError,
    SlotWindow,
    WindowTooShortError,
    delete_slots,
    expire_stale_slots,
    generate_slots,
    get_available_slots,
    get_doctor_slots,
    reschedule_slot,
)

User = get_user_model()

UTC = dt_timezone.utc
KOLKATA = ZoneInfo("Asia/Kolkata")
MONDAY = date(2024, 6, 10)


def utc(*args):
    return datetime(*args, tzinfo=UTC)


class ScheduleTestMixin:
    """Shared setup: one doctor in Asia/Kolkata (UTC+05:30), two patients."""

    def setUp(self):
        self.doctor = User.objects.create_user(
            email="doctor@example.com",
            password="testpass123",
            name="Dr. Ahmad",
            role=User.Role.DOCTOR,
        )
        DoctorProfile.objects.create(
            user=self.doctor,
            specialization="Cardiology",
            consultation_fee=Decimal("500.00"),
            timezone="Asia/Kolkata",
        )
        self.other_doctor = User.objects.create_user(
            email="other@example.com",
            password="testpass123",
            name="Dr. Sara",
            role=User.Role.DOCTOR,
        )
        self.patient = User.objects.create_user(
            email="patient@example.com",
            password="testpass123",
            name="Patient Ali",
        )

        # Sunday noon UTC, the day before MONDAY
        self.now = utc(2024, 6, 9, 12, 0)

    def generate(self, start, end, duration=20, on_date=MONDAY, recurrence=None, now=None):
        return generate_slots(
            doctor=self.doctor,
            window=SlotWindow(start_time=start, end_time=end, on_date=on_date),
            duration_minutes=duration,
            recurrence=recurrence,
            now=now or self.now,
        )


# ═══════════════════════════════════════════════════════════════════
#  Generation
# ═══════════════════════════════════════════════════════════════════


class GenerateSlotsTests(ScheduleTestMixin, TestCase):
    def test_one_hour_window_yields_three_slots(self):
        """09:00–10:00 at 20 minutes → 09:00, 09:20, 09:40 local."""
        result = self.generate(time(9, 0), time(10, 0))

        self.assertEqual(result.created_count, 3)
        self.assertEqual(result.skipped, 0)

        starts = list(Slot.objects.order_by("start_time").values_list("start_time", flat=True))
        # Asia/Kolkata is UTC+05:30
        self.assertEqual(
            starts,
            [utc(2024, 6, 10, 3, 30), utc(2024, 6, 10, 3, 50), utc(2024, 6, 10, 4, 10)],
        )
        last = Slot.objects.order_by("start_time").last()
        self.assertEqual(last.end_time, utc(2024, 6, 10, 4, 30))
        self.assertTrue(all(s.status == Slot.Status.AVAILABLE for s in Slot.objects.all()))

    def test_partial_trailing_step_is_dropped(self):
        """09:00–10:10 at 20 minutes still yields three slots."""
        result = self.generate(time(9, 0), time(10, 10))

        self.assertEqual(result.created_count, 3)
        self.assertFalse(Slot.objects.filter(end_time__gt=utc(2024, 6, 10, 4, 30)).exists())

    def test_every_slot_has_exact_duration(self):
        self.generate(time(8, 0), time(13, 45), duration=25)

        for slot in Slot.objects.all():
            self.assertEqual(slot.end_time - slot.start_time, timedelta(minutes=25))
            self.assertEqual(slot.duration_minutes, 25)

    def test_duration_below_floor_rejected(self):
        with self.assertRaises(InvalidDurationError) as ctx:
            self.generate(time(9, 0), time(10, 0), duration=15)

        self.assertEqual(ctx.exception.code, "invalid_duration")
        self.assertEqual(Slot.objects.count(), 0)

    @override_settings(SLOT_MIN_DURATION_MINUTES=10)
    def test_duration_floor_is_configurable(self):
        result = self.generate(time(9, 0), time(10, 0), duration=15)
        self.assertEqual(result.created_count, 4)

    def test_window_shorter_than_duration_rejected(self):
        with self.assertRaises(WindowTooShortError):
            self.generate(time(9, 0), time(9, 10))

    def test_window_end_before_start_rejected(self):
        with self.assertRaises(WindowTooShortError):
            self.generate(time(10, 0), time(9, 0))

    def test_past_date_rejected(self):
        with self.assertRaises(PastDateError):
            self.generate(time(9, 0), time(10, 0), on_date=date(2024, 6, 1))
        self.assertEqual(Slot.objects.count(), 0)

    def test_started_candidates_today_are_skipped(self):
        """On the current day only candidates that have not started are created."""
        # 09:30 local on MONDAY
        now = utc(2024, 6, 10, 4, 0)
        result = self.generate(time(9, 0), time(11, 0), duration=30, now=now)

        self.assertEqual(result.created_count, 2)
        self.assertEqual(result.skipped, 2)
        self.assertFalse(Slot.objects.filter(start_time__lte=now).exists())

    def test_second_identical_request_creates_nothing(self):
        self.generate(time(9, 0), time(12, 0))
        result = self.generate(time(9, 0), time(12, 0))

        self.assertEqual(result.created_count, 0)
        self.assertEqual(result.skipped, 9)
        self.assertEqual(Slot.objects.count(), 9)

    def test_overlapping_window_fills_only_gaps(self):
        self.generate(time(9, 0), time(10, 0))
        result = self.generate(time(9, 30), time(11, 0), duration=30)

        # 09:30 collides with the existing 09:20 and 09:40 slots; 10:00 and 10:30 are free
        self.assertEqual(result.created_count, 2)

        slots = list(Slot.objects.all())
        for a, b in combinations(slots, 2):
            self.assertFalse(
                a.start_time < b.end_time and b.start_time < a.end_time,
                f"{a} overlaps {b}",
            )

    def test_other_doctors_slots_do_not_block(self):
        Slot.objects.create(
            doctor=self.other_doctor,
            start_time=utc(2024, 6, 10, 3, 30),
            end_time=utc(2024, 6, 10, 3, 50),
            duration_minutes=20,
        )
        result = self.generate(time(9, 0), time(10, 0))
        self.assertEqual(result.created_count, 3)

    def test_cancelled_slots_do_not_block(self):
        Slot.objects.create(
            doctor=self.doctor,
            start_time=utc(2024, 6, 10, 3, 30),
            end_time=utc(2024, 6, 10, 3, 50),
            duration_minutes=20,
            status=Slot.Status.CANCELLED,
        )
        result = self.generate(time(9, 0), time(10, 0))
        self.assertEqual(result.created_count, 3)

    def test_reserved_slot_blocks_its_interval(self):
        Slot.objects.create(
            doctor=self.doctor,
            start_time=utc(2024, 6, 10, 3, 30),
            end_time=utc(2024, 6, 10, 3, 50),
            duration_minutes=20,
            status=Slot.Status.RESERVED,
            reserved_by=self.patient,
            reserved_at=self.now,
        )
        result = self.generate(time(9, 0), time(10, 0))
        self.assertEqual(result.created_count, 2)
        self.assertEqual(result.skipped, 1)

    def test_doctor_timezone_is_respected(self):
        DoctorProfile.objects.filter(user=self.doctor).update(timezone="America/New_York")
        self.generate(time(9, 0), time(9, 20))

        # June is EDT (UTC-4)
        self.assertEqual(Slot.objects.get().start_time, utc(2024, 6, 10, 13, 0))


class RecurrenceTests(ScheduleTestMixin, TestCase):
    def test_weekday_recurrence(self):
        """Mondays and Wednesdays over two weeks → four days of slots."""
        recurrence = Recurrence(
            start_date=MONDAY,
            end_date=MONDAY + timedelta(days=13),
            weekdays=frozenset({0, 2}),
        )
        result = self.generate(time(9, 0), time(10, 0), recurrence=recurrence)

        self.assertEqual(result.created_count, 12)
        local_days = {
            s.start_time.astimezone(KOLKATA).date() for s in Slot.objects.all()
        }
        self.assertEqual(
            local_days,
            {date(2024, 6, 10), date(2024, 6, 12), date(2024, 6, 17), date(2024, 6, 19)},
        )

    def test_all_weekdays_by_default(self):
        recurrence = Recurrence(start_date=MONDAY, end_date=MONDAY + timedelta(days=6))
        result = self.generate(time(9, 0), time(9, 20), recurrence=recurrence)
        self.assertEqual(result.created_count, 7)

    def test_empty_weekdays_rejected(self):
        recurrence = Recurrence(start_date=MONDAY, end_date=MONDAY, weekdays=frozenset())
        with self.assertRaises(InvalidRecurrenceError):
            self.generate(time(9, 0), time(10, 0), recurrence=recurrence)

    def test_invalid_weekday_rejected(self):
        recurrence = Recurrence(start_date=MONDAY, end_date=MONDAY, weekdays=frozenset({7}))
        with self.assertRaises(InvalidRecurrenceError):
            self.generate(time(9, 0), time(10, 0), recurrence=recurrence)

    def test_end_before_start_rejected(self):
        recurrence = Recurrence(start_date=MONDAY, end_date=MONDAY - timedelta(days=1))
        with self.assertRaises(InvalidRecurrenceError):
            self.generate(time(9, 0), time(10, 0), recurrence=recurrence)

    def test_span_limit(self):
        recurrence = Recurrence(start_date=MONDAY, end_date=MONDAY + timedelta(days=400))
        with self.assertRaises(InvalidRecurrenceError):
            self.generate(time(9, 0), time(10, 0), recurrence=recurrence)
        self.assertEqual(Slot.objects.count(), 0)

    def test_recurrence_starting_in_past_rejected(self):
        recurrence = Recurrence(start_date=date(2024, 6, 1), end_date=MONDAY)
        with self.assertRaises(PastDateError):
            self.generate(time(9, 0), time(10, 0), recurrence=recurrence)


# ═══════════════════════════════════════════════════════════════════
#  Slot management
# ═══════════════════════════════════════════════════════════════════


class SlotManagementTests(ScheduleTestMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.generate(time(9, 0), time(10, 0))
        self.first, self.second, self.third = Slot.objects.order_by("start_time")

    def test_reschedule_available_slot(self):
        slot = reschedule_slot(
            slot_id=self.first.pk,
            doctor=self.doctor,
            start_time=utc(2024, 6, 10, 6, 0),
            end_time=utc(2024, 6, 10, 6, 30),
            now=self.now,
        )
        self.assertEqual(slot.duration_minutes, 30)
        slot.refresh_from_db()
        self.assertEqual(slot.start_time, utc(2024, 6, 10, 6, 0))

    def test_reschedule_onto_neighbour_rejected(self):
        with self.assertRaises(SlotOverlapError):
            reschedule_slot(
                slot_id=self.first.pk,
                doctor=self.doctor,
                start_time=utc(2024, 6, 10, 3, 40),
                end_time=utc(2024, 6, 10, 4, 0),
                now=self.now,
            )

    def test_reschedule_reserved_slot_rejected(self):
        Slot.objects.filter(pk=self.first.pk).update(
            status=Slot.Status.RESERVED, reserved_by=self.patient, reserved_at=self.now
        )
        with self.assertRaises(SlotLockedError):
            reschedule_slot(
                slot_id=self.first.pk,
                doctor=self.doctor,
                start_time=utc(2024, 6, 10, 6, 0),
                end_time=utc(2024, 6, 10, 6, 30),
                now=self.now,
            )

    def test_reschedule_other_doctors_slot_not_found(self):
        with self.assertRaises(SlotNotFoundError):
            reschedule_slot(
                slot_id=self.first.pk,
                doctor=self.other_doctor,
                start_time=utc(2024, 6, 10, 6, 0),
                end_time=utc(2024, 6, 10, 6, 30),
                now=self.now,
            )

    def test_reschedule_too_short_rejected(self):
        with self.assertRaises(InvalidDurationError):
            reschedule_slot(
                slot_id=self.first.pk,
                doctor=self.doctor,
                start_time=utc(2024, 6, 10, 6, 0),
                end_time=utc(2024, 6, 10, 6, 10),
                now=self.now,
            )

    def test_delete_available_slots(self):
        removed = delete_slots(doctor=self.doctor, slot_ids=[self.first.pk, self.second.pk])
        self.assertEqual(removed, 2)
        self.assertEqual(list(Slot.objects.values_list("pk", flat=True)), [self.third.pk])

    def test_delete_blocked_by_held_slot(self):
        Slot.objects.filter(pk=self.second.pk).update(status=Slot.Status.BOOKED)
        with self.assertRaises(SlotLockedError):
            delete_slots(doctor=self.doctor, slot_ids=[self.first.pk, self.second.pk])
        self.assertEqual(Slot.objects.count(), 3)

    def test_delete_slot_with_booking_history_withdraws_it(self):
        Booking.objects.create(
            slot=self.first,
            patient=self.patient,
            status=Booking.Status.CANCELLED,
            cancellation_reason="payment_timeout",
        )
        removed = delete_slots(doctor=self.doctor, slot_ids=[self.first.pk])

        self.assertEqual(removed, 1)
        self.first.refresh_from_db()
        self.assertEqual(self.first.status, Slot.Status.CANCELLED)

    def test_delete_unknown_slot(self):
        with self.assertRaises(SlotNotFoundError):
            delete_slots(doctor=self.other_doctor, slot_ids=[self.first.pk])

    def test_doctor_slot_filters(self):
        Slot.objects.filter(pk=self.first.pk).update(status=Slot.Status.BOOKED)
        self.assertEqual(get_doctor_slots(self.doctor, status=Slot.Status.BOOKED).count(), 1)
        self.assertEqual(get_doctor_slots(self.doctor, on_date=MONDAY).count(), 3)
        self.assertEqual(get_doctor_slots(self.doctor, on_date=MONDAY + timedelta(days=1)).count(), 0)


# ═══════════════════════════════════════════════════════════════════
#  Listing & expiry
# ═══════════════════════════════════════════════════════════════════


class AvailabilityTests(ScheduleTestMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.generate(time(9, 0), time(10, 0))
        self.first, self.second, self.third = Slot.objects.order_by("start_time")

    def test_only_available_future_slots_listed(self):
        Slot.objects.filter(pk=self.second.pk).update(
            status=Slot.Status.RESERVED, reserved_by=self.patient, reserved_at=self.now
        )
        slots = list(get_available_slots(self.doctor.pk, now=self.now))
        self.assertEqual(slots, [self.first, self.third])

    def test_started_slots_hidden_before_sweep(self):
        # 09:25 local: first slot has started
        later = utc(2024, 6, 10, 3, 55)
        slots = list(get_available_slots(self.doctor.pk, now=later))
        self.assertEqual(slots, [self.third])

    def test_date_filter_uses_doctor_calendar(self):
        self.assertEqual(get_available_slots(self.doctor.pk, on_date=MONDAY, now=self.now).count(), 3)
        self.assertEqual(
            get_available_slots(self.doctor.pk, on_date=MONDAY - timedelta(days=1), now=self.now).count(),
            0,
        )

    def test_expire_stale_slots(self):
        Slot.objects.filter(pk=self.first.pk).update(status=Slot.Status.BOOKED)
        expired = expire_stale_slots(now=utc(2024, 6, 10, 12, 0))

        self.assertEqual(expired, 2)
        self.assertEqual(
            Slot.objects.filter(status=Slot.Status.EXPIRED).count(),
            2,
        )
        self.first.refresh_from_db()
        self.assertEqual(self.first.status, Slot.Status.BOOKED)

    def test_expired_slots_free_the_interval(self):
        """An unswept past AVAILABLE slot does not block generation."""
        self.third.delete()
        # 09:25 local: the 09:20 slot has started and no longer holds its interval
        later = utc(2024, 6, 10, 3, 55)
        result = self.generate(time(9, 30), time(10, 0), duration=30, now=later)

        self.assertEqual(result.created_count, 1)
        self.assertEqual(result.skipped, 0)

    def test_effective_status(self):
        past = Slot.objects.create(
            doctor=self.doctor,
            start_time=timezone.now() - timedelta(hours=1),
            end_time=timezone.now() - timedelta(minutes=40),
            duration_minutes=20,
        )
        self.assertEqual(past.effective_status, Slot.Status.EXPIRED)
        self.assertFalse(past.is_bookable)

    def test_expire_slots_command(self):
        call_command("expire_slots", verbosity=0)
        # Fixed dates in 2024 are in the past for the real clock
        self.assertEqual(Slot.objects.filter(status=Slot.Status.EXPIRED).count(), 3)


# ═══════════════════════════════════════════════════════════════════
#  API Tests
# ═══════════════════════════════════════════════════════════════════


class SlotAPITests(ScheduleTestMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.client = APIClient()
        self.client.force_authenticate(user=self.doctor)
        self.target_date = timezone.localdate() + timedelta(days=3)

    def _generate(self, **overrides):
        data = {
            "date": self.target_date.isoformat(),
            "start_time": "09:00",
            "end_time": "10:00",
            "duration": 20,
        }
        data.update(overrides)
        return self.client.post(reverse("doctors:api_generate_slots"), data, format="json")

    def test_generate_slots(self):
        response = self._generate()

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data["created_count"], 3)
        self.assertEqual(response.data["skipped_count"], 0)
        self.assertEqual(len(response.data["results"]), 3)

    def test_generate_recurring(self):
        response = self._generate(
            end_date=(self.target_date + timedelta(days=6)).isoformat(),
            weekdays=[self.target_date.weekday()],
        )
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data["created_count"], 3)

    def test_generate_invalid_duration(self):
        response = self._generate(duration=15)

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data["code"], "invalid_duration")

    def test_weekdays_without_end_date(self):
        response = self._generate(weekdays=[0])
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn("end_date", response.data)

    def test_patient_cannot_generate(self):
        self.client.force_authenticate(user=self.patient)
        response = self._generate()
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_unauthenticated_cannot_generate(self):
        self.client.force_authenticate(user=None)
        response = self._generate()
        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)

    def test_available_slots_for_patient(self):
        self._generate()
        self.client.force_authenticate(user=self.patient)

        url = reverse("doctors:api_doctor_available_slots", args=[self.doctor.pk])
        response = self.client.get(url, {"date": self.target_date.isoformat()})

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(len(response.data["results"]), 3)
        self.assertEqual(response.data["results"][0]["doctor_name"], "Dr. Ahmad")

    def test_available_slots_bad_date(self):
        url = reverse("doctors:api_doctor_available_slots", args=[self.doctor.pk])
        response = self.client.get(url, {"date": "10-06-2024"})
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_doctor_list(self):
        response = self.client.get(reverse("doctors:api_doctor_list"), {"specialization": "cardio"})
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual([d["id"] for d in response.data["results"]], [self.doctor.pk])

    def test_own_slot_list_and_detail(self):
        self._generate()
        response = self.client.get(reverse("doctors:api_slot_list"), {"status": "AVAILABLE"})
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(len(response.data["results"]), 3)

        slot_id = response.data["results"][0]["id"]
        detail = self.client.get(reverse("doctors:api_slot_detail", args=[slot_id]))
        self.assertEqual(detail.status_code, status.HTTP_200_OK)

        self.client.force_authenticate(user=self.other_doctor)
        detail = self.client.get(reverse("doctors:api_slot_detail", args=[slot_id]))
        self.assertEqual(detail.status_code, status.HTTP_404_NOT_FOUND)

    def test_reschedule_via_api(self):
        self._generate()
        slot = Slot.objects.order_by("start_time").first()

        response = self.client.patch(
            reverse("doctors:api_slot_detail", args=[slot.pk]),
            {"date": self.target_date.isoformat(), "start_time": "14:00", "end_time": "14:30"},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["duration_minutes"], 30)

    def test_delete_held_slot_conflict(self):
        self._generate()
        slot = Slot.objects.order_by("start_time").first()
        Slot.objects.filter(pk=slot.pk).update(status=Slot.Status.BOOKED)

        response = self.client.delete(reverse("doctors:api_slot_detail", args=[slot.pk]))
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(response.data["code"], "slot_locked")

    def test_delete_and_bulk_delete(self):
        self._generate()
        ids = list(Slot.objects.order_by("start_time").values_list("pk", flat=True))

        response = self.client.delete(reverse("doctors:api_slot_detail", args=[ids[0]]))
        self.assertEqual(response.status_code, status.HTTP_204_NO_CONTENT)

        response = self.client.post(
            reverse("doctors:api_bulk_delete_slots"), {"slots": ids[1:]}, format="json"
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["removed_count"], 2)
        self.assertFalse(Slot.objects.exists())
