"""
Slot generation engine for doctor schedules.

Turns a daily time window plus an optional weekday recurrence into
persisted, non-overlapping Slot rows:
1. Validate duration, window, recurrence and start date (no writes yet)
2. Enumerate target dates (single date, or matching weekdays in a range)
3. Walk each day's window in fixed duration steps, dropping partial tails
4. Skip candidates overlapping the doctor's occupying slots
5. Persist the survivors in one atomic bulk insert

Generation for one doctor is serialised with select_for_update() on the
doctor's user row so two concurrent requests cannot both pass the overlap
check for the same interval.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone as dt_timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from django.conf import settings
from django.contrib.auth import get_user_model
from django.db import transaction
from django.utils import timezone

from .models import DoctorProfile, Slot

logger = logging.getLogger(__name__)


class SlotError(Exception):
    """Base exception for slot scheduling failures."""

    def __init__(self, message, code="slot_error"):
        self.message = message
        self.code = code
        super().__init__(self.message)


class InvalidDurationError(SlotError):
    """Raised when the slot duration is below the minimum consult length."""

    def __init__(self, message=None):
        if message is None:
            message = (
                f"Slot duration must be at least "
                f"{_min_duration()} minutes."
            )
        super().__init__(message, code="invalid_duration")


class WindowTooShortError(SlotError):
    """Raised when the daily window cannot hold a single slot."""

    def __init__(self, message="The time window is too short for a single slot."):
        super().__init__(message, code="window_too_short")


class InvalidRecurrenceError(SlotError):
    """Raised when the recurrence rule is empty or inconsistent."""

    def __init__(self, message="Invalid recurrence rule."):
        super().__init__(message, code="invalid_recurrence")


class PastDateError(SlotError):
    """Raised when trying to schedule slots on a past date."""

    def __init__(self, message="Cannot create slots for past dates."):
        super().__init__(message, code="past_date")


class SlotNotFoundError(SlotError):
    def __init__(self, message="Slot not found."):
        super().__init__(message, code="slot_not_found")


class SlotLockedError(SlotError):
    """Raised when modifying a slot that a patient holds."""

    def __init__(self, message="This slot is reserved or booked and cannot be changed."):
        super().__init__(message, code="slot_locked")


class SlotOverlapError(SlotError):
    def __init__(self, message="This time overlaps with another of your slots."):
        super().__init__(message, code="slot_overlap")


@dataclass(frozen=True)
class SlotWindow:
    """Daily working window, in the doctor's local time."""

    start_time: time
    end_time: time
    on_date: date | None = None


@dataclass(frozen=True)
class Recurrence:
    """Weekday recurrence; weekdays use date.weekday() (0=Monday)."""

    start_date: date
    end_date: date
    weekdays: frozenset = field(default_factory=lambda: frozenset(range(7)))


@dataclass
class GenerationResult:
    created: list
    skipped: int = 0

    @property
    def created_count(self):
        return len(self.created)


def _min_duration():
    return getattr(settings, "SLOT_MIN_DURATION_MINUTES", 20)


def _zone(name):
    try:
        return ZoneInfo(name or settings.TIME_ZONE)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("[SLOTS] Unknown timezone %r, falling back to %s", name, settings.TIME_ZONE)
        return ZoneInfo(settings.TIME_ZONE)


def get_doctor_timezone(doctor_id):
    """Return the ZoneInfo of the doctor's calendar."""
    name = (
        DoctorProfile.objects.filter(user_id=doctor_id)
        .values_list("timezone", flat=True)
        .first()
    )
    return _zone(name)


def localize(tz, on_date, at_time):
    """Combine a local date and time into an aware UTC datetime."""
    naive = datetime.combine(on_date, at_time)
    return timezone.make_aware(naive, tz).astimezone(dt_timezone.utc)


def _lock_doctor(doctor_id):
    """Row-lock the doctor so schedule changes for them run one at a time."""
    get_user_model().objects.select_for_update().only("pk").get(pk=doctor_id)


# ── Generation ───────────────────────────────────────────────────────────────


def _validate_request(window, duration_minutes, recurrence, today):
    if duration_minutes is None or duration_minutes < _min_duration():
        raise InvalidDurationError()

    reference_date = window.on_date or today
    span = datetime.combine(reference_date, window.end_time) - datetime.combine(
        reference_date, window.start_time
    )
    if span <= timedelta(0) or span < timedelta(minutes=duration_minutes):
        raise WindowTooShortError()

    if recurrence is None:
        if window.on_date is None:
            raise InvalidRecurrenceError("A date is required for single-day slots.")
        start_date = window.on_date
    else:
        if not recurrence.weekdays:
            raise InvalidRecurrenceError("Select at least one weekday.")
        if any(day not in range(7) for day in recurrence.weekdays):
            raise InvalidRecurrenceError("Weekdays must be between 0 (Monday) and 6 (Sunday).")
        if recurrence.end_date < recurrence.start_date:
            raise InvalidRecurrenceError("End date must not be before start date.")
        max_days = getattr(settings, "SLOT_MAX_RECURRENCE_DAYS", 366)
        if (recurrence.end_date - recurrence.start_date).days + 1 > max_days:
            raise InvalidRecurrenceError(
                f"Recurring slots can span at most {max_days} days."
            )
        start_date = recurrence.start_date

    if start_date < today:
        raise PastDateError()


def _target_dates(window, recurrence):
    if recurrence is None:
        return [window.on_date]

    dates = []
    current = recurrence.start_date
    while current <= recurrence.end_date:
        if current.weekday() in recurrence.weekdays:
            dates.append(current)
        current += timedelta(days=1)
    return dates


def _candidate_intervals(target_date, window, duration_minutes, tz):
    """
    Yield (start, end) UTC pairs stepping through the local window.
    A trailing step that would end after the window is not emitted.
    """
    step = timedelta(minutes=duration_minutes)
    current = datetime.combine(target_date, window.start_time)
    day_end = datetime.combine(target_date, window.end_time)

    while current + step <= day_end:
        start = timezone.make_aware(current, tz).astimezone(dt_timezone.utc)
        yield start, start + step
        current += step


def _overlaps(start, end, ranges):
    """
    Check if [start, end) overlaps any range.
    Overlap exists when: other_start < end AND other_end > start
    """
    for other_start, other_end in ranges:
        if other_start < end and other_end > start:
            return True
    return False


def generate_slots(*, doctor, window, duration_minutes, recurrence=None, now=None):
    """
    Generate and persist slots for a doctor.

    Args:
        doctor: The doctor User instance owning the slots.
        window: SlotWindow with the daily start/end time (and the date
            for single-day mode).
        duration_minutes: Length of every slot.
        recurrence: Optional Recurrence; when given, slots are created on
            every matching weekday between its start and end dates.
        now: Override of the current time (tests, sweeps).

    Returns:
        GenerationResult with the created slots and the number of
        candidates skipped because they overlapped existing slots or had
        already started.

    Raises:
        InvalidDurationError, WindowTooShortError, InvalidRecurrenceError,
        PastDateError: before anything is written.
    """
    now = now or timezone.now()
    tz = get_doctor_timezone(doctor.pk)
    today = now.astimezone(tz).date()

    _validate_request(window, duration_minutes, recurrence, today)

    candidates = []
    for target_date in _target_dates(window, recurrence):
        candidates.extend(_candidate_intervals(target_date, window, duration_minutes, tz))

    if not candidates:
        logger.info("[SLOTS] No candidate slots for doctor_id=%s", doctor.pk)
        return GenerationResult(created=[], skipped=0)

    range_start = min(start for start, _ in candidates)
    range_end = max(end for _, end in candidates)

    with transaction.atomic():
        _lock_doctor(doctor.pk)

        occupied = list(
            Slot.objects.for_doctor(doctor.pk)
            .occupying(now)
            .overlapping(range_start, range_end)
            .values_list("start_time", "end_time")
        )

        new_slots = []
        skipped = 0
        for start, end in candidates:
            if start <= now or _overlaps(start, end, occupied):
                skipped += 1
                continue
            new_slots.append(
                Slot(
                    doctor=doctor,
                    start_time=start,
                    end_time=end,
                    duration_minutes=duration_minutes,
                )
            )
            occupied.append((start, end))

        created = Slot.objects.bulk_create(new_slots)

    logger.info(
        "[SLOTS] Generated slots for doctor_id=%s created=%s skipped=%s",
        doctor.pk,
        len(created),
        skipped,
    )
    return GenerationResult(created=created, skipped=skipped)


# ── Doctor-side management ───────────────────────────────────────────────────


def get_doctor_slots(doctor, status=None, on_date=None):
    """Return a doctor's own slots, optionally filtered by status and local date."""
    qs = Slot.objects.for_doctor(doctor.pk).order_by("start_time")
    if status:
        qs = qs.filter(status=status)
    if on_date:
        qs = _on_local_date(qs, on_date, get_doctor_timezone(doctor.pk))
    return qs


def reschedule_slot(*, slot_id, doctor, start_time, end_time, now=None):
    """
    Move an AVAILABLE slot to a new interval.

    The new interval must respect the duration floor, must not have
    started, and must not overlap the doctor's other occupying slots.
    """
    now = now or timezone.now()

    if end_time <= start_time:
        raise WindowTooShortError("End time must be after start time.")
    duration_minutes = int((end_time - start_time).total_seconds() // 60)
    if duration_minutes < _min_duration():
        raise InvalidDurationError()
    if start_time <= now:
        raise PastDateError("Cannot move a slot into the past.")

    with transaction.atomic():
        _lock_doctor(doctor.pk)

        try:
            slot = Slot.objects.select_for_update().get(pk=slot_id, doctor=doctor)
        except Slot.DoesNotExist:
            raise SlotNotFoundError()

        if slot.status != Slot.Status.AVAILABLE:
            raise SlotLockedError()

        conflict = (
            Slot.objects.for_doctor(doctor.pk)
            .occupying(now)
            .overlapping(start_time, end_time)
            .exclude(pk=slot.pk)
            .exists()
        )
        if conflict:
            raise SlotOverlapError()

        slot.start_time = start_time
        slot.end_time = end_time
        slot.duration_minutes = duration_minutes
        slot.save(update_fields=["start_time", "end_time", "duration_minutes", "updated_at"])

    logger.info("[SLOTS] Rescheduled slot_id=%s doctor_id=%s", slot.pk, doctor.pk)
    return slot


def delete_slots(*, doctor, slot_ids):
    """
    Remove a doctor's slots.

    RESERVED/BOOKED slots block the whole call. Slots that carry booking
    history are withdrawn (status CANCELLED) instead of deleted so the
    bookings keep their slot.

    Returns:
        Number of slots removed or withdrawn.
    """
    with transaction.atomic():
        slots = list(
            Slot.objects.select_for_update().filter(doctor=doctor, pk__in=slot_ids)
        )
        if not slots:
            raise SlotNotFoundError()

        held = [s.pk for s in slots if s.status in (Slot.Status.RESERVED, Slot.Status.BOOKED)]
        if held:
            raise SlotLockedError(
                f"Slots {', '.join(str(pk) for pk in held)} are reserved or booked and cannot be deleted."
            )

        ids = [s.pk for s in slots]
        with_history = set(
            Slot.objects.filter(pk__in=ids, bookings__isnull=False)
            .values_list("pk", flat=True)
            .distinct()
        )
        withdrawn = Slot.objects.filter(pk__in=with_history).update(
            status=Slot.Status.CANCELLED, updated_at=timezone.now()
        )
        Slot.objects.filter(pk__in=set(ids) - with_history).delete()

    logger.info(
        "[SLOTS] Removed slots for doctor_id=%s deleted=%s withdrawn=%s",
        doctor.pk,
        len(ids) - withdrawn,
        withdrawn,
    )
    return len(ids)


# ── Patient-side listing & expiry ────────────────────────────────────────────


def _on_local_date(qs, on_date, tz):
    day_start = localize(tz, on_date, time.min)
    return qs.filter(start_time__gte=day_start, start_time__lt=day_start + timedelta(days=1))


def get_available_slots(doctor_id, on_date=None, now=None):
    """
    Return bookable slots for a doctor, soonest first.

    Slots whose start has passed are excluded even if the expiry sweep has
    not rewritten them yet.
    """
    qs = Slot.objects.for_doctor(doctor_id).bookable(now).order_by("start_time")
    if on_date:
        qs = _on_local_date(qs, on_date, get_doctor_timezone(doctor_id))
    return qs


def expire_stale_slots(now=None):
    """Mark AVAILABLE slots whose start time has passed as EXPIRED."""
    now = now or timezone.now()
    expired = Slot.objects.filter(
        status=Slot.Status.AVAILABLE,
        start_time__lte=now,
    ).update(status=Slot.Status.EXPIRED, updated_at=now)

    if expired:
        logger.info("[SLOTS] Expired %s stale slots", expired)
    return expired
