"""
Booking listings for patients and doctors.

Patient bookings are split into:
- upcoming: slot start >= now AND status PENDING/CONFIRMED  (soonest first)
- past:     everything else                                  (most recent first)

Both branches share one select_related base queryset, so there are no N+1 queries.
"""

from django.db.models import Q
from django.utils import timezone

from appointments.models import Booking

_UPCOMING_STATUSES = (Booking.Status.PENDING, Booking.Status.CONFIRMED)


def _base_qs():
    return Booking.objects.select_related("slot", "slot__doctor", "patient")


def get_patient_bookings(patient, upcoming_limit=None, past_limit=None, now=None):
    """
    Return upcoming and past bookings for the given patient user.

    Returns:
        dict with "upcoming", "past" (lists of Booking) and their total
        counts before limits are applied.
    """
    now = now or timezone.now()
    base = _base_qs().filter(patient=patient)

    upcoming_q = Q(slot__start_time__gte=now, status__in=_UPCOMING_STATUSES)

    upcoming_qs = base.filter(upcoming_q).order_by("slot__start_time")
    past_qs = base.exclude(upcoming_q).order_by("-slot__start_time")

    upcoming_count = upcoming_qs.count()
    past_count = past_qs.count()

    if upcoming_limit is not None:
        upcoming_qs = upcoming_qs[:upcoming_limit]
    if past_limit is not None:
        past_qs = past_qs[:past_limit]

    return {
        "upcoming": list(upcoming_qs),
        "past": list(past_qs),
        "upcoming_count": upcoming_count,
        "past_count": past_count,
    }


def get_doctor_bookings(doctor, status=None):
    """Return bookings on the doctor's slots, newest appointment first."""
    qs = _base_qs().filter(slot__doctor=doctor).order_by("-slot__start_time")
    if status:
        qs = qs.filter(status=status)
    return qs
