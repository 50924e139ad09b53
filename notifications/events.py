"""
Domain event publication.

Booking code calls publish(event, payload, recipient) and never talks to a
delivery channel directly. Each published event becomes an in-app
Notification for the recipient, followed by a best-effort email.

Callers inside a transaction should wrap publish() in
transaction.on_commit() so nothing is announced for a rolled-back write.
"""

import logging

from .mailer import send_notification_email
from .models import Notification

logger = logging.getLogger(__name__)

BOOKING_CREATED = "booking.created"
PAYMENT_CONFIRMED = "payment.confirmed"
BOOKING_CANCELLED = "booking.cancelled"

_MESSAGES = {
    BOOKING_CREATED: (
        "New booking",
        "{patient_name} booked your slot on {start_display}. Awaiting payment.",
    ),
    PAYMENT_CONFIRMED: (
        "Booking confirmed",
        "The appointment between Dr. {doctor_name} and {patient_name} "
        "on {start_display} is confirmed.",
    ),
    BOOKING_CANCELLED: (
        "Booking cancelled",
        "The appointment on {start_display} was cancelled ({reason}).",
    ),
}


def render(event, payload):
    """Return (title, message) for an event."""
    try:
        title, template = _MESSAGES[event]
    except KeyError:
        return event, ""
    return title, template.format_map(_Defaults(payload))


class _Defaults(dict):
    def __missing__(self, key):
        return "-"


def publish(event, payload, recipient):
    """
    Publish an event to a single recipient.

    The in-app notification is always stored first; email failures
    cannot prevent it.
    """
    title, message = render(event, payload)

    notification = Notification.objects.create(
        recipient=recipient,
        event=event,
        title=title,
        message=message,
        payload=payload,
    )
    logger.info(
        "[NOTIFICATION] %s stored for recipient_id=%s notification_id=%s",
        event,
        recipient.id,
        notification.id,
    )

    try:
        send_notification_email(notification)
    except Exception as exc:
        logger.error(
            "[NOTIFICATION] Unexpected error emailing notification_id=%s: %r",
            notification.id,
            exc,
        )

    return notification
