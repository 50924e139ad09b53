"""
Tests for notifications: event publication, email delivery and the
in-app notification API.
"""

from unittest.mock import MagicMock, patch

from django.contrib.auth import get_user_model
from django.test import TestCase, override_settings
from django.urls import reverse
from rest_framework import status
from rest_framework.test import APIClient
from sib_api_v3_sdk.rest import ApiException

from notifications import events
from notifications.mailer import send_notification_email
from notifications.models import Notification

User = get_user_model()

PAYLOAD = {
    "booking_id": 1,
    "doctor_name": "Ahmad",
    "patient_name": "Patient Ali",
    "start_display": "2026-06-10 09:00",
}


class RenderTests(TestCase):
    def test_known_event(self):
        title, message = events.render(events.BOOKING_CREATED, PAYLOAD)
        self.assertEqual(title, "New booking")
        self.assertEqual(message, "Patient Ali booked your slot on 2026-06-10 09:00. Awaiting payment.")

    def test_missing_keys_do_not_fail(self):
        _, message = events.render(events.BOOKING_CANCELLED, {})
        self.assertIn("cancelled", message)

    def test_unknown_event(self):
        self.assertEqual(events.render("something.else", PAYLOAD), ("something.else", ""))


@override_settings(BREVO_API_KEY="")
class PublishTests(TestCase):
    def setUp(self):
        self.doctor = User.objects.create_user(
            email="doctor@example.com",
            password="testpass123",
            name="Dr. Ahmad",
            role=User.Role.DOCTOR,
        )

    def test_publish_stores_notification(self):
        notification = events.publish(events.BOOKING_CREATED, PAYLOAD, self.doctor)

        self.assertEqual(notification.recipient, self.doctor)
        self.assertEqual(notification.event, events.BOOKING_CREATED)
        self.assertFalse(notification.is_read)
        self.assertEqual(notification.payload["booking_id"], 1)

    @patch("notifications.events.send_notification_email", side_effect=RuntimeError("boom"))
    def test_email_failure_keeps_notification(self, mock_send):
        events.publish(events.PAYMENT_CONFIRMED, PAYLOAD, self.doctor)

        mock_send.assert_called_once()
        self.assertEqual(Notification.objects.count(), 1)


class MailerTests(TestCase):
    def setUp(self):
        self.patient = User.objects.create_user(
            email="ali@example.com", password="testpass123", name="Patient Ali"
        )
        self.notification = Notification.objects.create(
            recipient=self.patient,
            event=events.PAYMENT_CONFIRMED,
            title="Booking confirmed",
            message="Your appointment is confirmed.",
        )

    @override_settings(BREVO_API_KEY="")
    def test_skipped_when_not_configured(self):
        self.assertFalse(send_notification_email(self.notification))

    @override_settings(BREVO_API_KEY="xkeysib-test", NOTIFICATION_SENDER_EMAIL="noreply@example.com")
    @patch("notifications.mailer._get_brevo_api")
    def test_sends_via_brevo(self, mock_api):
        api = MagicMock()
        mock_api.return_value = api

        self.assertTrue(send_notification_email(self.notification))

        email = api.send_transac_email.call_args[0][0]
        self.assertEqual(email.to, [{"email": "ali@example.com", "name": "Patient Ali"}])
        self.assertEqual(email.subject, "Booking confirmed")

    @override_settings(BREVO_API_KEY="xkeysib-test", NOTIFICATION_SENDER_EMAIL="noreply@example.com")
    @patch("notifications.mailer._get_brevo_api")
    def test_brevo_error_returns_false(self, mock_api):
        mock_api.return_value.send_transac_email.side_effect = ApiException(status=401)
        self.assertFalse(send_notification_email(self.notification))


# ═══════════════════════════════════════════════════════════════════
#  API Tests
# ═══════════════════════════════════════════════════════════════════


class NotificationAPITests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user = User.objects.create_user(
            email="ali@example.com", password="testpass123", name="Patient Ali"
        )
        self.other = User.objects.create_user(
            email="sara@example.com", password="testpass123", name="Patient Sara"
        )
        self.client.force_authenticate(user=self.user)

        self.first = Notification.objects.create(
            recipient=self.user, event=events.BOOKING_CREATED, title="A", message="a"
        )
        self.second = Notification.objects.create(
            recipient=self.user, event=events.PAYMENT_CONFIRMED, title="B", message="b", is_read=True
        )
        Notification.objects.create(
            recipient=self.other, event=events.BOOKING_CREATED, title="C", message="c"
        )

    def test_list_own_notifications(self):
        response = self.client.get(reverse("notifications:api_notification_list"))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual({n["id"] for n in response.data["results"]}, {self.first.id, self.second.id})

    def test_list_unread_only(self):
        response = self.client.get(reverse("notifications:api_notification_list"), {"unread": "1"})
        self.assertEqual([n["id"] for n in response.data["results"]], [self.first.id])

    def test_unread_count(self):
        response = self.client.get(reverse("notifications:api_unread_count"))
        self.assertEqual(response.data["unread_count"], 1)

    def test_mark_read(self):
        response = self.client.post(reverse("notifications:api_mark_read", args=[self.first.id]))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.first.refresh_from_db()
        self.assertTrue(self.first.is_read)

    def test_cannot_mark_someone_elses(self):
        foreign = Notification.objects.get(recipient=self.other)
        response = self.client.post(reverse("notifications:api_mark_read", args=[foreign.id]))
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_requires_authentication(self):
        self.client.force_authenticate(user=None)
        response = self.client.get(reverse("notifications:api_unread_count"))
        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)
