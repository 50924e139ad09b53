"""
Tests for payments: Razorpay client, checkout settlement, webhook and wallet.
"""

import hashlib
import hmac
import json
from datetime import timedelta
from decimal import Decimal
from unittest.mock import MagicMock, patch

import requests
from django.contrib.auth import get_user_model
from django.test import TestCase, override_settings
from django.urls import reverse
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APIClient

from appointments.models import Booking
from appointments.services import (
    BookingError,
    StaleReservationError,
    release_expired_reservations,
    reserve_slot,
)
from doctors.models import DoctorProfile, Slot
from payments.gateway import PaymentError, RazorpayClient, to_subunits
from payments.models import Payment, Wallet, WalletTransaction
from payments.services import (
    InsufficientBalanceError,
    PaymentFailedError,
    handle_webhook,
    pay_with_wallet,
    refund_to_wallet,
    start_payment,
    verify_payment,
)

User = get_user_model()

KEY_SECRET = "test_key_secret"
WEBHOOK_SECRET = "test_webhook_secret"


def sign(secret, message):
    if isinstance(message, str):
        message = message.encode()
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def order_response(order_id="order_TEST123", amount=50000):
    response = MagicMock()
    response.status_code = 200
    response.json.return_value = {"id": order_id, "amount": amount, "currency": "INR"}
    return response


class PaymentTestMixin:
    def setUp(self):
        gateway_settings = override_settings(
            RAZORPAY_KEY_ID="rzp_test_key",
            RAZORPAY_KEY_SECRET=KEY_SECRET,
            RAZORPAY_WEBHOOK_SECRET=WEBHOOK_SECRET,
            PAYMENT_CURRENCY="INR",
            BREVO_API_KEY="",
        )
        gateway_settings.enable()
        self.addCleanup(gateway_settings.disable)

        self.doctor = User.objects.create_user(
            email="doctor@example.com",
            password="testpass123",
            name="Dr. Ahmad",
            role=User.Role.DOCTOR,
        )
        DoctorProfile.objects.create(user=self.doctor, consultation_fee=Decimal("500.00"))
        self.patient = User.objects.create_user(
            email="ali@example.com",
            password="testpass123",
            name="Patient Ali",
        )
        self.now = timezone.now()
        start = self.now + timedelta(days=2)
        self.slot = Slot.objects.create(
            doctor=self.doctor,
            start_time=start,
            end_time=start + timedelta(minutes=30),
            duration_minutes=30,
        )
        self.booking = reserve_slot(slot_id=self.slot.id, patient=self.patient, now=self.now)

    @patch("payments.gateway.requests.post")
    def open_order(self, mock_post, order_id="order_TEST123"):
        mock_post.return_value = order_response(order_id)
        payment, _ = start_payment(booking_id=self.booking.id, patient=self.patient)
        return payment


# ═══════════════════════════════════════════════════════════════════
#  Gateway client
# ═══════════════════════════════════════════════════════════════════


class RazorpayClientTests(TestCase):
    def setUp(self):
        self.gateway = RazorpayClient(
            key_id="rzp_test_key",
            key_secret=KEY_SECRET,
            webhook_secret=WEBHOOK_SECRET,
            base_url="https://api.example.test/v1/",
        )

    def test_to_subunits(self):
        self.assertEqual(to_subunits(Decimal("500.00")), 50000)
        self.assertEqual(to_subunits(Decimal("0.5")), 50)

    @patch("payments.gateway.requests.post")
    def test_create_order_posts_amount_in_paise(self, mock_post):
        mock_post.return_value = order_response()

        order = self.gateway.create_order(Decimal("500.00"), receipt="booking-1", currency="INR")

        self.assertEqual(order["id"], "order_TEST123")
        args, kwargs = mock_post.call_args
        self.assertEqual(args[0], "https://api.example.test/v1/orders")
        self.assertEqual(kwargs["json"], {"amount": 50000, "currency": "INR", "receipt": "booking-1"})
        self.assertEqual(kwargs["auth"], ("rzp_test_key", KEY_SECRET))
        self.assertEqual(kwargs["timeout"], 10)

    @patch("payments.gateway.requests.post")
    def test_create_order_gateway_error(self, mock_post):
        mock_post.return_value = MagicMock(status_code=400, text='{"error": "bad"}')
        with self.assertRaises(PaymentError) as ctx:
            self.gateway.create_order(Decimal("500.00"), receipt="booking-1")
        self.assertEqual(ctx.exception.code, "gateway_error")

    @patch("payments.gateway.requests.post", side_effect=requests.ConnectionError("down"))
    def test_create_order_unreachable(self, mock_post):
        with self.assertRaises(PaymentError) as ctx:
            self.gateway.create_order(Decimal("500.00"), receipt="booking-1")
        self.assertEqual(ctx.exception.code, "gateway_unavailable")

    def test_create_order_not_configured(self):
        client = RazorpayClient(key_id="", key_secret="")
        with self.assertRaises(PaymentError) as ctx:
            client.create_order(Decimal("500.00"), receipt="booking-1")
        self.assertEqual(ctx.exception.code, "gateway_not_configured")

    def test_payment_signature(self):
        good = sign(KEY_SECRET, "order_1|pay_1")
        self.assertTrue(self.gateway.verify_payment_signature("order_1", "pay_1", good))
        self.assertFalse(self.gateway.verify_payment_signature("order_1", "pay_2", good))
        self.assertFalse(self.gateway.verify_payment_signature("order_1", "pay_1", ""))

    def test_webhook_signature(self):
        body = b'{"event": "payment.captured"}'
        self.assertTrue(self.gateway.verify_webhook_signature(body, sign(WEBHOOK_SECRET, body)))
        self.assertFalse(self.gateway.verify_webhook_signature(body + b" ", sign(WEBHOOK_SECRET, body)))


# ═══════════════════════════════════════════════════════════════════
#  Checkout settlement
# ═══════════════════════════════════════════════════════════════════


class CheckoutTests(PaymentTestMixin, TestCase):
    def test_start_payment_records_order(self):
        payment = self.open_order()

        self.assertEqual(payment.order_id, "order_TEST123")
        self.assertEqual(payment.amount, Decimal("500.00"))
        self.assertEqual(payment.status, Payment.Status.CREATED)

    def test_valid_signature_confirms_booking(self):
        payment = self.open_order()

        verify_payment(
            order_id=payment.order_id,
            payment_id="pay_ABC",
            signature=sign(KEY_SECRET, f"{payment.order_id}|pay_ABC"),
            patient=self.patient,
        )

        payment.refresh_from_db()
        self.assertEqual(payment.status, Payment.Status.PAID)
        self.assertEqual(payment.payment_id, "pay_ABC")
        self.booking.refresh_from_db()
        self.assertEqual(self.booking.status, Booking.Status.CONFIRMED)
        self.slot.refresh_from_db()
        self.assertEqual(self.slot.status, Slot.Status.BOOKED)

    def test_invalid_signature_cancels_booking(self):
        payment = self.open_order()

        with self.assertRaises(PaymentFailedError):
            verify_payment(
                order_id=payment.order_id,
                payment_id="pay_ABC",
                signature="forged",
                patient=self.patient,
            )

        payment.refresh_from_db()
        self.assertEqual(payment.status, Payment.Status.FAILED)
        self.booking.refresh_from_db()
        self.assertEqual(self.booking.status, Booking.Status.CANCELLED)
        self.assertEqual(self.booking.cancellation_reason, "payment_failed")
        self.slot.refresh_from_db()
        self.assertEqual(self.slot.status, Slot.Status.AVAILABLE)

    def test_payment_after_reclaim_is_credited_to_wallet(self):
        payment = self.open_order()
        release_expired_reservations(now=self.now + timedelta(minutes=16))

        with self.assertRaises(StaleReservationError):
            verify_payment(
                order_id=payment.order_id,
                payment_id="pay_LATE",
                signature=sign(KEY_SECRET, f"{payment.order_id}|pay_LATE"),
            )

        payment.refresh_from_db()
        self.assertEqual(payment.status, Payment.Status.PAID)
        self.assertTrue(payment.refunded)
        self.assertEqual(Wallet.objects.get(user=self.patient).balance, Decimal("500.00"))

    def test_verify_is_idempotent(self):
        payment = self.open_order()
        signature = sign(KEY_SECRET, f"{payment.order_id}|pay_ABC")

        verify_payment(order_id=payment.order_id, payment_id="pay_ABC", signature=signature)
        verify_payment(order_id=payment.order_id, payment_id="pay_ABC", signature=signature)

        self.booking.refresh_from_db()
        self.assertEqual(self.booking.status, Booking.Status.CONFIRMED)

    def test_bad_signature_after_webhook_capture_keeps_confirmation(self):
        """A late callback with a bad signature reports the captured payment."""
        payment = self.open_order()
        body = json.dumps(
            {
                "event": "payment.captured",
                "payload": {"payment": {"entity": {"id": "pay_WH", "order_id": payment.order_id}}},
            }
        ).encode()
        handle_webhook(body, sign(WEBHOOK_SECRET, body))

        settled = verify_payment(
            order_id=payment.order_id,
            payment_id="pay_WH",
            signature="forged",
            patient=self.patient,
        )

        self.assertEqual(settled.status, Payment.Status.PAID)
        self.booking.refresh_from_db()
        self.assertEqual(self.booking.status, Booking.Status.CONFIRMED)
        self.slot.refresh_from_db()
        self.assertEqual(self.slot.status, Slot.Status.BOOKED)

    def test_free_booking_cannot_open_order(self):
        Booking.objects.filter(pk=self.booking.pk).update(amount=Decimal("0.00"))
        with self.assertRaises(PaymentError) as ctx:
            start_payment(booking_id=self.booking.id, patient=self.patient)
        self.assertEqual(ctx.exception.code, "invalid_amount")


class WebhookTests(PaymentTestMixin, TestCase):
    def _body(self, event, order_id="order_TEST123", payment_id="pay_WH"):
        return json.dumps(
            {
                "event": event,
                "payload": {"payment": {"entity": {"id": payment_id, "order_id": order_id}}},
            }
        ).encode()

    def test_captured_confirms_booking(self):
        self.open_order()
        body = self._body("payment.captured")

        handled = handle_webhook(body, sign(WEBHOOK_SECRET, body))

        self.assertTrue(handled)
        self.booking.refresh_from_db()
        self.assertEqual(self.booking.status, Booking.Status.CONFIRMED)

    def test_failed_releases_slot(self):
        self.open_order()
        body = self._body("payment.failed")

        handle_webhook(body, sign(WEBHOOK_SECRET, body))

        self.slot.refresh_from_db()
        self.assertEqual(self.slot.status, Slot.Status.AVAILABLE)

    def test_bad_signature_rejected(self):
        self.open_order()
        body = self._body("payment.captured")
        with self.assertRaises(PaymentError) as ctx:
            handle_webhook(body, "forged")
        self.assertEqual(ctx.exception.code, "invalid_signature")

    def test_unknown_event_ignored(self):
        body = json.dumps({"event": "order.paid"}).encode()
        self.assertFalse(handle_webhook(body, sign(WEBHOOK_SECRET, body)))

    def test_webhook_endpoint(self):
        self.open_order()
        body = self._body("payment.captured")

        response = APIClient().post(
            reverse("payments:api_webhook"),
            data=body,
            content_type="application/json",
            HTTP_X_RAZORPAY_SIGNATURE=sign(WEBHOOK_SECRET, body),
        )

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertTrue(response.data["handled"])


# ═══════════════════════════════════════════════════════════════════
#  Wallet
# ═══════════════════════════════════════════════════════════════════


class WalletTests(PaymentTestMixin, TestCase):
    def fund(self, amount):
        Wallet.objects.update_or_create(user=self.patient, defaults={"balance": amount})

    def test_pay_with_wallet(self):
        self.fund(Decimal("800.00"))

        booking = pay_with_wallet(booking_id=self.booking.id, patient=self.patient)

        self.assertEqual(booking.status, Booking.Status.CONFIRMED)
        self.assertEqual(Wallet.objects.get(user=self.patient).balance, Decimal("300.00"))
        self.assertTrue(
            WalletTransaction.objects.filter(kind=WalletTransaction.Kind.DEBIT, booking=booking).exists()
        )
        self.assertTrue(
            Payment.objects.filter(booking=booking, provider=Payment.Provider.WALLET, status=Payment.Status.PAID).exists()
        )

    def test_insufficient_balance(self):
        self.fund(Decimal("100.00"))
        with self.assertRaises(InsufficientBalanceError):
            pay_with_wallet(booking_id=self.booking.id, patient=self.patient)

        self.booking.refresh_from_db()
        self.assertEqual(self.booking.status, Booking.Status.PENDING)

    def test_stale_reservation_leaves_wallet_untouched(self):
        self.fund(Decimal("800.00"))
        release_expired_reservations(now=self.now + timedelta(minutes=16))

        with self.assertRaises(BookingError):
            pay_with_wallet(booking_id=self.booking.id, patient=self.patient)

        self.assertEqual(Wallet.objects.get(user=self.patient).balance, Decimal("800.00"))

    def test_refund_is_credited_once(self):
        self.fund(Decimal("500.00"))
        booking = pay_with_wallet(booking_id=self.booking.id, patient=self.patient)
        Booking.objects.filter(pk=booking.pk).update(status=Booking.Status.CANCELLED)
        booking.refresh_from_db()

        self.assertEqual(refund_to_wallet(booking), Decimal("500.00"))
        self.assertEqual(refund_to_wallet(booking), Decimal("0.00"))
        self.assertEqual(Wallet.objects.get(user=self.patient).balance, Decimal("500.00"))

    def test_refund_skips_active_booking(self):
        self.assertEqual(refund_to_wallet(self.booking), Decimal("0.00"))

    def test_started_appointment_is_not_refunded(self):
        self.fund(Decimal("500.00"))
        pay_with_wallet(booking_id=self.booking.id, patient=self.patient)
        Slot.objects.filter(pk=self.slot.pk).update(
            start_time=self.now - timedelta(hours=1),
            end_time=self.now - timedelta(minutes=30),
        )

        client = APIClient()
        client.force_authenticate(user=self.patient)
        response = client.post(reverse("appointments:api_cancel_booking", args=[self.booking.id]))

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data["code"], "invalid_status")
        self.assertEqual(Wallet.objects.get(user=self.patient).balance, Decimal("0.00"))
        self.booking.refresh_from_db()
        self.assertEqual(self.booking.status, Booking.Status.CONFIRMED)

    def test_cancel_endpoint_refunds_paid_booking(self):
        self.fund(Decimal("500.00"))
        pay_with_wallet(booking_id=self.booking.id, patient=self.patient)

        client = APIClient()
        client.force_authenticate(user=self.patient)
        response = client.post(reverse("appointments:api_cancel_booking", args=[self.booking.id]))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        wallet = client.get(reverse("payments:api_wallet"))
        self.assertEqual(Decimal(wallet.data["balance"]), Decimal("500.00"))
        self.assertEqual(len(wallet.data["transactions"]), 2)


# ═══════════════════════════════════════════════════════════════════
#  API Tests
# ═══════════════════════════════════════════════════════════════════


class PaymentAPITests(PaymentTestMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.client = APIClient()
        self.client.force_authenticate(user=self.patient)

    @patch("payments.gateway.requests.post")
    def test_create_order(self, mock_post):
        mock_post.return_value = order_response()

        response = self.client.post(reverse("payments:api_create_order", args=[self.booking.id]))

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data["order_id"], "order_TEST123")
        self.assertEqual(response.data["key_id"], "rzp_test_key")

    def test_create_order_for_other_patients_booking(self):
        other = User.objects.create_user(email="sara@example.com", password="testpass123", name="Sara")
        self.client.force_authenticate(user=other)

        response = self.client.post(reverse("payments:api_create_order", args=[self.booking.id]))
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_verify_endpoint(self):
        payment = self.open_order()
        response = self.client.post(
            reverse("payments:api_verify_payment"),
            {
                "razorpay_order_id": payment.order_id,
                "razorpay_payment_id": "pay_ABC",
                "razorpay_signature": sign(KEY_SECRET, f"{payment.order_id}|pay_ABC"),
            },
            format="json",
        )

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["status"], Booking.Status.CONFIRMED)

    def test_verify_endpoint_bad_signature(self):
        payment = self.open_order()
        response = self.client.post(
            reverse("payments:api_verify_payment"),
            {
                "razorpay_order_id": payment.order_id,
                "razorpay_payment_id": "pay_ABC",
                "razorpay_signature": "forged",
            },
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_402_PAYMENT_REQUIRED)
        self.assertEqual(response.data["code"], "payment_failed")

    def test_wallet_pay_endpoint_insufficient(self):
        response = self.client.post(reverse("payments:api_wallet_pay", args=[self.booking.id]))
        self.assertEqual(response.status_code, status.HTTP_402_PAYMENT_REQUIRED)
