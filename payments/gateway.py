"""
Razorpay client.

Thin wrapper over the Razorpay REST API (orders) plus the two HMAC-SHA256
checks the checkout flow depends on:

* checkout signature: HMAC(key_secret, "<order_id>|<payment_id>")
* webhook signature:  HMAC(webhook_secret, <raw request body>)
"""

import hashlib
import hmac
import logging
from decimal import Decimal

import requests
from django.conf import settings

logger = logging.getLogger(__name__)


class PaymentError(Exception):
    """Raised when the gateway cannot be reached or rejects a request."""

    def __init__(self, message, code="payment_error"):
        self.message = message
        self.code = code
        super().__init__(self.message)


def to_subunits(amount):
    """Rupees → paise. Razorpay amounts are integers in the smallest unit."""
    return int((Decimal(amount) * 100).quantize(Decimal("1")))


def _hmac_sha256(secret, message):
    if isinstance(message, str):
        message = message.encode()
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


class RazorpayClient:
    def __init__(self, key_id=None, key_secret=None, webhook_secret=None, base_url=None):
        self.key_id = key_id if key_id is not None else getattr(settings, "RAZORPAY_KEY_ID", "")
        self.key_secret = (
            key_secret if key_secret is not None else getattr(settings, "RAZORPAY_KEY_SECRET", "")
        )
        self.webhook_secret = (
            webhook_secret
            if webhook_secret is not None
            else getattr(settings, "RAZORPAY_WEBHOOK_SECRET", "")
        )
        self.base_url = (
            base_url or getattr(settings, "RAZORPAY_BASE_URL", "https://api.razorpay.com/v1")
        ).rstrip("/")

    @property
    def is_configured(self):
        return bool(self.key_id and self.key_secret)

    def create_order(self, amount, receipt, currency=None):
        """
        Open a gateway order.

        Args:
            amount: Decimal amount in major units (e.g. rupees).
            receipt: Our reference for the order (booking id).
            currency: ISO code, defaults to settings.PAYMENT_CURRENCY.

        Returns:
            The order dict returned by Razorpay (contains "id").

        Raises:
            PaymentError: Gateway not configured, unreachable or returned an error.
        """
        if not self.is_configured:
            raise PaymentError(
                "Payment gateway is not configured. Set RAZORPAY_KEY_ID and RAZORPAY_KEY_SECRET.",
                code="gateway_not_configured",
            )

        body = {
            "amount": to_subunits(amount),
            "currency": currency or getattr(settings, "PAYMENT_CURRENCY", "INR"),
            "receipt": str(receipt),
        }

        logger.info("[PAYMENT] Creating order receipt=%s amount=%s", receipt, body["amount"])

        try:
            response = requests.post(
                f"{self.base_url}/orders",
                json=body,
                auth=(self.key_id, self.key_secret),
                timeout=10,
            )
        except requests.RequestException as e:
            logger.error("[PAYMENT] Gateway unreachable receipt=%s: %s", receipt, e)
            raise PaymentError("Payment gateway is unreachable.", code="gateway_unavailable")

        if response.status_code >= 400:
            logger.error(
                "[PAYMENT] Order rejected receipt=%s status_code=%s body=%r",
                receipt,
                response.status_code,
                response.text,
            )
            raise PaymentError("Payment gateway rejected the order.", code="gateway_error")

        order = response.json()
        logger.info("[PAYMENT] Order created order_id=%s receipt=%s", order.get("id"), receipt)
        return order

    def verify_payment_signature(self, order_id, payment_id, signature):
        if not (order_id and payment_id and signature and self.key_secret):
            return False
        expected = _hmac_sha256(self.key_secret, f"{order_id}|{payment_id}")
        return hmac.compare_digest(expected, signature)

    def verify_webhook_signature(self, body, signature):
        if not (signature and self.webhook_secret):
            return False
        expected = _hmac_sha256(self.webhook_secret, body)
        return hmac.compare_digest(expected, signature)


def get_client():
    return RazorpayClient()
