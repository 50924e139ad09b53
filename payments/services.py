"""
Payment orchestration for bookings.

Flow for a reserved slot:
1. start_payment()   opens a Razorpay order for the PENDING booking
2. verify_payment()  checks the checkout signature; success confirms the
                     booking, failure cancels it and frees the slot
3. handle_webhook()  same settlement, driven by the gateway
4. pay_with_wallet() settles from the patient's wallet balance instead

Settlement locks the Payment row, so the checkout callback and the webhook
for the same order settle it once.
"""

import json
import logging
from decimal import Decimal

from django.conf import settings
from django.db import transaction

from appointments.models import Booking
from appointments.services import (
    BookingError,
    BookingNotFoundError,
    StaleReservationError,
    cancel_booking,
    confirm_booking,
)
from .gateway import PaymentError, get_client
from .models import Payment, Wallet, WalletTransaction

logger = logging.getLogger(__name__)


class PaymentNotFoundError(PaymentError):
    def __init__(self, message="Payment not found."):
        super().__init__(message, code="payment_not_found")


class PaymentFailedError(PaymentError):
    def __init__(self, message="Payment could not be verified. The reservation has been released."):
        super().__init__(message, code="payment_failed")


class InsufficientBalanceError(PaymentError):
    def __init__(self, message="Insufficient wallet balance."):
        super().__init__(message, code="insufficient_balance")


def get_wallet(user):
    wallet, _ = Wallet.objects.get_or_create(user=user)
    return wallet


def _pending_booking_for(booking_id, patient):
    try:
        booking = Booking.objects.select_related("slot").get(pk=booking_id, patient=patient)
    except Booking.DoesNotExist:
        raise BookingNotFoundError()
    if booking.status != Booking.Status.PENDING:
        raise BookingError("This booking is not awaiting payment.", code="invalid_status")
    return booking


# ── Gateway checkout ─────────────────────────────────────────────────────────


def start_payment(*, booking_id, patient, client=None):
    """
    Open a gateway order for a PENDING booking.

    Returns:
        (payment, order) where order is the raw Razorpay order dict the
        frontend hands to the checkout widget.

    Raises:
        BookingNotFoundError: Booking missing or not the patient's.
        BookingError: Booking is not PENDING.
        PaymentError: Zero amount or gateway failure.
    """
    booking = _pending_booking_for(booking_id, patient)
    if booking.amount <= 0:
        raise PaymentError(
            "This booking has no fee. Settle it from the wallet instead.",
            code="invalid_amount",
        )

    client = client or get_client()
    currency = getattr(settings, "PAYMENT_CURRENCY", "INR")
    order = client.create_order(booking.amount, receipt=f"booking-{booking.id}", currency=currency)

    payment = Payment.objects.create(
        booking=booking,
        provider=Payment.Provider.RAZORPAY,
        order_id=order["id"],
        amount=booking.amount,
        currency=currency,
    )
    logger.info(
        "[PAYMENT] Started payment_id=%s booking_id=%s order_id=%s",
        payment.id,
        booking.id,
        payment.order_id,
    )
    return payment, order


def _settle_success(payment_pk, gateway_payment_id):
    """
    Mark the payment PAID and confirm its booking.

    Money captured for a reservation that was already reclaimed is credited
    to the patient's wallet and StaleReservationError is raised after commit.
    """
    stale = False
    with transaction.atomic():
        payment = Payment.objects.select_for_update().select_related("booking").get(pk=payment_pk)
        if payment.status == Payment.Status.PAID:
            return payment

        payment.payment_id = gateway_payment_id or payment.payment_id
        payment.status = Payment.Status.PAID
        payment.save(update_fields=["payment_id", "status", "updated_at"])

        try:
            confirm_booking(booking_id=payment.booking_id)
        except StaleReservationError:
            stale = True
            _credit_payment(payment, note=f"Refund for expired reservation #{payment.booking_id}")

    if stale:
        logger.warning(
            "[PAYMENT] Captured after reservation expired payment_id=%s booking_id=%s",
            payment.id,
            payment.booking_id,
        )
        raise StaleReservationError(
            "This reservation expired before payment completed. "
            "The amount has been credited to your wallet."
        )

    logger.info("[PAYMENT] Paid payment_id=%s booking_id=%s", payment.id, payment.booking_id)
    return payment


def _settle_failure(payment_pk, gateway_payment_id):
    with transaction.atomic():
        payment = Payment.objects.select_for_update().get(pk=payment_pk)
        if payment.status != Payment.Status.CREATED:
            return payment

        payment.payment_id = gateway_payment_id or payment.payment_id
        payment.status = Payment.Status.FAILED
        payment.save(update_fields=["payment_id", "status", "updated_at"])

        try:
            cancel_booking(booking_id=payment.booking_id, reason="payment_failed")
        except BookingError as e:
            # Already released by the timeout sweep or a cancellation.
            logger.info(
                "[PAYMENT] Booking not cancelled booking_id=%s code=%s",
                payment.booking_id,
                e.code,
            )

    logger.info("[PAYMENT] Failed payment_id=%s booking_id=%s", payment.id, payment.booking_id)
    return payment


def verify_payment(*, order_id, payment_id, signature, patient=None, client=None):
    """
    Settle a checkout callback.

    A valid signature confirms the booking; an invalid one marks the
    payment FAILED, cancels the booking and raises PaymentFailedError.
    A payment the webhook has already settled as PAID is returned as is.

    Raises:
        PaymentNotFoundError: Unknown order (or not the patient's).
        PaymentFailedError: Signature mismatch.
        StaleReservationError: Paid after the reservation was reclaimed.
    """
    client = client or get_client()

    payment = (
        Payment.objects.select_related("booking")
        .filter(order_id=order_id, provider=Payment.Provider.RAZORPAY)
        .first()
    )
    if payment is None or (patient is not None and payment.booking.patient_id != patient.id):
        raise PaymentNotFoundError()

    if client.verify_payment_signature(order_id, payment_id, signature):
        return _settle_success(payment.pk, payment_id)

    logger.warning("[PAYMENT] Signature mismatch order_id=%s payment_id=%s", order_id, payment_id)
    settled = _settle_failure(payment.pk, payment_id)
    if settled.status == Payment.Status.PAID:
        # Already captured through the webhook; report the settled state.
        return settled
    raise PaymentFailedError()


def handle_webhook(body, signature, client=None):
    """
    Process a Razorpay webhook delivery.

    Args:
        body: Raw request body (bytes); the signature covers it verbatim.
        signature: Value of the X-Razorpay-Signature header.

    Returns:
        True if the event settled a known payment, False if it was ignored.

    Raises:
        PaymentError: Signature invalid or body not JSON.
    """
    client = client or get_client()
    if not client.verify_webhook_signature(body, signature):
        logger.warning("[PAYMENT] Webhook rejected: invalid signature")
        raise PaymentError("Invalid webhook signature.", code="invalid_signature")

    try:
        data = json.loads(body)
        event = data["event"]
    except (ValueError, KeyError, TypeError):
        raise PaymentError("Malformed webhook body.", code="invalid_payload")

    if event not in ("payment.captured", "payment.failed"):
        logger.info("[PAYMENT] Webhook ignored event=%s", event)
        return False

    entity = data.get("payload", {}).get("payment", {}).get("entity", {})
    order_id = entity.get("order_id")
    payment = None
    if order_id:
        payment = Payment.objects.filter(
            order_id=order_id,
            provider=Payment.Provider.RAZORPAY,
        ).first()
    if payment is None:
        logger.info("[PAYMENT] Webhook for unknown order_id=%s event=%s", order_id, event)
        return False

    if event == "payment.captured":
        try:
            _settle_success(payment.pk, entity.get("id"))
        except StaleReservationError:
            pass  # refunded to wallet in _settle_success
    else:
        _settle_failure(payment.pk, entity.get("id"))

    logger.info("[PAYMENT] Webhook handled event=%s order_id=%s", event, order_id)
    return True


# ── Wallet ───────────────────────────────────────────────────────────────────


def _credit_payment(payment, note):
    wallet, _ = Wallet.objects.select_for_update().get_or_create(user_id=payment.booking.patient_id)
    wallet.balance += payment.amount
    wallet.save(update_fields=["balance", "updated_at"])
    WalletTransaction.objects.create(
        wallet=wallet,
        kind=WalletTransaction.Kind.CREDIT,
        amount=payment.amount,
        booking=payment.booking,
        note=note,
    )
    payment.refunded = True
    payment.save(update_fields=["refunded", "updated_at"])
    logger.info(
        "[WALLET] Credited %s to user_id=%s booking_id=%s",
        payment.amount,
        wallet.user_id,
        payment.booking_id,
    )


def pay_with_wallet(*, booking_id, patient):
    """
    Settle a PENDING booking from the patient's wallet balance.

    The debit and the confirmation commit together; a stale reservation
    or short balance leaves the wallet untouched.

    Raises:
        BookingNotFoundError, BookingError, InsufficientBalanceError,
        StaleReservationError
    """
    with transaction.atomic():
        booking = _pending_booking_for(booking_id, patient)
        wallet, _ = Wallet.objects.select_for_update().get_or_create(user=patient)

        if wallet.balance < booking.amount:
            raise InsufficientBalanceError()

        booking = confirm_booking(booking_id=booking.id)

        wallet.balance -= booking.amount
        wallet.save(update_fields=["balance", "updated_at"])
        WalletTransaction.objects.create(
            wallet=wallet,
            kind=WalletTransaction.Kind.DEBIT,
            amount=booking.amount,
            booking=booking,
            note=f"Payment for booking #{booking.id}",
        )
        Payment.objects.create(
            booking=booking,
            provider=Payment.Provider.WALLET,
            amount=booking.amount,
            currency=getattr(settings, "PAYMENT_CURRENCY", "INR"),
            status=Payment.Status.PAID,
        )

    logger.info("[WALLET] Booking paid booking_id=%s amount=%s", booking.id, booking.amount)
    return booking


def refund_to_wallet(booking):
    """
    Credit every unrefunded PAID payment of a cancelled booking back to
    the patient's wallet. Safe to call more than once.

    Returns:
        The total amount credited (Decimal, zero when nothing was due).
    """
    if booking.status != Booking.Status.CANCELLED:
        return Decimal("0.00")

    total = Decimal("0.00")
    with transaction.atomic():
        payments = list(
            Payment.objects.select_for_update()
            .select_related("booking")
            .filter(booking=booking, status=Payment.Status.PAID, refunded=False)
        )
        for payment in payments:
            _credit_payment(payment, note=f"Refund for cancelled booking #{booking.id}")
            total += payment.amount

    return total
