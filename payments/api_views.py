from django.conf import settings
from rest_framework import status
from rest_framework.permissions import AllowAny
from rest_framework.response import Response
from rest_framework.views import APIView

from accounts.permissions import IsPatient
from appointments.api_views import booking_error_response
from appointments.serializers import BookingResponseSerializer
from appointments.services import BookingError
from .gateway import PaymentError
from .serializers import PaymentSerializer, VerifyPaymentSerializer, WalletSerializer
from .services import get_wallet, handle_webhook, pay_with_wallet, start_payment, verify_payment

_ERROR_STATUS = {
    "payment_not_found": status.HTTP_404_NOT_FOUND,
    "payment_failed": status.HTTP_402_PAYMENT_REQUIRED,
    "insufficient_balance": status.HTTP_402_PAYMENT_REQUIRED,
    "gateway_not_configured": status.HTTP_503_SERVICE_UNAVAILABLE,
    "gateway_unavailable": status.HTTP_502_BAD_GATEWAY,
    "gateway_error": status.HTTP_502_BAD_GATEWAY,
}


def payment_error_response(exc):
    return Response(
        {"detail": exc.message, "code": exc.code},
        status=_ERROR_STATUS.get(exc.code, status.HTTP_400_BAD_REQUEST),
    )


class CreatePaymentOrderAPIView(APIView):
    """
    POST /payments/api/bookings/<booking_id>/order/

    Opens a Razorpay order for a PENDING booking.

    Success Response (201):
        {
            "key_id": "...",
            "order_id": "order_XXXX",
            "amount": 50000,          (paise)
            "currency": "INR",
            "payment": {...}
        }
    """

    permission_classes = [IsPatient]

    def post(self, request, booking_id):
        try:
            payment, order = start_payment(booking_id=booking_id, patient=request.user)
        except PaymentError as e:
            return payment_error_response(e)
        except BookingError as e:
            return booking_error_response(e)

        return Response(
            {
                "key_id": getattr(settings, "RAZORPAY_KEY_ID", ""),
                "order_id": order["id"],
                "amount": order.get("amount"),
                "currency": order.get("currency", payment.currency),
                "payment": PaymentSerializer(payment).data,
            },
            status=status.HTTP_201_CREATED,
        )


class VerifyPaymentAPIView(APIView):
    """
    POST /payments/api/verify/

    Request body (as returned by Razorpay checkout):
        {
            "razorpay_order_id": "order_XXXX",
            "razorpay_payment_id": "pay_XXXX",
            "razorpay_signature": "hex"
        }

    Success Response (200): confirmed booking.

    Error Responses:
        402: Signature mismatch, booking cancelled and slot released.
        404: Unknown order.
        409: Reservation expired before payment; amount credited to wallet.
    """

    permission_classes = [IsPatient]

    def post(self, request):
        serializer = VerifyPaymentSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        data = serializer.validated_data
        try:
            payment = verify_payment(
                order_id=data["razorpay_order_id"],
                payment_id=data["razorpay_payment_id"],
                signature=data["razorpay_signature"],
                patient=request.user,
            )
        except PaymentError as e:
            return payment_error_response(e)
        except BookingError as e:
            return booking_error_response(e)

        payment.booking.refresh_from_db()
        return Response(BookingResponseSerializer(payment.booking).data, status=status.HTTP_200_OK)


class RazorpayWebhookAPIView(APIView):
    """
    POST /payments/api/webhook/

    Called by Razorpay; authenticated by the X-Razorpay-Signature header
    over the raw body instead of a user session.
    """

    authentication_classes = []
    permission_classes = [AllowAny]

    def post(self, request):
        signature = request.headers.get("X-Razorpay-Signature", "")
        try:
            handled = handle_webhook(request.body, signature)
        except PaymentError as e:
            return payment_error_response(e)
        return Response({"handled": handled}, status=status.HTTP_200_OK)


class WalletPaymentAPIView(APIView):
    """
    POST /payments/api/bookings/<booking_id>/wallet/

    Confirms a PENDING booking by debiting the patient's wallet.
    """

    permission_classes = [IsPatient]

    def post(self, request, booking_id):
        try:
            booking = pay_with_wallet(booking_id=booking_id, patient=request.user)
        except PaymentError as e:
            return payment_error_response(e)
        except BookingError as e:
            return booking_error_response(e)

        return Response(BookingResponseSerializer(booking).data, status=status.HTTP_200_OK)


class WalletAPIView(APIView):
    """GET /payments/api/wallet/"""

    permission_classes = [IsPatient]

    def get(self, request):
        wallet = get_wallet(request.user)
        return Response(WalletSerializer(wallet).data, status=status.HTTP_200_OK)
