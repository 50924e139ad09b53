from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import APIView

from accounts.permissions import IsDoctor, IsPatient
from payments.services import refund_to_wallet
from .models import Booking
from .serializers import BookingResponseSerializer, BookingStatusUpdateSerializer
from .services import (
    BookingError,
    cancel_booking,
    get_doctor_bookings,
    get_patient_bookings,
    reserve_slot,
    update_booking_status,
)

_ERROR_STATUS = {
    "slot_not_found": status.HTTP_404_NOT_FOUND,
    "booking_not_found": status.HTTP_404_NOT_FOUND,
    "slot_unavailable": status.HTTP_409_CONFLICT,
    "stale_reservation": status.HTTP_409_CONFLICT,
}


def booking_error_response(exc):
    return Response(
        {"detail": exc.message, "code": exc.code},
        status=_ERROR_STATUS.get(exc.code, status.HTTP_400_BAD_REQUEST),
    )


class ReserveSlotAPIView(APIView):
    """
    POST /appointments/api/slots/<slot_id>/reserve/

    Reserve a slot as a patient. The booking stays PENDING until payment
    is verified (see payments) or the reservation times out.

    Success Response (201):
        Full booking details via BookingResponseSerializer.

    Error Responses:
        404: Slot does not exist.
        409: Slot already taken, expired or withdrawn.
    """

    permission_classes = [IsPatient]

    def post(self, request, slot_id):
        try:
            booking = reserve_slot(slot_id=slot_id, patient=request.user)
        except BookingError as e:
            return booking_error_response(e)

        return Response(BookingResponseSerializer(booking).data, status=status.HTTP_201_CREATED)


class PatientBookingsAPIView(APIView):
    """
    GET /appointments/api/my-bookings/?upcoming_limit=N&past_limit=M

    Returns the patient's bookings split into upcoming and past.
    """

    permission_classes = [IsPatient]

    def get(self, request):
        limits = {}
        for param in ("upcoming_limit", "past_limit"):
            value = request.query_params.get(param)
            if value is None:
                continue
            if not value.isdigit():
                return Response(
                    {param: "Must be a non-negative integer."},
                    status=status.HTTP_400_BAD_REQUEST,
                )
            limits[param] = int(value)

        bookings = get_patient_bookings(request.user, **limits)
        return Response(
            {
                "upcoming": BookingResponseSerializer(bookings["upcoming"], many=True).data,
                "past": BookingResponseSerializer(bookings["past"], many=True).data,
                "upcoming_count": bookings["upcoming_count"],
                "past_count": bookings["past_count"],
            },
            status=status.HTTP_200_OK,
        )


class CancelBookingAPIView(APIView):
    """
    POST /appointments/api/bookings/<booking_id>/cancel/

    Patient cancels their own booking. A paid booking is refunded to the
    patient's wallet.
    """

    permission_classes = [IsPatient]

    def post(self, request, booking_id):
        try:
            booking = cancel_booking(
                booking_id=booking_id,
                reason="cancelled_by_patient",
                actor=request.user,
            )
        except BookingError as e:
            return booking_error_response(e)

        refund_to_wallet(booking)

        return Response(BookingResponseSerializer(booking).data, status=status.HTTP_200_OK)


class DoctorBookingsAPIView(APIView):
    """
    GET /appointments/api/doctor/bookings/?status=CONFIRMED
    """

    permission_classes = [IsDoctor]

    def get(self, request):
        booking_status = request.query_params.get("status")
        if booking_status and booking_status not in Booking.Status.values:
            return Response(
                {"status": f"Unknown status. Choose from {', '.join(Booking.Status.values)}."},
                status=status.HTTP_400_BAD_REQUEST,
            )

        bookings = get_doctor_bookings(request.user, status=booking_status)
        return Response(
            {"results": BookingResponseSerializer(bookings, many=True).data},
            status=status.HTTP_200_OK,
        )


class DoctorBookingStatusAPIView(APIView):
    """
    PATCH /appointments/api/doctor/bookings/<booking_id>/status/   {"status": "COMPLETED"}
    """

    permission_classes = [IsDoctor]

    def patch(self, request, booking_id):
        serializer = BookingStatusUpdateSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        new_status = serializer.validated_data["status"]
        try:
            booking = update_booking_status(
                booking_id=booking_id,
                doctor=request.user,
                status=new_status,
            )
        except BookingError as e:
            return booking_error_response(e)

        if new_status == Booking.Status.CANCELLED:
            refund_to_wallet(booking)

        return Response(BookingResponseSerializer(booking).data, status=status.HTTP_200_OK)
