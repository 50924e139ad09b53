from datetime import datetime

from django.utils import timezone
from rest_framework import status
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from accounts.permissions import IsDoctor
from .models import DoctorProfile, Slot
from .serializers import (
    BulkDeleteSlotsSerializer,
    DoctorProfileListSerializer,
    GenerateSlotsSerializer,
    RescheduleSlotSerializer,
    SlotSerializer,
)
from .services import (
    Recurrence,
    SlotError,
    SlotNotFoundError,
    SlotWindow,
    delete_slots,
    generate_slots,
    get_available_slots,
    get_doctor_slots,
    get_doctor_timezone,
    localize,
    reschedule_slot,
)

_ERROR_STATUS = {
    "slot_not_found": status.HTTP_404_NOT_FOUND,
    "slot_locked": status.HTTP_409_CONFLICT,
    "slot_overlap": status.HTTP_409_CONFLICT,
}


def _error_response(exc):
    return Response(
        {"detail": exc.message, "code": exc.code},
        status=_ERROR_STATUS.get(exc.code, status.HTTP_400_BAD_REQUEST),
    )


def _parse_date_param(value):
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError:
        return None


class DoctorListAPIView(APIView):
    """
    GET /doctors/api/
    GET /doctors/api/?specialization=X

    Returns active doctors with their public profile.
    """

    permission_classes = [IsAuthenticated]

    def get(self, request):
        profiles = DoctorProfile.objects.select_related("user").filter(user__is_active=True)

        specialization = request.query_params.get("specialization")
        if specialization:
            profiles = profiles.filter(specialization__icontains=specialization)

        serializer = DoctorProfileListSerializer(profiles.order_by("user__name"), many=True)
        return Response({"results": serializer.data}, status=status.HTTP_200_OK)


class DoctorAvailableSlotsAPIView(APIView):
    """
    GET /doctors/api/<doctor_id>/available-slots/?date=YYYY-MM-DD

    Returns bookable slots for a doctor; `date` narrows to one day of the
    doctor's calendar.
    """

    permission_classes = [IsAuthenticated]

    def get(self, request, doctor_id):
        on_date = None
        date_str = request.query_params.get("date")
        if date_str:
            on_date = _parse_date_param(date_str)
            if on_date is None:
                return Response(
                    {"date": "Invalid date format. Use YYYY-MM-DD."},
                    status=status.HTTP_400_BAD_REQUEST,
                )

        slots = get_available_slots(doctor_id, on_date=on_date)
        serializer = SlotSerializer(slots, many=True)
        return Response(
            {"doctor_id": doctor_id, "date": date_str, "results": serializer.data},
            status=status.HTTP_200_OK,
        )


class GenerateSlotsAPIView(APIView):
    """
    POST /doctors/api/slots/generate/

    Request body:
        {
            "date": "2026-06-10",        (optional, defaults to today)
            "start_time": "09:00",
            "end_time": "12:00",
            "duration": 30,
            "end_date": "2026-06-30",    (optional, enables recurrence)
            "weekdays": [0, 2, 4]        (optional, with end_date)
        }

    Success Response (201):
        {"created_count": N, "skipped_count": M, "results": [...]}

    Error Responses:
        400: Validation errors with `code` (invalid_duration,
             window_too_short, invalid_recurrence, past_date).
    """

    permission_classes = [IsDoctor]

    def post(self, request):
        serializer = GenerateSlotsSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        data = serializer.validated_data
        today = timezone.now().astimezone(get_doctor_timezone(request.user.pk)).date()
        first_date = data.get("date") or today

        recurrence = None
        if "end_date" in data:
            recurrence = Recurrence(
                start_date=first_date,
                end_date=data["end_date"],
                weekdays=frozenset(data.get("weekdays", range(7))),
            )

        try:
            result = generate_slots(
                doctor=request.user,
                window=SlotWindow(
                    start_time=data["start_time"],
                    end_time=data["end_time"],
                    on_date=first_date,
                ),
                duration_minutes=data["duration"],
                recurrence=recurrence,
            )
        except SlotError as e:
            return _error_response(e)

        return Response(
            {
                "created_count": result.created_count,
                "skipped_count": result.skipped,
                "results": SlotSerializer(result.created, many=True).data,
            },
            status=status.HTTP_201_CREATED,
        )


class DoctorSlotListAPIView(APIView):
    """
    GET /doctors/api/slots/?status=AVAILABLE&date=YYYY-MM-DD

    Returns the requesting doctor's own slots.
    """

    permission_classes = [IsDoctor]

    def get(self, request):
        slot_status = request.query_params.get("status")
        if slot_status and slot_status not in Slot.Status.values:
            return Response(
                {"status": f"Unknown status. Choose from {', '.join(Slot.Status.values)}."},
                status=status.HTTP_400_BAD_REQUEST,
            )

        on_date = None
        if request.query_params.get("date"):
            on_date = _parse_date_param(request.query_params["date"])
            if on_date is None:
                return Response(
                    {"date": "Invalid date format. Use YYYY-MM-DD."},
                    status=status.HTTP_400_BAD_REQUEST,
                )

        slots = get_doctor_slots(request.user, status=slot_status, on_date=on_date)
        return Response({"results": SlotSerializer(slots, many=True).data}, status=status.HTTP_200_OK)


class DoctorSlotDetailAPIView(APIView):
    """
    GET    /doctors/api/slots/<slot_id>/
    PATCH  /doctors/api/slots/<slot_id>/   {"date", "start_time", "end_time"}
    DELETE /doctors/api/slots/<slot_id>/
    """

    permission_classes = [IsDoctor]

    def get(self, request, slot_id):
        try:
            slot = Slot.objects.get(pk=slot_id, doctor=request.user)
        except Slot.DoesNotExist:
            return _error_response(SlotNotFoundError())
        return Response(SlotSerializer(slot).data, status=status.HTTP_200_OK)

    def patch(self, request, slot_id):
        serializer = RescheduleSlotSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        data = serializer.validated_data
        tz = get_doctor_timezone(request.user.pk)
        try:
            slot = reschedule_slot(
                slot_id=slot_id,
                doctor=request.user,
                start_time=localize(tz, data["date"], data["start_time"]),
                end_time=localize(tz, data["date"], data["end_time"]),
            )
        except SlotError as e:
            return _error_response(e)

        return Response(SlotSerializer(slot).data, status=status.HTTP_200_OK)

    def delete(self, request, slot_id):
        try:
            delete_slots(doctor=request.user, slot_ids=[slot_id])
        except SlotError as e:
            return _error_response(e)
        return Response(status=status.HTTP_204_NO_CONTENT)


class BulkDeleteSlotsAPIView(APIView):
    """
    POST /doctors/api/slots/bulk-delete/   {"slots": [1, 2, 3]}
    """

    permission_classes = [IsDoctor]

    def post(self, request):
        serializer = BulkDeleteSlotsSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        try:
            removed = delete_slots(doctor=request.user, slot_ids=serializer.validated_data["slots"])
        except SlotError as e:
            return _error_response(e)

        return Response({"removed_count": removed}, status=status.HTTP_200_OK)
