from rest_framework import serializers

from accounts.serializers import UserSummarySerializer
from doctors.serializers import SlotSerializer
from .models import Booking


class BookingResponseSerializer(serializers.ModelSerializer):
    """
    Response serializer for a booking.

    Embeds the slot and both parties so clients can render a booking
    without follow-up requests.
    """

    slot = SlotSerializer(read_only=True)
    patient = UserSummarySerializer(read_only=True)
    doctor = UserSummarySerializer(source="slot.doctor", read_only=True)
    status_display = serializers.CharField(source="get_status_display", read_only=True)

    class Meta:
        model = Booking
        fields = [
            "id",
            "slot",
            "doctor",
            "patient",
            "amount",
            "status",
            "status_display",
            "cancellation_reason",
            "created_at",
        ]
        read_only_fields = fields


class BookingStatusUpdateSerializer(serializers.Serializer):
    status = serializers.ChoiceField(
        choices=[Booking.Status.COMPLETED, Booking.Status.CANCELLED],
    )
