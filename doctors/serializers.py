from rest_framework import serializers
from .models import DoctorProfile, Slot

TIME_INPUT_FORMATS = ["%H:%M", "%H:%M:%S", "%I:%M %p"]


class DoctorProfileListSerializer(serializers.ModelSerializer):
    """
    Serializer for doctor listing, used in browse/search views.
    The id is the doctor's user id, which is what slot endpoints take.
    """

    id = serializers.IntegerField(source="user.id")
    name = serializers.CharField(source="user.name")
    email = serializers.EmailField(source="user.email")

    class Meta:
        model = DoctorProfile
        fields = [
            "id",
            "name",
            "email",
            "specialization",
            "bio",
            "consultation_fee",
            "timezone",
        ]


class SlotSerializer(serializers.ModelSerializer):
    """Serializer for persisted slots."""

    doctor_name = serializers.CharField(source="doctor.name", read_only=True)
    effective_status = serializers.CharField(read_only=True)

    class Meta:
        model = Slot
        fields = [
            "id",
            "doctor",
            "doctor_name",
            "start_time",
            "end_time",
            "duration_minutes",
            "status",
            "effective_status",
            "reserved_at",
            "created_at",
        ]
        read_only_fields = fields


class GenerateSlotsSerializer(serializers.Serializer):
    """
    Request serializer for slot generation.

    Single-day mode: `date` (defaults to today) with no `end_date`.
    Recurring mode: `end_date` given; runs from `date` (or today) to
    `end_date` on `weekdays` (defaults to every day).

    Business rules (minimum duration, window length, past dates) are
    enforced by the generation service so they come back with error codes.
    """

    date = serializers.DateField(required=False, help_text="First (or only) date, YYYY-MM-DD.")
    start_time = serializers.TimeField(input_formats=TIME_INPUT_FORMATS)
    end_time = serializers.TimeField(input_formats=TIME_INPUT_FORMATS)
    duration = serializers.IntegerField(help_text="Slot length in minutes.")
    end_date = serializers.DateField(required=False, help_text="Last date for recurring slots.")
    weekdays = serializers.ListField(
        child=serializers.IntegerField(),
        required=False,
        help_text="Weekdays to repeat on, 0=Monday … 6=Sunday.",
    )

    def validate(self, attrs):
        if "weekdays" in attrs and "end_date" not in attrs:
            raise serializers.ValidationError(
                {"end_date": "end_date is required when weekdays are given."}
            )
        return attrs


class RescheduleSlotSerializer(serializers.Serializer):
    date = serializers.DateField()
    start_time = serializers.TimeField(input_formats=TIME_INPUT_FORMATS)
    end_time = serializers.TimeField(input_formats=TIME_INPUT_FORMATS)


class BulkDeleteSlotsSerializer(serializers.Serializer):
    slots = serializers.ListField(child=serializers.IntegerField(), allow_empty=False)
