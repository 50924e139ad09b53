from django.contrib import admin
from .models import Booking


@admin.register(Booking)
class BookingAdmin(admin.ModelAdmin):
    list_display = [
        "id",
        "patient",
        "get_doctor",
        "get_start_time",
        "amount",
        "status",
        "cancellation_reason",
        "created_at",
    ]
    list_filter = ["status", "cancellation_reason"]
    search_fields = ["patient__name", "patient__email", "slot__doctor__name"]
    raw_id_fields = ["patient", "slot"]
    readonly_fields = ["created_at", "updated_at"]
    list_select_related = ["patient", "slot", "slot__doctor"]

    def get_doctor(self, obj):
        return obj.slot.doctor
    get_doctor.short_description = "Doctor"

    def get_start_time(self, obj):
        return obj.slot.start_time
    get_start_time.short_description = "Appointment"
    get_start_time.admin_order_field = "slot__start_time"
