from django.contrib import admin
from .models import DoctorProfile, Slot


@admin.register(DoctorProfile)
class DoctorProfileAdmin(admin.ModelAdmin):
    list_display = ["user", "specialization", "consultation_fee", "timezone"]
    list_filter = ["specialization"]
    search_fields = ["user__name", "user__email", "specialization"]
    raw_id_fields = ["user"]


@admin.register(Slot)
class SlotAdmin(admin.ModelAdmin):
    list_display = [
        "id",
        "doctor",
        "start_time",
        "end_time",
        "duration_minutes",
        "status",
        "reserved_by",
        "reserved_at",
    ]
    list_filter = ["status"]
    search_fields = ["doctor__name", "doctor__email"]
    raw_id_fields = ["doctor", "reserved_by"]
    readonly_fields = ["created_at", "updated_at"]
    date_hierarchy = "start_time"
