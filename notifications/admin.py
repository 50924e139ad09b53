from django.contrib import admin
from .models import Notification


@admin.register(Notification)
class NotificationAdmin(admin.ModelAdmin):
    list_display = ["event", "recipient", "title", "is_read", "created_at"]
    list_filter = ["event", "is_read"]
    search_fields = ["title", "message", "recipient__name", "recipient__email"]
    raw_id_fields = ["recipient"]
    readonly_fields = ["payload", "created_at"]
