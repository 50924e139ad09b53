from django.urls import path
from . import api_views

app_name = "notifications"

urlpatterns = [
    path("api/", api_views.NotificationListAPIView.as_view(), name="api_notification_list"),
    path(
        "api/unread-count/",
        api_views.UnreadNotificationCountAPIView.as_view(),
        name="api_unread_count",
    ),
    path(
        "api/<int:notification_id>/read/",
        api_views.MarkNotificationReadAPIView.as_view(),
        name="api_mark_read",
    ),
]
