from rest_framework import status
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from .models import Notification
from .serializers import NotificationSerializer


class NotificationListAPIView(APIView):
    """
    GET /notifications/api/?unread=1

    Returns the requesting user's notifications, newest first.
    """

    permission_classes = [IsAuthenticated]

    def get(self, request):
        notifications = Notification.objects.filter(recipient=request.user)
        if request.query_params.get("unread") in ("1", "true"):
            notifications = notifications.filter(is_read=False)

        serializer = NotificationSerializer(notifications, many=True)
        return Response({"results": serializer.data}, status=status.HTTP_200_OK)


class UnreadNotificationCountAPIView(APIView):
    """GET /notifications/api/unread-count/"""

    permission_classes = [IsAuthenticated]

    def get(self, request):
        count = Notification.objects.filter(recipient=request.user, is_read=False).count()
        return Response({"unread_count": count}, status=status.HTTP_200_OK)


class MarkNotificationReadAPIView(APIView):
    """POST /notifications/api/<notification_id>/read/"""

    permission_classes = [IsAuthenticated]

    def post(self, request, notification_id):
        updated = Notification.objects.filter(
            id=notification_id,
            recipient=request.user,
        ).update(is_read=True)

        if not updated:
            return Response(
                {"detail": "Notification not found."},
                status=status.HTTP_404_NOT_FOUND,
            )
        return Response({"id": notification_id, "is_read": True}, status=status.HTTP_200_OK)
