from django.conf import settings
from django.db import models


class Notification(models.Model):
    """
    In-app notification produced by a published domain event.

    Channel rules:
    - In-app: ALWAYS created; this row is the source of truth.
    - Email:  Attempted after the row exists; failures are logged only.
    """

    recipient = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="notifications",
    )
    event = models.CharField(max_length=50)
    title = models.CharField(max_length=255)
    message = models.TextField()
    payload = models.JSONField(default=dict, blank=True)
    is_read = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        verbose_name = "Notification"
        verbose_name_plural = "Notifications"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["recipient", "is_read"], name="notif_recipient_read_idx"),
        ]

    def __str__(self):
        return f"[{self.event}] → {self.recipient.name} ({self.created_at:%Y-%m-%d})"
