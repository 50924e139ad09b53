import logging

import sib_api_v3_sdk
from sib_api_v3_sdk.rest import ApiException
from django.conf import settings

logger = logging.getLogger(__name__)


def _is_email_configured():
    return bool(getattr(settings, "BREVO_API_KEY", ""))


def _get_brevo_api():
    """Initialize and return Brevo API instance"""
    configuration = sib_api_v3_sdk.Configuration()
    configuration.api_key["api-key"] = settings.BREVO_API_KEY
    api_client = sib_api_v3_sdk.ApiClient(configuration)
    return sib_api_v3_sdk.TransactionalEmailsApi(api_client)


def send_notification_email(notification):
    """
    Deliver a notification by transactional email via Brevo.

    Returns:
        True if Brevo accepted the email, False if it was skipped or failed.
    """
    recipient = notification.recipient

    if not _is_email_configured():
        logger.info(
            "[EMAIL] Brevo not configured; skipping email for notification_id=%s",
            notification.id,
        )
        return False

    if not recipient.email:
        return False

    send_smtp_email = sib_api_v3_sdk.SendSmtpEmail(
        to=[{"email": recipient.email, "name": recipient.name}],
        sender={
            "name": getattr(settings, "NOTIFICATION_SENDER_NAME", "Telecare"),
            "email": settings.NOTIFICATION_SENDER_EMAIL,
        },
        subject=notification.title,
        html_content=f"<p>Hello {recipient.name},</p><p>{notification.message}</p>",
        text_content=f"Hello {recipient.name},\n\n{notification.message}\n",
    )

    try:
        _get_brevo_api().send_transac_email(send_smtp_email)
    except ApiException as e:
        logger.error(
            "[EMAIL] Brevo API error for notification_id=%s recipient_id=%s: %s",
            notification.id,
            recipient.id,
            e,
        )
        return False

    logger.info(
        "[EMAIL] Notification email sent for notification_id=%s recipient_id=%s",
        notification.id,
        recipient.id,
    )
    return True
