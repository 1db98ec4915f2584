"""
E-mail delivery for in-app notifications.

Connected to notification_created in NotificationsConfig.ready(), so every
stored notification is mailed to the user when they have an address.
Sending is synchronous (no task queue); failures are logged, never raised.
"""
import logging
from django.conf import settings
from django.core.mail import EmailMultiAlternatives

logger = logging.getLogger(__name__)


def _send(subject: str, to_email: str, body: str, ref: str = ''):
    """Low-level send helper — plain-text message through Django's mail framework."""
    if not to_email:
        logger.warning('Email skipped — no email address for notification %s', ref)
        return

    try:
        msg = EmailMultiAlternatives(
            subject=subject,
            body=body,
            from_email=settings.DEFAULT_FROM_EMAIL,
            to=[to_email],
        )
        msg.send(fail_silently=False)
        logger.info('Email "%s" sent to %s', subject, to_email)
    except Exception as exc:
        # Log but never crash the calling flow due to email failure
        logger.exception('Failed to send email "%s" to %s: %s', subject, to_email, exc)


def _body(notification) -> str:
    return (
        f"Hi {notification.user.name},\n\n"
        f"{notification.message}\n\n"
        f"— ServiceHub\n"
        f"Questions? Write to {settings.DEFAULT_FROM_EMAIL}\n"
    )


def send_notification_email(sender, notification, **kwargs):
    """Receiver for notification_created."""
    _send(
        subject=notification.title,
        to_email=notification.user.email,
        body=_body(notification),
        ref=str(notification.id)[:8].upper(),
    )
