"""
Notification dispatch.

Public API:
  notify(user_id, type, title, message)
  notify_on_commit(user_id, type, title, message)
  cleanup_old_notifications(now=None)

notify() is called from on_commit hooks of the engines, so it must never
raise: a failed notification can not undo a booking transition.
"""
import logging
from datetime import timedelta

import django.dispatch
from django.conf import settings
from django.db import transaction
from django.utils import timezone

from apps.notifications.models import Notification

logger = logging.getLogger(__name__)

# Sent after the Notification row exists. Receivers deliver it (e-mail, push, ...).
notification_created = django.dispatch.Signal()


def notify(user_id, type, title, message):
    """Persist a notification for user_id and hand it to the delivery receivers."""
    try:
        notification = Notification.objects.create(
            user_id=user_id, type=type, title=title, message=message,
        )
    except Exception as exc:
        logger.exception('Failed to store %s notification for user %s: %s', type, user_id, exc)
        return None

    for receiver, response in notification_created.send_robust(
        sender=Notification, notification=notification,
    ):
        if isinstance(response, Exception):
            logger.error(
                'Notification receiver %r failed for %s: %s',
                receiver, notification.id, response,
            )
    return notification


def cleanup_old_notifications(now=None) -> int:
    """Delete read notifications older than NOTIFICATION_RETENTION_DAYS. Returns the count."""
    now = now or timezone.now()
    cutoff = now - timedelta(days=settings.NOTIFICATION_RETENTION_DAYS)
    deleted, _ = Notification.objects.filter(read=True, created_at__lt=cutoff).delete()
    logger.info('Notification cleanup: %d read notification(s) older than %s removed', deleted, cutoff.date())
    return deleted


def notify_on_commit(user_id, type, title, message):
    """Queue notify() for after the surrounding transaction commits (fire-and-forget)."""
    transaction.on_commit(lambda: notify(user_id, type, title, message))
