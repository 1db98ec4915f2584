"""
Notification model — the in-app inbox. Every engine event that concerns a
user lands here first; delivery channels hang off the notification_created
signal (see dispatch.py).
"""
from django.db import models
from apps.core.models import UUIDModel, TimestampedModel
from apps.accounts.models import Account


class NotificationType(models.TextChoices):
    BOOKING_REQUEST          = 'booking_request',          'Booking Request'
    BOOKING_ACCEPTED         = 'booking_accepted',         'Booking Accepted'
    BOOKING_DECLINED         = 'booking_declined',         'Booking Declined'
    BOOKING_COMPLETED        = 'booking_completed',        'Booking Completed'
    BOOKING_CANCELLED        = 'booking_cancelled',        'Booking Cancelled'
    BOOKING_REMINDER         = 'booking_reminder',         'Booking Reminder'
    PAYMENT_FAILED           = 'payment_failed',           'Payment Failed'
    PAYMENT_REFUNDED         = 'payment_refunded',         'Payment Refunded'
    ESCROW_RELEASED          = 'escrow_released',          'Escrow Released'
    EARLY_RELEASE_REQUESTED  = 'early_release_requested',  'Early Release Requested'
    DISPUTE_OPENED           = 'dispute_opened',           'Dispute Opened'
    DISPUTE_RESOLVED         = 'dispute_resolved',         'Dispute Resolved'
    WITHDRAWAL               = 'withdrawal',               'Withdrawal'
    WAITLIST_JOINED          = 'waitlist_joined',          'Waitlist Joined'
    WAITLIST_SLOT_AVAILABLE  = 'waitlist_slot_available',  'Waitlist Slot Available'


class Notification(UUIDModel, TimestampedModel):
    user = models.ForeignKey(Account, on_delete=models.CASCADE, related_name='notifications')
    type = models.CharField(max_length=40, choices=NotificationType.choices, db_index=True)
    title = models.CharField(max_length=200)
    message = models.TextField()
    read = models.BooleanField(default=False, db_index=True)

    class Meta:
        verbose_name = 'Notification'
        verbose_name_plural = 'Notifications'
        ordering = ['-created_at']

    def __str__(self):
        return f"{self.user.name}: {self.title}"
