"""
WaitlistEntry — a client's request to be told when a matching slot frees up.

Lifecycle:
  waiting  -> notified (slot offered, expires_at set) | left
  notified -> converted (booked in time) | expired (offer lapsed) | left
"""
from datetime import date as date_type

from django.db import models
from apps.core.models import UUIDModel, TimestampedModel
from apps.core.exceptions import NotFoundError
from apps.accounts.models import Account
from apps.availability.models import TimeSlot
from apps.bookings.models import Booking
from apps.services.models import Service


class WaitlistStatus(models.TextChoices):
    WAITING   = 'waiting',   'Waiting'
    NOTIFIED  = 'notified',  'Notified'
    CONVERTED = 'converted', 'Converted'
    EXPIRED   = 'expired',   'Expired'
    LEFT      = 'left',      'Left'


ACTIVE_STATUSES = (WaitlistStatus.WAITING, WaitlistStatus.NOTIFIED)


class WaitlistEntry(UUIDModel, TimestampedModel):
    service = models.ForeignKey(Service, on_delete=models.CASCADE, related_name='waitlist_entries')
    user = models.ForeignKey(Account, on_delete=models.CASCADE, related_name='waitlist_entries')
    preferred_date = models.DateField(db_index=True)
    alternative_dates = models.JSONField(default=list, blank=True, help_text='ISO dates (YYYY-MM-DD)')
    preferred_time = models.TimeField(null=True, blank=True)
    priority = models.IntegerField(default=0)
    status = models.CharField(
        max_length=10, choices=WaitlistStatus.choices,
        default=WaitlistStatus.WAITING, db_index=True,
    )
    notified_at = models.DateTimeField(null=True, blank=True)
    expires_at = models.DateTimeField(null=True, blank=True, db_index=True)
    offered_slot = models.ForeignKey(
        TimeSlot, on_delete=models.SET_NULL, null=True, blank=True, related_name='waitlist_offers',
    )
    booking = models.ForeignKey(
        Booking, on_delete=models.SET_NULL, null=True, blank=True, related_name='waitlist_entries',
    )
    notes = models.TextField(blank=True)

    class Meta:
        verbose_name = 'Waitlist Entry'
        verbose_name_plural = 'Waitlist Entries'
        ordering = ['-priority', 'created_at']
        constraints = [
            # One live entry per client per service; history rows are unrestricted
            models.UniqueConstraint(
                fields=['service', 'user'],
                condition=models.Q(status__in=['waiting', 'notified']),
                name='uq_active_waitlist_entry',
            ),
        ]

    def __str__(self):
        return f"{self.user.name} → {self.service.title} ({self.preferred_date}) [{self.status}]"

    @property
    def is_active(self):
        return self.status in ACTIVE_STATUSES

    def wants_date(self, day: date_type) -> bool:
        return day == self.preferred_date or day.isoformat() in (self.alternative_dates or [])

    @classmethod
    def get(cls, entry_id):
        try:
            return cls.objects.select_related('service', 'user').get(id=entry_id)
        except (cls.DoesNotExist, ValueError):
            raise NotFoundError('Waitlist entry not found.')
