"""
Service model — something a provider sells and clients book.

price is snapshotted onto Booking.total_price at reservation time, so later
price edits never change an existing booking or its escrow record.
cancellation_hours / rescheduling_hours are the fallback thresholds used
when no BookingPolicy of the matching type applies.
"""
from decimal import Decimal

from django.db import models
from django.core.validators import MinValueValidator, MaxValueValidator
from apps.core.models import BaseModel
from apps.core.exceptions import NotFoundError
from apps.accounts.models import Account


class Service(BaseModel):
    provider = models.ForeignKey(
        Account,
        on_delete=models.PROTECT,
        related_name='services',
    )
    title = models.CharField(max_length=150)
    description = models.TextField(blank=True)
    duration_minutes = models.PositiveIntegerField(
        validators=[MinValueValidator(15), MaxValueValidator(480)],
        help_text='Session duration in minutes',
    )
    price = models.DecimalField(
        max_digits=10, decimal_places=2,
        validators=[MinValueValidator(Decimal('0.00'))],
    )
    is_active = models.BooleanField(default=True, db_index=True)

    cancellation_hours = models.PositiveIntegerField(
        default=24,
        help_text='Minimum notice for a free cancellation when no policy is configured.',
    )
    rescheduling_hours = models.PositiveIntegerField(
        default=24,
        help_text='Minimum notice for rescheduling when no policy is configured.',
    )

    # Denormalised counters maintained by the booking engine and the ratings job
    avg_rating = models.DecimalField(max_digits=3, decimal_places=2, null=True, blank=True)
    booking_count = models.PositiveIntegerField(default=0)

    class Meta:
        verbose_name = 'Service'
        verbose_name_plural = 'Services'
        ordering = ['title']

    def __str__(self):
        return f"{self.title} ({self.duration_minutes} min) — {self.provider.name}"

    @classmethod
    def get(cls, service_id):
        try:
            return cls.objects.select_related('provider').get(id=service_id)
        except (cls.DoesNotExist, ValueError):
            raise NotFoundError('Service not found.')
