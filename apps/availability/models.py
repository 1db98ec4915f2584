"""
Availability app models:
  - WeeklyAvailability : recurring per-weekday working window (the template)
  - TimeSlot           : a materialised, bookable interval; one holder at most
"""
from django.db import models
from apps.core.models import UUIDModel, TimestampedModel
from apps.core.exceptions import NotFoundError
from apps.accounts.models import Account
from apps.services.models import Service


WEEKDAY_CHOICES = [
    (0, 'Monday'), (1, 'Tuesday'), (2, 'Wednesday'),
    (3, 'Thursday'), (4, 'Friday'), (5, 'Saturday'), (6, 'Sunday'),
]


class WeeklyAvailability(UUIDModel, TimestampedModel):
    """
    One working window of a provider on a weekday.
    A provider can have several windows per weekday (e.g. split shifts);
    they must not overlap. Replaced wholesale by set_weekly_availability.
    """
    provider = models.ForeignKey(
        Account,
        on_delete=models.CASCADE,
        related_name='weekly_availability',
    )
    weekday = models.IntegerField(choices=WEEKDAY_CHOICES)
    start_time = models.TimeField()
    end_time = models.TimeField()
    is_active = models.BooleanField(default=True)

    class Meta:
        verbose_name = 'Weekly Availability'
        verbose_name_plural = 'Weekly Availability'
        ordering = ['provider', 'weekday', 'start_time']
        constraints = [
            models.UniqueConstraint(
                fields=['provider', 'weekday', 'start_time'],
                name='uq_weekly_availability_window',
            ),
            models.CheckConstraint(
                condition=models.Q(start_time__lt=models.F('end_time')),
                name='ck_weekly_availability_ordered',
            ),
        ]

    def __str__(self):
        return (
            f"{self.provider.name} — {self.get_weekday_display()} "
            f"({self.start_time.strftime('%H:%M')}–{self.end_time.strftime('%H:%M')})"
        )


class TimeSlot(UUIDModel, TimestampedModel):
    """
    A bookable interval of a provider.

    is_booked and booking always move together: the claim is a single
    conditional UPDATE (is_booked False -> True, booking set) and the check
    constraint below rejects any row where only one of them is set.
    booking is one-to-one, so no booking can hold two slots either.
    """
    provider = models.ForeignKey(Account, on_delete=models.CASCADE, related_name='time_slots')
    service = models.ForeignKey(
        Service, on_delete=models.SET_NULL, null=True, blank=True, related_name='time_slots',
        help_text='Optional: restrict the slot to one service. Empty means any of the provider\'s services.',
    )
    start = models.DateTimeField(db_index=True)
    end = models.DateTimeField()
    is_booked = models.BooleanField(default=False, db_index=True)
    booking = models.OneToOneField(
        'bookings.Booking', on_delete=models.PROTECT, null=True, blank=True, related_name='held_slot',
    )

    class Meta:
        verbose_name = 'Time Slot'
        verbose_name_plural = 'Time Slots'
        ordering = ['start']
        constraints = [
            models.UniqueConstraint(
                fields=['provider', 'start'],
                name='uq_timeslot_provider_start',
            ),
            models.CheckConstraint(
                condition=(
                    models.Q(is_booked=True, booking__isnull=False)
                    | models.Q(is_booked=False, booking__isnull=True)
                ),
                name='ck_timeslot_booked_has_booking',
            ),
            models.CheckConstraint(
                condition=models.Q(start__lt=models.F('end')),
                name='ck_timeslot_ordered',
            ),
        ]

    def __str__(self):
        state = 'booked' if self.is_booked else 'free'
        return f"{self.provider.name} {self.start:%Y-%m-%d %H:%M}–{self.end:%H:%M} [{state}]"

    @classmethod
    def get(cls, slot_id):
        try:
            return cls.objects.get(id=slot_id)
        except (cls.DoesNotExist, ValueError):
            raise NotFoundError('Time slot not found.')
