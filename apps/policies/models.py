"""
Policies app models:
  - BookingPolicy    : cancellation / rescheduling / no-show rule
  - PolicyEvaluation : audit row for every verdict the engine hands out

A policy with service=NULL is a platform default; an active policy of the
same type on the service overrides it. Policies that have been evaluated
are never edited in place: update_policy retires them and creates a new
version, so each PolicyEvaluation still points at the rule it applied.
"""
from django.db import models
from django.core.validators import MinValueValidator
from apps.core.models import UUIDModel, TimestampedModel
from apps.core.exceptions import NotFoundError
from apps.accounts.models import Account
from apps.bookings.models import Booking
from apps.services.models import Service


class PolicyType(models.TextChoices):
    CANCELLATION = 'cancellation', 'Cancellation'
    RESCHEDULING = 'rescheduling', 'Rescheduling'
    NO_SHOW      = 'no-show',      'No-show'


class PenaltyType(models.TextChoices):
    NONE       = 'none',       'No penalty'
    PERCENTAGE = 'percentage', 'Percentage of price'
    FIXED      = 'fixed',      'Fixed amount'


class BookingPolicy(UUIDModel, TimestampedModel):
    service = models.ForeignKey(
        Service, on_delete=models.CASCADE, null=True, blank=True, related_name='policies',
        help_text='Empty = platform default for every service.',
    )
    name = models.CharField(max_length=150)
    type = models.CharField(max_length=20, choices=PolicyType.choices, db_index=True)
    description = models.TextField(blank=True)
    hours_before_booking = models.PositiveIntegerField(
        default=24, help_text='Free window: acting at least this many hours before start costs nothing.',
    )
    penalty_type = models.CharField(max_length=20, choices=PenaltyType.choices, default=PenaltyType.NONE)
    penalty_value = models.DecimalField(
        max_digits=10, decimal_places=2, default=0, validators=[MinValueValidator(0)],
    )
    allow_exceptions = models.BooleanField(default=False)
    exception_conditions = models.JSONField(default=dict, blank=True)
    is_active = models.BooleanField(default=True, db_index=True)

    created_by = models.ForeignKey(
        Account, on_delete=models.SET_NULL, null=True, blank=True, related_name='+',
    )
    version = models.PositiveIntegerField(default=1)
    previous_version = models.OneToOneField(
        'self', on_delete=models.SET_NULL, null=True, blank=True, related_name='next_version',
    )

    class Meta:
        verbose_name = 'Booking Policy'
        verbose_name_plural = 'Booking Policies'
        ordering = ['type', '-hours_before_booking', '-created_at']

    def __str__(self):
        scope = self.service.title if self.service_id else 'Platform default'
        return f"{self.name} ({self.type}, {scope}, v{self.version})"

    @classmethod
    def get(cls, policy_id):
        try:
            return cls.objects.select_related('service').get(id=policy_id)
        except (cls.DoesNotExist, ValueError):
            raise NotFoundError('Policy not found.')


class PolicyEvaluation(UUIDModel):
    """Immutable record of one verdict. policy is NULL when no policy applied."""
    policy = models.ForeignKey(
        BookingPolicy, on_delete=models.PROTECT, null=True, blank=True, related_name='evaluations',
    )
    booking = models.ForeignKey(Booking, on_delete=models.CASCADE, related_name='policy_evaluations')
    kind = models.CharField(max_length=20, choices=PolicyType.choices)
    actor_role = models.CharField(max_length=10, blank=True)
    allowed = models.BooleanField()
    penalty_amount = models.DecimalField(max_digits=10, decimal_places=2, default=0)
    reason = models.TextField(blank=True)
    evaluated_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        verbose_name = 'Policy Evaluation'
        verbose_name_plural = 'Policy Evaluations'
        ordering = ['-evaluated_at']

    def __str__(self):
        verdict = 'allowed' if self.allowed else 'denied'
        return f"{self.kind} on {str(self.booking_id)[:8]}: {verdict} ({self.penalty_amount})"
