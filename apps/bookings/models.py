"""
Bookings app models:
  - Booking          : Core booking record with state machine
  - BookingStatusLog : Full audit trail of state transitions
"""
from django.db import models
from django.utils import timezone
from django.core.validators import MinValueValidator
from apps.core.models import BaseModel, UUIDModel
from apps.core.exceptions import NotFoundError, InvalidTransitionError
from apps.accounts.models import Account
from apps.services.models import Service


# ── Booking State Machine ─────────────────────────────────────────────────────

class BookingStatus(models.TextChoices):
    PENDING   = 'pending',   'Pending'
    ACCEPTED  = 'accepted',  'Accepted'
    DECLINED  = 'declined',  'Declined'
    COMPLETED = 'completed', 'Completed'
    CANCELLED = 'cancelled', 'Cancelled'


class CancelledBy(models.TextChoices):
    CLIENT   = 'client',   'Client'
    PROVIDER = 'provider', 'Provider'
    SYSTEM   = 'system',   'System'


TERMINAL_STATUSES = frozenset({
    BookingStatus.DECLINED, BookingStatus.COMPLETED, BookingStatus.CANCELLED,
})

# The only legal moves. Anything else (including leaving a terminal state)
# raises InvalidTransitionError.
ALLOWED_TRANSITIONS = {
    BookingStatus.PENDING:  {BookingStatus.ACCEPTED, BookingStatus.DECLINED, BookingStatus.CANCELLED},
    BookingStatus.ACCEPTED: {BookingStatus.COMPLETED, BookingStatus.CANCELLED},
}


class Booking(BaseModel):
    """
    Core booking record. Created by bookings.engine.create_booking.
    Status transitions controlled by explicit methods — not direct field writes.
    """
    service = models.ForeignKey(Service, on_delete=models.PROTECT, related_name='bookings')
    client = models.ForeignKey(Account, on_delete=models.PROTECT, related_name='client_bookings')
    provider = models.ForeignKey(Account, on_delete=models.PROTECT, related_name='provider_bookings')
    # Historical pointer; the live claim is TimeSlot.booking (held_slot)
    time_slot = models.ForeignKey(
        'availability.TimeSlot', on_delete=models.SET_NULL, null=True, blank=True,
        related_name='booking_history',
    )

    status = models.CharField(
        max_length=20, choices=BookingStatus.choices,
        default=BookingStatus.PENDING, db_index=True,
    )
    scheduled_start = models.DateTimeField(db_index=True)
    scheduled_end = models.DateTimeField()
    total_price = models.DecimalField(
        max_digits=10, decimal_places=2,
        validators=[MinValueValidator(0)],
        help_text='service.price at time of booking',
    )
    notes = models.TextField(blank=True)

    penalty_amount = models.DecimalField(max_digits=10, decimal_places=2, default=0)
    cancellation_reason = models.TextField(blank=True)
    cancelled_by = models.CharField(max_length=10, choices=CancelledBy.choices, blank=True)

    accepted_at = models.DateTimeField(null=True, blank=True)
    declined_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)
    reminder_sent_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        verbose_name = 'Booking'
        verbose_name_plural = 'Bookings'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['client', '-created_at'], name='idx_booking_client_recent'),
            models.Index(fields=['provider', '-created_at'], name='idx_booking_provider_recent'),
        ]

    def __str__(self):
        return (
            f"#{self.id_short} | {self.client.name} | "
            f"{self.service.title} | {self.scheduled_start:%Y-%m-%d %H:%M}"
        )

    @property
    def id_short(self):
        """Returns the first 8 chars of UUID in uppercase."""
        return str(self.id)[:8].upper()

    @property
    def is_terminal(self):
        return self.status in TERMINAL_STATUSES

    @classmethod
    def get(cls, booking_id, for_update=False):
        qs = cls.objects.select_related('service', 'client', 'provider')
        if for_update:
            qs = qs.select_for_update()
        try:
            return qs.get(id=booking_id)
        except (cls.DoesNotExist, ValueError):
            raise NotFoundError('Booking not found.')

    def role_of(self, account_id):
        """'client', 'provider' or None for the given account id."""
        account_id = str(account_id)
        if account_id == str(self.client_id):
            return CancelledBy.CLIENT
        if account_id == str(self.provider_id):
            return CancelledBy.PROVIDER
        return None

    # ── State transition helpers ──────────────────────────────────────────────

    def accept(self, changed_by):
        self._transition(BookingStatus.ACCEPTED, changed_by, accepted_at=timezone.now())

    def decline(self, changed_by, reason=''):
        self._transition(BookingStatus.DECLINED, changed_by, reason, declined_at=timezone.now())

    def complete(self, changed_by):
        self._transition(BookingStatus.COMPLETED, changed_by, completed_at=timezone.now())

    def cancel(self, changed_by, reason='', cancelled_by=CancelledBy.SYSTEM, penalty_amount=0):
        self._transition(
            BookingStatus.CANCELLED, changed_by, reason,
            cancelled_at=timezone.now(),
            cancelled_by=cancelled_by,
            cancellation_reason=reason,
            penalty_amount=penalty_amount,
        )

    def _transition(self, new_status, changed_by, reason='', **fields):
        """
        Compare-and-swap on status. Of two concurrent callers that both read
        the same status, only one UPDATE matches; the other gets
        InvalidTransitionError.
        """
        old_status = self.status
        if new_status not in ALLOWED_TRANSITIONS.get(old_status, ()):
            raise InvalidTransitionError(
                f'Booking {self.id_short} cannot move from {old_status} to {new_status}.'
            )

        fields['updated_at'] = timezone.now()
        updated = Booking.objects.filter(id=self.id, status=old_status).update(
            status=new_status, **fields,
        )
        if not updated:
            current = Booking.all_objects.filter(id=self.id).values_list('status', flat=True).first()
            raise InvalidTransitionError(
                f'Booking {self.id_short} is {current}; cannot move to {new_status}.'
            )

        for name, value in fields.items():
            setattr(self, name, value)
        self.status = new_status
        BookingStatusLog.objects.create(
            booking=self,
            from_status=old_status,
            to_status=new_status,
            changed_by=str(changed_by),
            reason=reason,
        )


# ── Booking Audit Log ─────────────────────────────────────────────────────────

class BookingStatusLog(UUIDModel):
    """Immutable audit trail of every status transition on a booking."""
    booking = models.ForeignKey(Booking, on_delete=models.CASCADE, related_name='status_logs')
    from_status = models.CharField(max_length=20, choices=BookingStatus.choices, blank=True)
    to_status = models.CharField(max_length=20, choices=BookingStatus.choices)
    changed_by = models.CharField(max_length=80, help_text='account id / system / webhook')
    reason = models.TextField(blank=True)
    changed_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        verbose_name = 'Booking Status Log'
        verbose_name_plural = 'Booking Status Logs'
        ordering = ['changed_at']

    def __str__(self):
        return f"Booking {str(self.booking_id)[:8]}: {self.from_status or '∅'} → {self.to_status}"
