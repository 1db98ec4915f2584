"""
Payments app models:
  - Payment      : escrow record, one per Booking
  - GatewayEvent : replay ledger of processed gateway webhook events
  - Withdrawal   : provider payout request against account_balance

Null-safety note on unique fields:
  PostgreSQL UNIQUE constraints treat every NULL as distinct, so multiple rows
  with NULL in a UNIQUE column are allowed. To make the intent explicit and
  avoid Django's system-check warning (models.W003), payment_gateway_id is
  unique through a conditional UniqueConstraint instead of unique=True.
"""
from django.db import models
from django.core.validators import MinValueValidator
from apps.core.models import UUIDModel, TimestampedModel
from apps.core.exceptions import NotFoundError
from apps.accounts.models import Account, BankAccount
from apps.bookings.models import Booking


class PaymentStatus(models.TextChoices):
    PENDING            = 'pending',            'Pending'
    PAID               = 'paid',               'Paid'
    FAILED             = 'failed',             'Failed'
    REFUNDED           = 'refunded',           'Refunded'
    PARTIALLY_REFUNDED = 'partially_refunded', 'Partially Refunded'


# Funds sit in escrow in these states until released to the provider
HELD_STATUSES = (PaymentStatus.PAID, PaymentStatus.PARTIALLY_REFUNDED)


class Payment(UUIDModel, TimestampedModel):
    """
    Escrow record for a booking.
    Created pending with the booking; opened (paid) by the gateway webhook;
    released to the provider's balance by the periodic release batch.

    released_at is the one-way release marker: it is set by a conditional
    UPDATE (released_at IS NULL), so a record is credited at most once.
    """
    booking = models.OneToOneField(Booking, on_delete=models.PROTECT, related_name='payment')
    # nullable because it is only populated after the gateway confirms the charge
    payment_gateway_id = models.CharField(max_length=100, blank=True, null=True)
    amount = models.DecimalField(max_digits=10, decimal_places=2, validators=[MinValueValidator(0)])
    service_fee = models.DecimalField(max_digits=10, decimal_places=2, default=0)
    net_amount = models.DecimalField(max_digits=10, decimal_places=2, default=0)
    currency = models.CharField(max_length=3, default='INR')
    status = models.CharField(
        max_length=20, choices=PaymentStatus.choices,
        default=PaymentStatus.PENDING, db_index=True,
    )

    paid_at = models.DateTimeField(null=True, blank=True)
    escrow_release_date = models.DateTimeField(null=True, blank=True, db_index=True)
    released_at = models.DateTimeField(null=True, blank=True)

    refund_amount = models.DecimalField(max_digits=10, decimal_places=2, default=0)
    refunded_at = models.DateTimeField(null=True, blank=True)

    disputed_at = models.DateTimeField(null=True, blank=True)
    dispute_reason = models.TextField(blank=True)

    early_release_requested_at = models.DateTimeField(null=True, blank=True)
    early_release_reason = models.TextField(blank=True)

    class Meta:
        verbose_name = 'Payment'
        verbose_name_plural = 'Payments'
        ordering = ['-created_at']
        constraints = [
            models.UniqueConstraint(
                fields=['payment_gateway_id'],
                condition=models.Q(payment_gateway_id__isnull=False),
                name='uq_payment_gateway_id',
            ),
            models.CheckConstraint(
                condition=models.Q(refund_amount__lte=models.F('amount')),
                name='ck_payment_refund_within_amount',
            ),
        ]

    def __str__(self):
        return f"Payment {str(self.id)[:8]} [{self.status}] — {self.amount} {self.currency}"

    @property
    def is_released(self):
        return self.released_at is not None

    @property
    def is_disputed(self):
        return self.disputed_at is not None

    @classmethod
    def for_booking(cls, booking_id, for_update=False):
        qs = cls.objects.select_related('booking')
        if for_update:
            qs = qs.select_for_update()
        try:
            return qs.get(booking_id=booking_id)
        except (cls.DoesNotExist, ValueError):
            raise NotFoundError('Payment record not found for this booking.')


class GatewayEvent(UUIDModel):
    """
    One row per processed gateway event. Written in the same transaction as
    the event's effect, so a replayed event id finds its row and is skipped.
    """
    event_id = models.CharField(max_length=100, unique=True)
    kind = models.CharField(max_length=60)
    charge_id = models.CharField(max_length=100, blank=True, db_index=True)
    payload = models.JSONField(null=True, blank=True)
    processed_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        verbose_name = 'Gateway Event'
        verbose_name_plural = 'Gateway Events'
        ordering = ['-processed_at']

    def __str__(self):
        return f"{self.kind} {self.event_id}"


class WithdrawalStatus(models.TextChoices):
    PENDING   = 'pending',   'Pending'
    COMPLETED = 'completed', 'Completed'
    FAILED    = 'failed',    'Failed'


class Withdrawal(UUIDModel, TimestampedModel):
    """
    Payout request. The amount is debited from account_balance when the
    request is created; a failed payout credits it back.
    """
    account = models.ForeignKey(Account, on_delete=models.PROTECT, related_name='withdrawals')
    amount = models.DecimalField(max_digits=12, decimal_places=2, validators=[MinValueValidator(0)])
    bank_account = models.ForeignKey(
        BankAccount, on_delete=models.SET_NULL, null=True, blank=True, related_name='withdrawals',
    )
    status = models.CharField(
        max_length=10, choices=WithdrawalStatus.choices,
        default=WithdrawalStatus.PENDING, db_index=True,
    )
    processed_at = models.DateTimeField(null=True, blank=True)
    failure_reason = models.TextField(blank=True)

    class Meta:
        verbose_name = 'Withdrawal'
        verbose_name_plural = 'Withdrawals'
        ordering = ['-created_at']

    def __str__(self):
        return f"Withdrawal {str(self.id)[:8]} [{self.status}] — {self.amount}"
