"""
Escrow ledger — money held between the client's charge and the provider's payout.
Pure business logic, no HTTP/request awareness.

Public API:
  calculate_fees(amount)
  create_payment_record(booking)
  open_escrow(booking_id, amount=None, now=None, payment_gateway_id=None)
  get_payments_ready_for_release(now=None)
  process_releases(now=None)
  request_early_release(booking_id, justification, actor_id, now=None)
  approve_early_release(booking_id, now=None)
  dispute_payment(booking_id, reason, actor_id, now=None)
  resolve_dispute(booking_id, outcome, now=None)
  apply_refund(booking_id, amount=None, partial=False, now=None)
  record_gateway_refund(booking_id, refunded_total, now=None)
  request_withdrawal(user_id, amount, bank_account_id=None)
  complete_withdrawal(withdrawal_id)
  fail_withdrawal(withdrawal_id, reason)
  get_earnings_overview(provider_id)
  get_escrow_stats(now=None)

Money invariants:
  - a record is credited to the provider at most once (CAS on released_at IS NULL)
  - released funds are never refunded from escrow
  - account_balance only moves through conditional F() updates
"""
import logging
from datetime import timedelta

from django.conf import settings
from django.db import transaction
from django.db.models import F, Sum, Count
from django.utils import timezone

from apps.accounts.models import Account, BankAccount
from apps.bookings.models import BookingStatus
from apps.core.exceptions import (
    InsufficientBalanceError,
    InvalidRequestError,
    InvalidStateError,
    NotFoundError,
    PermissionDeniedError,
)
from apps.core.money import ZERO, to_money, percentage_of
from apps.notifications.dispatch import notify_on_commit
from apps.notifications.models import NotificationType
from apps.payments import gateway
from apps.payments.models import (
    Payment, PaymentStatus, HELD_STATUSES, Withdrawal, WithdrawalStatus,
)

logger = logging.getLogger(__name__)

DISPUTE_OUTCOMES = ('release', 'refund')


# ── Fees ──────────────────────────────────────────────────────────────────────

def calculate_fees(amount):
    """(service_fee, net_amount) for a charged amount, at PLATFORM_FEE_PERCENT."""
    amount = to_money(amount)
    fee = percentage_of(amount, settings.PLATFORM_FEE_PERCENT)
    return fee, amount - fee


def create_payment_record(booking) -> Payment:
    """Pending escrow record for a new booking. Runs inside create_booking's transaction."""
    fee, net = calculate_fees(booking.total_price)
    return Payment.objects.create(
        booking=booking,
        amount=booking.total_price,
        service_fee=fee,
        net_amount=net,
        currency=settings.PAYMENT_CURRENCY,
        status=PaymentStatus.PENDING,
    )


def _sum(qs, field):
    return qs.aggregate(total=Sum(field))['total'] or ZERO


# ── Opening escrow ────────────────────────────────────────────────────────────

@transaction.atomic
def open_escrow(booking_id, amount=None, now=None, payment_gateway_id=None) -> Payment:
    """
    The client's charge was confirmed: hold the funds until
    now + ESCROW_HOLDING_PERIOD_DAYS.

    Idempotent: a record that is already paid (or refunded since) is
    returned unchanged, so a duplicate confirmation never moves the timer.
    """
    now = now or timezone.now()
    payment = Payment.for_booking(booking_id, for_update=True)

    if payment.status not in (PaymentStatus.PENDING, PaymentStatus.FAILED):
        logger.info('Escrow for booking %s already open (%s) — skipping', booking_id, payment.status)
        return payment
    if payment.booking.status in (BookingStatus.DECLINED, BookingStatus.CANCELLED):
        raise InvalidStateError(
            f'Booking is {payment.booking.status}; a payment can not be held for it.'
        )

    charged = payment.amount if amount is None else to_money(amount)
    if charged <= ZERO:
        raise InvalidRequestError('Charged amount must be positive.')
    if charged != payment.amount:
        logger.warning('Booking %s charged %s, expected %s — holding the charged amount',
                       booking_id, charged, payment.amount)

    fee, net = calculate_fees(charged)
    Payment.objects.filter(
        id=payment.id, status__in=[PaymentStatus.PENDING, PaymentStatus.FAILED],
    ).update(
        status=PaymentStatus.PAID,
        amount=charged,
        service_fee=fee,
        net_amount=net,
        paid_at=now,
        escrow_release_date=now + timedelta(days=settings.ESCROW_HOLDING_PERIOD_DAYS),
        payment_gateway_id=payment_gateway_id or payment.payment_gateway_id,
        updated_at=now,
    )
    payment.refresh_from_db()
    logger.info('Escrow opened for booking %s: %s held until %s',
                booking_id, payment.amount, payment.escrow_release_date)
    return payment


# ── Release ───────────────────────────────────────────────────────────────────

def get_payments_ready_for_release(now=None) -> list:
    now = now or timezone.now()
    return list(
        Payment.objects
        .select_related('booking')
        .filter(
            status__in=HELD_STATUSES,
            released_at__isnull=True,
            disputed_at__isnull=True,
            escrow_release_date__lte=now,
        )
        .order_by('escrow_release_date')
    )


@transaction.atomic
def _release_one(payment: Payment, now) -> bool:
    """Release one record in its own transaction. False if someone else already did."""
    released = Payment.objects.filter(
        id=payment.id,
        status__in=HELD_STATUSES,
        released_at__isnull=True,
        disputed_at__isnull=True,
    ).update(released_at=now, updated_at=now)
    if not released:
        return False

    # Re-read under the claim: a refund may have changed net_amount since the scan
    net = Payment.objects.filter(id=payment.id).values_list('net_amount', flat=True).get()
    credited = Account.objects.filter(id=payment.booking.provider_id).update(
        account_balance=F('account_balance') + net, updated_at=now,
    )
    if not credited:
        raise NotFoundError(f'Provider account {payment.booking.provider_id} not found.')

    notify_on_commit(
        payment.booking.provider_id,
        NotificationType.ESCROW_RELEASED,
        'Payment released',
        f'{net} {payment.currency} from booking {payment.booking.id_short} '
        f'is now available in your balance.',
    )
    payment.released_at = now
    payment.net_amount = net
    return True


def process_releases(now=None) -> dict:
    """
    Periodic batch: credit every due, undisputed escrow record to its provider.
    Safe to re-run; a record released by an earlier (or concurrent) run is skipped.
    One record's failure is logged and reported, never raised.
    """
    now = now or timezone.now()
    report = {'released': 0, 'skipped': 0, 'failed': [], 'total_amount': ZERO}

    for payment in get_payments_ready_for_release(now):
        try:
            if _release_one(payment, now):
                report['released'] += 1
                report['total_amount'] += payment.net_amount
            else:
                report['skipped'] += 1
        except Exception as exc:
            logger.exception('Escrow release failed for payment %s: %s', payment.id, exc)
            report['failed'].append({'payment_id': str(payment.id), 'error': str(exc)})

    logger.info(
        'Escrow release batch: %d released (%s), %d skipped, %d failed',
        report['released'], report['total_amount'], report['skipped'], len(report['failed']),
    )
    return report


# ── Early release & disputes ──────────────────────────────────────────────────

def _require_unreleased(payment: Payment, action: str):
    if payment.status not in HELD_STATUSES:
        raise InvalidStateError(f'Cannot {action}: payment is {payment.status}.')
    if payment.is_released:
        raise InvalidStateError(f'Cannot {action}: funds were already released.')
    if payment.is_disputed:
        raise InvalidStateError(f'Cannot {action}: payment is under dispute.')


@transaction.atomic
def request_early_release(booking_id, justification, actor_id, now=None) -> Payment:
    """Provider asks the platform to release a completed booking's funds before the timer."""
    now = now or timezone.now()
    justification = (justification or '').strip()
    if not justification:
        raise InvalidRequestError('A justification is required for early release.')

    payment = Payment.for_booking(booking_id, for_update=True)
    booking = payment.booking
    if str(actor_id) != str(booking.provider_id):
        raise PermissionDeniedError('Only the provider can request early release.')
    if booking.status != BookingStatus.COMPLETED:
        raise InvalidStateError('Early release is only possible for completed bookings.')
    _require_unreleased(payment, 'request early release')

    Payment.objects.filter(id=payment.id).update(
        early_release_requested_at=now, early_release_reason=justification, updated_at=now,
    )
    payment.early_release_requested_at = now
    payment.early_release_reason = justification

    reviewer = settings.EARLY_RELEASE_REVIEWER_ID
    if reviewer:
        notify_on_commit(
            reviewer,
            NotificationType.EARLY_RELEASE_REQUESTED,
            'Early release requested',
            f'Provider requested early release for booking {booking.id_short}: {justification}',
        )
    logger.info('Early release requested for booking %s', booking.id)
    return payment


@transaction.atomic
def approve_early_release(booking_id, now=None) -> Payment:
    """Make a requested record due now; the next release batch pays it out."""
    now = now or timezone.now()
    payment = Payment.for_booking(booking_id, for_update=True)
    _require_unreleased(payment, 'approve early release')
    if payment.early_release_requested_at is None:
        raise InvalidStateError('No early release was requested for this booking.')

    Payment.objects.filter(id=payment.id).update(escrow_release_date=now, updated_at=now)
    payment.escrow_release_date = now
    logger.info('Early release approved for booking %s', booking_id)
    return payment


@transaction.atomic
def dispute_payment(booking_id, reason, actor_id, now=None) -> Payment:
    """Client freezes a paid, unreleased record. Release skips it until resolved."""
    now = now or timezone.now()
    reason = (reason or '').strip()
    if not reason:
        raise InvalidRequestError('A reason is required to open a dispute.')

    payment = Payment.for_booking(booking_id, for_update=True)
    booking = payment.booking
    if str(actor_id) != str(booking.client_id):
        raise PermissionDeniedError('Only the client can dispute a payment.')
    if payment.status != PaymentStatus.PAID:
        raise InvalidStateError(f'Only paid payments can be disputed (payment is {payment.status}).')
    if payment.is_released:
        raise InvalidStateError('Funds were already released to the provider.')

    frozen = Payment.objects.filter(
        id=payment.id, disputed_at__isnull=True, released_at__isnull=True,
    ).update(disputed_at=now, dispute_reason=reason, updated_at=now)
    if not frozen:
        raise InvalidStateError('Payment is already under dispute.')
    payment.disputed_at = now
    payment.dispute_reason = reason

    for user_id in (booking.client_id, booking.provider_id):
        notify_on_commit(
            user_id,
            NotificationType.DISPUTE_OPENED,
            'Payment disputed',
            f'A dispute was opened for booking {booking.id_short}: {reason}',
        )
    logger.info('Dispute opened for booking %s', booking.id)
    return payment


@transaction.atomic
def resolve_dispute(booking_id, outcome, now=None) -> Payment:
    """'release' unfreezes the record; 'refund' unfreezes and refunds the client in full."""
    now = now or timezone.now()
    if outcome not in DISPUTE_OUTCOMES:
        raise InvalidRequestError(f"outcome must be one of {', '.join(DISPUTE_OUTCOMES)}.")

    payment = Payment.for_booking(booking_id, for_update=True)
    if not payment.is_disputed:
        raise InvalidStateError('Payment is not under dispute.')

    Payment.objects.filter(id=payment.id).update(disputed_at=None, updated_at=now)
    payment.disputed_at = None
    if outcome == 'refund':
        payment = apply_refund(booking_id, now=now)

    booking = payment.booking
    for user_id in (booking.client_id, booking.provider_id):
        notify_on_commit(
            user_id,
            NotificationType.DISPUTE_RESOLVED,
            'Dispute resolved',
            f'The dispute for booking {booking.id_short} was resolved: {outcome}.',
        )
    logger.info('Dispute for booking %s resolved: %s', booking_id, outcome)
    return payment


# ── Refunds ───────────────────────────────────────────────────────────────────

def _set_refund_total(payment: Payment, refunded_total, now) -> Payment:
    """Write an absolute refunded total and the fee split of what is retained."""
    retained = payment.amount - refunded_total
    fee, net = calculate_fees(retained)
    status = PaymentStatus.REFUNDED if retained == ZERO else PaymentStatus.PARTIALLY_REFUNDED
    Payment.objects.filter(id=payment.id).update(
        status=status,
        refund_amount=refunded_total,
        refunded_at=now,
        service_fee=fee,
        net_amount=net,
        updated_at=now,
    )
    payment.status = status
    payment.refund_amount = refunded_total
    payment.refunded_at = now
    payment.service_fee = fee
    payment.net_amount = net
    return payment


@transaction.atomic
def apply_refund(booking_id, amount=None, partial=False, now=None) -> Payment:
    """
    Refund the client from escrow. amount=None refunds everything not yet
    refunded. A non-partial refund must cover the whole remainder.
    The gateway refund is issued after commit.
    """
    now = now or timezone.now()
    payment = Payment.for_booking(booking_id, for_update=True)
    if payment.status not in HELD_STATUSES:
        raise InvalidStateError(f'Only held payments can be refunded (payment is {payment.status}).')
    if payment.is_released:
        raise InvalidStateError('Funds were already released to the provider and can not be refunded.')

    refundable = payment.amount - payment.refund_amount
    amount = refundable if amount is None else to_money(amount)
    if amount <= ZERO:
        raise InvalidRequestError('Refund amount must be positive.')
    if amount > refundable:
        raise InvalidRequestError(f'Refund amount exceeds the refundable {refundable}.')
    if not partial and amount != refundable:
        raise InvalidRequestError('A full refund must cover the whole refundable amount.')

    _set_refund_total(payment, payment.refund_amount + amount, now)

    gateway_id = payment.payment_gateway_id
    transaction.on_commit(lambda: gateway.issue_refund(gateway_id, amount))
    notify_on_commit(
        payment.booking.client_id,
        NotificationType.PAYMENT_REFUNDED,
        'Refund issued',
        f'{amount} {payment.currency} is being refunded for booking {payment.booking.id_short}.',
    )
    logger.info('Refund of %s applied to booking %s (%s)', amount, booking_id, payment.status)
    return payment


@transaction.atomic
def record_gateway_refund(booking_id, refunded_total, now=None) -> Payment:
    """
    The gateway reports a refund made on its side. refunded_total is the
    absolute figure, so replays and out-of-order deliveries are no-ops.
    """
    now = now or timezone.now()
    refunded_total = to_money(refunded_total)
    payment = Payment.for_booking(booking_id, for_update=True)
    if payment.status not in HELD_STATUSES + (PaymentStatus.REFUNDED,):
        raise InvalidStateError(f'Payment is {payment.status}; nothing to refund.')
    if refunded_total > payment.amount:
        raise InvalidRequestError(f'Refunded total {refunded_total} exceeds the charged {payment.amount}.')
    if refunded_total <= payment.refund_amount:
        logger.info('Gateway refund total %s for booking %s already recorded', refunded_total, booking_id)
        return payment
    if payment.is_released:
        raise InvalidStateError('Funds were already released; gateway refund needs manual reconciliation.')

    _set_refund_total(payment, refunded_total, now)
    logger.info('Gateway refund recorded for booking %s: total %s (%s)',
                booking_id, refunded_total, payment.status)
    return payment


# ── Withdrawals ───────────────────────────────────────────────────────────────

def request_withdrawal(user_id, amount, bank_account_id=None) -> Withdrawal:
    """
    Debit account_balance and create a pending payout in one transaction.
    The debit is a conditional UPDATE (balance >= amount): two concurrent
    requests can never take the balance below zero.
    """
    amount = to_money(amount)
    if amount < settings.MIN_WITHDRAWAL_AMOUNT:
        raise InvalidRequestError(f'Minimum withdrawal is {settings.MIN_WITHDRAWAL_AMOUNT}.')

    account = Account.get(user_id)
    # Overdrawing outranks the upper limit
    if amount > account.account_balance:
        raise InsufficientBalanceError('Insufficient balance for this withdrawal.')
    if amount > settings.MAX_WITHDRAWAL_AMOUNT:
        raise InvalidRequestError(f'Maximum withdrawal is {settings.MAX_WITHDRAWAL_AMOUNT}.')
    if bank_account_id:
        bank_account = BankAccount.objects.filter(id=bank_account_id, account=account).first()
        if bank_account is None:
            raise NotFoundError('Bank account not found for this user.')
    else:
        bank_account = account.bank_accounts.filter(is_primary=True).first()

    now = timezone.now()
    with transaction.atomic():
        debited = Account.objects.filter(id=account.id, account_balance__gte=amount).update(
            account_balance=F('account_balance') - amount, updated_at=now,
        )
        if not debited:
            raise InsufficientBalanceError('Insufficient balance for this withdrawal.')
        withdrawal = Withdrawal.objects.create(
            account=account, amount=amount, bank_account=bank_account,
        )
        notify_on_commit(
            account.id,
            NotificationType.WITHDRAWAL,
            'Withdrawal requested',
            f'Your withdrawal of {amount} is being processed.',
        )

    logger.info('Withdrawal %s of %s requested by %s', withdrawal.id, amount, account.id)
    return withdrawal


def _get_withdrawal(withdrawal_id) -> Withdrawal:
    try:
        return Withdrawal.objects.get(id=withdrawal_id)
    except (Withdrawal.DoesNotExist, ValueError):
        raise NotFoundError('Withdrawal not found.')


def complete_withdrawal(withdrawal_id) -> Withdrawal:
    """Payout collaborator confirmed the transfer."""
    withdrawal = _get_withdrawal(withdrawal_id)
    now = timezone.now()
    done = Withdrawal.objects.filter(id=withdrawal.id, status=WithdrawalStatus.PENDING).update(
        status=WithdrawalStatus.COMPLETED, processed_at=now, updated_at=now,
    )
    if not done:
        raise InvalidStateError(f'Withdrawal is {withdrawal.status}, not pending.')
    withdrawal.refresh_from_db()
    logger.info('Withdrawal %s completed', withdrawal.id)
    return withdrawal


@transaction.atomic
def fail_withdrawal(withdrawal_id, reason) -> Withdrawal:
    """Payout collaborator rejected the transfer; the amount goes back to the balance."""
    withdrawal = _get_withdrawal(withdrawal_id)
    now = timezone.now()
    failed = Withdrawal.objects.filter(id=withdrawal.id, status=WithdrawalStatus.PENDING).update(
        status=WithdrawalStatus.FAILED, processed_at=now, failure_reason=reason or '', updated_at=now,
    )
    if not failed:
        raise InvalidStateError(f'Withdrawal is {withdrawal.status}, not pending.')
    Account.objects.filter(id=withdrawal.account_id).update(
        account_balance=F('account_balance') + withdrawal.amount, updated_at=now,
    )
    notify_on_commit(
        withdrawal.account_id,
        NotificationType.WITHDRAWAL,
        'Withdrawal failed',
        f'Your withdrawal of {withdrawal.amount} failed and was returned to your balance. {reason or ""}'.strip(),
    )
    withdrawal.refresh_from_db()
    logger.warning('Withdrawal %s failed (%s); %s credited back', withdrawal.id, reason, withdrawal.amount)
    return withdrawal


# ── Reporting ─────────────────────────────────────────────────────────────────

def get_earnings_overview(provider_id) -> dict:
    account = Account.get(provider_id)
    payments = Payment.objects.filter(booking__provider=account)
    withdrawals = Withdrawal.objects.filter(account=account)
    return {
        'total_earnings': _sum(payments.filter(released_at__isnull=False), 'net_amount'),
        'available_balance': account.account_balance,
        'pending_escrow': _sum(
            payments.filter(status__in=HELD_STATUSES, released_at__isnull=True), 'net_amount',
        ),
        'total_withdrawn': _sum(withdrawals.filter(status=WithdrawalStatus.COMPLETED), 'amount'),
        'pending_withdrawals': _sum(withdrawals.filter(status=WithdrawalStatus.PENDING), 'amount'),
    }


def get_escrow_stats(now=None) -> dict:
    now = now or timezone.now()
    held = Payment.objects.filter(status__in=HELD_STATUSES, released_at__isnull=True)
    ready = held.filter(disputed_at__isnull=True, escrow_release_date__lte=now)
    released = Payment.objects.filter(released_at__isnull=False)
    disputed = held.filter(disputed_at__isnull=False)
    return {
        'in_escrow': {'count': held.count(), 'amount': _sum(held, 'amount')},
        'ready_for_release': {'count': ready.count(), 'amount': _sum(ready, 'net_amount')},
        'released': {'count': released.count(), 'amount': _sum(released, 'net_amount')},
        'disputed': {'count': disputed.count(), 'amount': _sum(disputed, 'amount')},
        'platform_fees': _sum(
            Payment.objects.filter(status__in=HELD_STATUSES), 'service_fee',
        ),
        'by_status': dict(
            Payment.objects.order_by().values('status').annotate(n=Count('id')).values_list('status', 'n')
        ),
    }
