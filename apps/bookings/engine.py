"""
Booking engine — the booking lifecycle. Pure business logic, no HTTP/request awareness.

Public API:
  create_booking(client_id, time_slot_id, service_id, notes='', scheduled_start=None, now=None)
  accept_booking(booking_id, actor_id)
  decline_booking(booking_id, actor_id, reason='')
  complete_booking(booking_id, actor_id, now=None)
  cancel_booking(booking_id, actor_id, reason='', now=None)
  finalize_cancellation(booking, changed_by, cancelled_by, reason='', penalty_amount=0)
  update_booking_status(booking_id, status, actor_id, reason='', now=None)
  list_bookings(actor_id, role, status=None, limit=20, cursor=None)
  get_booking(booking_id, actor_id)
  cancel_stale_pending_bookings(now=None)
  send_booking_reminders(now=None)

State machine:
  pending  -> accepted | declined | cancelled
  accepted -> completed | cancelled
  declined, completed, cancelled are terminal.

Side effects that leave the database (notifications, gateway refunds,
waitlist offers) are queued with transaction.on_commit and can not roll
back a committed transition.
"""
import logging
from datetime import datetime, timedelta, time as time_type

from django.conf import settings
from django.db import transaction
from django.db.models import F, Q
from django.utils import timezone
from django.utils.dateparse import parse_datetime
from django.utils.encoding import force_bytes, force_str
from django.utils.http import urlsafe_base64_decode, urlsafe_base64_encode

from apps.accounts.models import Account
from apps.availability.engine import reserve_slot, release_slot
from apps.availability.models import TimeSlot
from apps.bookings.models import (
    Booking, BookingStatus, BookingStatusLog, CancelledBy,
)
from apps.core.exceptions import (
    InvalidRequestError,
    InvalidStateError,
    InvalidTransitionError,
    PermissionDeniedError,
    PolicyViolationError,
    SlotConflictError,
)
from apps.core.money import ZERO, to_money
from apps.notifications.dispatch import notify_on_commit
from apps.notifications.models import NotificationType
from apps.payments.escrow import apply_refund, create_payment_record
from apps.payments.models import Payment, HELD_STATUSES
from apps.policies.engine import evaluate_cancellation_policy
from apps.services.models import Service

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = 'system'
MAX_PAGE_SIZE = 100


# ── Helpers ───────────────────────────────────────────────────────────────────

def _require_provider(booking: Booking, actor_id):
    if str(actor_id) != str(booking.provider_id):
        raise PermissionDeniedError('Only the provider can do this.')


def _fmt_when(booking: Booking) -> str:
    return timezone.localtime(booking.scheduled_start).strftime('%d %b %Y, %H:%M')


def _release_held_slot(booking: Booking):
    """Release the slot this booking holds, if any. Returns the slot id."""
    slot_id = TimeSlot.objects.filter(booking=booking).values_list('id', flat=True).first()
    if slot_id is not None:
        release_slot(slot_id)
    return slot_id


def _require_refundable(booking: Booking, penalty_amount) -> None:
    """
    Released funds already sit in the provider's balance. A cancellation
    that would owe the client money after release is refused outright.
    """
    payment = Payment.objects.filter(booking=booking).first()
    if payment is None or payment.status not in HELD_STATUSES or not payment.is_released:
        return
    owed = payment.amount - to_money(penalty_amount) - payment.refund_amount
    if owed > ZERO:
        raise InvalidStateError(
            f'Payment for booking {booking.id_short} was already released to the provider; '
            f'{owed} can not be refunded from escrow.'
        )


def _refund_held(booking: Booking, penalty_amount) -> None:
    """Refund amount − penalty of a held, unreleased escrow record."""
    payment = Payment.objects.filter(booking=booking).first()
    if payment is None or payment.status not in HELD_STATUSES or payment.is_released:
        return
    target_total = max(payment.amount - to_money(penalty_amount), payment.refund_amount)
    refund = target_total - payment.refund_amount
    if refund > ZERO:
        refundable = payment.amount - payment.refund_amount
        apply_refund(booking.id, refund, partial=refund != refundable)


def _offer_freed_slot(slot_id):
    """After commit, offer a freed slot to the waitlist."""
    def offer():
        from apps.waitlist.engine import offer_slot
        try:
            offer_slot(slot_id)
        except Exception as exc:
            logger.exception('Waitlist offer failed for slot %s: %s', slot_id, exc)
    transaction.on_commit(offer)


def booking_summary(booking: Booking) -> dict:
    return {
        'id': booking.id,
        'status': booking.status,
        'service_id': booking.service_id,
        'service': booking.service.title,
        'client_id': booking.client_id,
        'provider_id': booking.provider_id,
        'time_slot_id': booking.time_slot_id,
        'scheduled_start': booking.scheduled_start,
        'scheduled_end': booking.scheduled_end,
        'total_price': booking.total_price,
        'penalty_amount': booking.penalty_amount,
        'notes': booking.notes,
        'cancelled_by': booking.cancelled_by or None,
        'cancellation_reason': booking.cancellation_reason,
        'created_at': booking.created_at,
    }


# ── Core: Booking Creation ────────────────────────────────────────────────────

def create_booking(client_id, time_slot_id, service_id, notes: str = '',
                   scheduled_start=None, now=None) -> Booking:
    """
    Create a pending booking and claim its slot in one transaction.

    Everything is validated before the first write. The slot claim is the
    compare-and-swap in reserve_slot; when it loses, the booking row and
    the payment record are rolled back with it.

    time_slot_id may be None for a request that only names a start time;
    a slot is attached later with availability.book_time_slot.

    Raises:
      SlotConflictError   — slot already held
      InvalidRequestError — inactive service, own service, foreign or past slot
    """
    now = now or timezone.now()
    client = Account.get(client_id)
    service = Service.get(service_id)
    if not service.is_active:
        raise InvalidRequestError('This service is not available for booking.')
    if service.provider_id == client.id:
        raise InvalidRequestError('You can not book your own service.')

    slot = None
    if time_slot_id:
        slot = TimeSlot.get(time_slot_id)
        if slot.provider_id != service.provider_id:
            raise InvalidRequestError('This slot does not belong to the service\'s provider.')
        if slot.service_id and slot.service_id != service.id:
            raise InvalidRequestError('This slot is reserved for a different service.')
        if slot.start <= now:
            raise InvalidRequestError('This slot has already started.')
        if slot.is_booked:
            raise SlotConflictError(
                'This slot was just booked by another client. Please choose a different time.'
            )
        start, end = slot.start, slot.end
    else:
        if scheduled_start is None:
            raise InvalidRequestError('Either time_slot_id or scheduled_start is required.')
        if scheduled_start <= now:
            raise InvalidRequestError('Bookings can only be made for a future time.')
        start = scheduled_start
        end = start + timedelta(minutes=service.duration_minutes)

    with transaction.atomic():
        booking = Booking.objects.create(
            service=service,
            client=client,
            provider_id=service.provider_id,
            time_slot=slot,
            status=BookingStatus.PENDING,
            scheduled_start=start,
            scheduled_end=end,
            total_price=service.price,   # price snapshot
            notes=notes or '',
        )
        if slot is not None:
            reserve_slot(slot.id, booking)
        create_payment_record(booking)
        Service.objects.filter(id=service.id).update(booking_count=F('booking_count') + 1)
        BookingStatusLog.objects.create(
            booking=booking,
            from_status='',
            to_status=BookingStatus.PENDING,
            changed_by=str(client.id),
            reason='Booking requested',
        )
        notify_on_commit(
            service.provider_id,
            NotificationType.BOOKING_REQUEST,
            'New booking request',
            f'{client.name} requested {service.title} on {_fmt_when(booking)}.',
        )

    logger.info('Booking %s created: client=%s service=%s slot=%s',
                booking.id, client.id, service.id, slot.id if slot else None)
    return booking


# ── Provider decisions ────────────────────────────────────────────────────────

def accept_booking(booking_id, actor_id) -> Booking:
    booking = Booking.get(booking_id)
    _require_provider(booking, actor_id)
    with transaction.atomic():
        booking.accept(changed_by=actor_id)
        notify_on_commit(
            booking.client_id,
            NotificationType.BOOKING_ACCEPTED,
            'Booking accepted',
            f'Your booking for {booking.service.title} on {_fmt_when(booking)} was accepted.',
        )
    logger.info('Booking %s accepted', booking.id)
    return booking


def decline_booking(booking_id, actor_id, reason: str = '') -> Booking:
    """Provider turns a pending request down: slot freed, held payment refunded in full."""
    booking = Booking.get(booking_id)
    _require_provider(booking, actor_id)
    _require_refundable(booking, ZERO)
    with transaction.atomic():
        booking.decline(changed_by=actor_id, reason=reason)
        slot_id = _release_held_slot(booking)
        _refund_held(booking, ZERO)
        notify_on_commit(
            booking.client_id,
            NotificationType.BOOKING_DECLINED,
            'Booking declined',
            f'Your booking for {booking.service.title} on {_fmt_when(booking)} was declined.'
            + (f' Reason: {reason}' if reason else ''),
        )
        if slot_id:
            _offer_freed_slot(slot_id)
    logger.info('Booking %s declined', booking.id)
    return booking


def complete_booking(booking_id, actor_id, now=None) -> Booking:
    now = now or timezone.now()
    booking = Booking.get(booking_id)
    _require_provider(booking, actor_id)
    if booking.status == BookingStatus.ACCEPTED and now < booking.scheduled_end:
        raise InvalidStateError('A booking can only be completed after its scheduled end.')
    with transaction.atomic():
        booking.complete(changed_by=actor_id)
        notify_on_commit(
            booking.client_id,
            NotificationType.BOOKING_COMPLETED,
            'Booking completed',
            f'{booking.service.title} on {_fmt_when(booking)} is complete. You can now leave a review.',
        )
    logger.info('Booking %s completed', booking.id)
    return booking


# ── Cancellation ──────────────────────────────────────────────────────────────

def finalize_cancellation(booking: Booking, changed_by, cancelled_by, reason: str = '',
                          penalty_amount=ZERO) -> Booking:
    """
    Cancel with an already-decided penalty: transition, free the slot,
    refund amount − penalty, tell the other side, offer the slot onward.
    Callers evaluate policy first (cancel_booking, no-show sweep, stale sweep).
    """
    penalty_amount = to_money(penalty_amount)
    _require_refundable(booking, penalty_amount)
    with transaction.atomic():
        booking.cancel(
            changed_by=changed_by, reason=reason,
            cancelled_by=cancelled_by, penalty_amount=penalty_amount,
        )
        slot_id = _release_held_slot(booking)
        _refund_held(booking, penalty_amount)

        if cancelled_by == CancelledBy.CLIENT:
            recipients = [booking.provider_id]
        elif cancelled_by == CancelledBy.PROVIDER:
            recipients = [booking.client_id]
        else:
            recipients = [booking.client_id, booking.provider_id]
        message = f'The booking for {booking.service.title} on {_fmt_when(booking)} was cancelled.'
        if reason:
            message += f' Reason: {reason}'
        for user_id in recipients:
            notify_on_commit(user_id, NotificationType.BOOKING_CANCELLED, 'Booking cancelled', message)

        if slot_id:
            _offer_freed_slot(slot_id)

    logger.info('Booking %s cancelled by %s (penalty %s)', booking.id, cancelled_by, penalty_amount)
    return booking


def cancel_booking(booking_id, actor_id, reason: str = '', now=None) -> Booking:
    """
    Cancel after the policy verdict. A denied verdict raises
    PolicyViolationError and leaves the booking untouched.
    """
    now = now or timezone.now()
    booking = Booking.get(booking_id)
    if str(actor_id) == SYSTEM_ACTOR:
        role = CancelledBy.SYSTEM
    else:
        role = booking.role_of(actor_id)
        if role is None:
            raise PermissionDeniedError('Only the client or the provider can cancel this booking.')
    if booking.is_terminal:
        raise InvalidTransitionError(f'Booking {booking.id_short} is already {booking.status}.')

    verdict = evaluate_cancellation_policy(booking.id, now=now, actor_role=role, reason=reason)
    if not verdict['allowed']:
        raise PolicyViolationError(verdict['reason'], verdict=verdict)

    return finalize_cancellation(
        booking, changed_by=actor_id, cancelled_by=role,
        reason=reason, penalty_amount=verdict['penalty_amount'],
    )


def update_booking_status(booking_id, status, actor_id, reason: str = '', now=None) -> Booking:
    """Single entry point for status changes requested over the API."""
    if status == BookingStatus.COMPLETED:
        return complete_booking(booking_id, actor_id, now=now)
    if status == BookingStatus.CANCELLED:
        return cancel_booking(booking_id, actor_id, reason=reason, now=now)
    if status == BookingStatus.ACCEPTED:
        return accept_booking(booking_id, actor_id)
    if status == BookingStatus.DECLINED:
        return decline_booking(booking_id, actor_id, reason=reason)
    raise InvalidRequestError(f"Unknown booking status '{status}'.")


# ── Queries ───────────────────────────────────────────────────────────────────

def _encode_cursor(booking: Booking) -> str:
    return urlsafe_base64_encode(force_bytes(f'{booking.created_at.isoformat()}|{booking.id}'))


def _decode_cursor(cursor: str):
    try:
        created_at, booking_id = force_str(urlsafe_base64_decode(cursor)).split('|', 1)
    except (ValueError, TypeError):
        raise InvalidRequestError('Invalid cursor.')
    parsed = parse_datetime(created_at)
    if parsed is None:
        raise InvalidRequestError('Invalid cursor.')
    return parsed, booking_id


def list_bookings(actor_id, role, status=None, limit=20, cursor=None) -> dict:
    """Newest first, keyset-paginated on (created_at, id)."""
    if role == CancelledBy.CLIENT:
        qs = Booking.objects.filter(client_id=actor_id)
    elif role == CancelledBy.PROVIDER:
        qs = Booking.objects.filter(provider_id=actor_id)
    else:
        raise InvalidRequestError("role must be 'client' or 'provider'.")

    if status:
        if status not in BookingStatus.values:
            raise InvalidRequestError(f"Unknown booking status '{status}'.")
        qs = qs.filter(status=status)

    try:
        limit = max(1, min(int(limit), MAX_PAGE_SIZE))
    except (TypeError, ValueError):
        raise InvalidRequestError('limit must be an integer.')

    if cursor:
        created_at, booking_id = _decode_cursor(cursor)
        qs = qs.filter(Q(created_at__lt=created_at) | Q(created_at=created_at, id__lt=booking_id))

    page = list(qs.select_related('service').order_by('-created_at', '-id')[:limit + 1])
    has_more = len(page) > limit
    page = page[:limit]
    return {
        'results': [booking_summary(b) for b in page],
        'next_cursor': _encode_cursor(page[-1]) if has_more else None,
    }


def get_booking(booking_id, actor_id) -> Booking:
    booking = Booking.get(booking_id)
    if booking.role_of(actor_id) is None:
        raise PermissionDeniedError('You are not part of this booking.')
    return booking


# ── Periodic jobs ─────────────────────────────────────────────────────────────

def cancel_stale_pending_bookings(now=None) -> dict:
    """
    Pending requests the provider never answered within PENDING_BOOKING_TTL_HOURS
    are cancelled by the system with a full refund.
    Each booking is handled in isolation; a concurrent accept simply wins.
    """
    now = now or timezone.now()
    cutoff = now - timedelta(hours=settings.PENDING_BOOKING_TTL_HOURS)
    report = {'cancelled': 0, 'skipped': 0, 'failed': []}

    stale = Booking.objects.select_related('service').filter(
        status=BookingStatus.PENDING, created_at__lt=cutoff,
    )
    for booking in stale:
        try:
            finalize_cancellation(
                booking,
                changed_by=SYSTEM_ACTOR,
                cancelled_by=CancelledBy.SYSTEM,
                reason=f'Not accepted within {settings.PENDING_BOOKING_TTL_HOURS} hours',
            )
            report['cancelled'] += 1
        except InvalidTransitionError:
            report['skipped'] += 1
        except Exception as exc:
            logger.exception('Stale booking cancellation failed for %s: %s', booking.id, exc)
            report['failed'].append({'booking_id': str(booking.id), 'error': str(exc)})

    logger.info('Stale pending sweep: %d cancelled, %d skipped, %d failed',
                report['cancelled'], report['skipped'], len(report['failed']))
    return report


def send_booking_reminders(now=None) -> dict:
    """
    One reminder per accepted booking starting on the next calendar day.
    reminder_sent_at is claimed with a conditional UPDATE, so re-runs and
    overlapping runs never send twice.
    """
    now = now or timezone.now()
    tomorrow = timezone.localdate(now) + timedelta(days=1)
    day_start = timezone.make_aware(datetime.combine(tomorrow, time_type.min))
    day_end = day_start + timedelta(days=1)
    report = {'sent': 0, 'skipped': 0, 'failed': []}

    due = Booking.objects.select_related('service', 'client', 'provider').filter(
        status=BookingStatus.ACCEPTED,
        scheduled_start__gte=day_start,
        scheduled_start__lt=day_end,
        reminder_sent_at__isnull=True,
    )
    for booking in due:
        try:
            with transaction.atomic():
                claimed = Booking.objects.filter(
                    id=booking.id, reminder_sent_at__isnull=True,
                ).update(reminder_sent_at=now)
                if not claimed:
                    report['skipped'] += 1
                    continue
                when = _fmt_when(booking)
                notify_on_commit(
                    booking.client_id, NotificationType.BOOKING_REMINDER, 'Booking tomorrow',
                    f'Reminder: {booking.service.title} with {booking.provider.name} on {when}.',
                )
                notify_on_commit(
                    booking.provider_id, NotificationType.BOOKING_REMINDER, 'Booking tomorrow',
                    f'Reminder: {booking.service.title} for {booking.client.name} on {when}.',
                )
            report['sent'] += 1
        except Exception as exc:
            logger.exception('Reminder failed for booking %s: %s', booking.id, exc)
            report['failed'].append({'booking_id': str(booking.id), 'error': str(exc)})

    logger.info('Reminders: %d sent, %d skipped, %d failed',
                report['sent'], report['skipped'], len(report['failed']))
    return report
