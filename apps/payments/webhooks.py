"""
Inbound payment gateway events.

Public API:
  handle_gateway_event(event) -> 'processed' | 'duplicate' | 'ignored' | 'rejected'

An event is a decoded, signature-verified dict:
  {id, type, data: {id (charge), amount, refunded_amount?, metadata: {booking_id}}}
with amounts in minor units (paise/cents).

Idempotency: the GatewayEvent row is written in the same transaction as the
event's effect. A replayed event id finds the row and does nothing; an event
whose effect fails is not recorded, so the gateway's retry is processed.
"""
import logging

from django.db import transaction
from django.utils import timezone

from apps.core.exceptions import InvalidRequestError, InvalidStateError, NotFoundError
from apps.core.money import from_minor_units
from apps.notifications.dispatch import notify_on_commit
from apps.notifications.models import NotificationType
from apps.payments import escrow
from apps.payments.models import GatewayEvent, Payment, PaymentStatus

logger = logging.getLogger(__name__)


def _payment_for(data: dict) -> Payment:
    """Find the escrow record by gateway charge id, falling back to the booking id in metadata."""
    charge_id = str(data.get('id') or '')
    payment = None
    if charge_id:
        payment = Payment.objects.select_related('booking').filter(payment_gateway_id=charge_id).first()
    if payment is None:
        booking_id = (data.get('metadata') or {}).get('booking_id')
        if booking_id:
            payment = Payment.objects.select_related('booking').filter(booking_id=booking_id).first()
    if payment is None:
        raise NotFoundError(f'No payment found for gateway charge {charge_id or "?"}.')
    return payment


# ── Event handlers ────────────────────────────────────────────────────────────

def _on_charge_paid(data, now):
    payment = _payment_for(data)
    amount = from_minor_units(data['amount']) if data.get('amount') is not None else None
    escrow.open_escrow(
        payment.booking_id, amount=amount, now=now,
        payment_gateway_id=str(data.get('id') or '') or None,
    )


def _on_charge_failed(data, now):
    payment = _payment_for(data)
    failed = Payment.objects.filter(id=payment.id, status=PaymentStatus.PENDING).update(
        status=PaymentStatus.FAILED, updated_at=now,
    )
    if not failed:
        logger.warning('Payment failure for booking %s ignored — payment is %s',
                       payment.booking_id, payment.status)
        return
    notify_on_commit(
        payment.booking.client_id,
        NotificationType.PAYMENT_FAILED,
        'Payment failed',
        f'Your payment for booking {payment.booking.id_short} failed. Please try again.',
    )
    logger.info('Payment for booking %s marked failed', payment.booking_id)


def _on_charge_refunded(data, now):
    payment = _payment_for(data)
    total = data.get('refunded_amount')
    refunded_total = from_minor_units(total) if total is not None else payment.amount
    escrow.record_gateway_refund(payment.booking_id, refunded_total, now=now)


def _on_charge_partial_refunded(data, now):
    if data.get('refunded_amount') is None:
        raise InvalidRequestError('Partial refund event without refunded_amount.')
    payment = _payment_for(data)
    escrow.record_gateway_refund(payment.booking_id, from_minor_units(data['refunded_amount']), now=now)


HANDLERS = {
    'charge.paid': _on_charge_paid,
    'charge.payment_failed': _on_charge_failed,
    'charge.refunded': _on_charge_refunded,
    'charge.partial_refunded': _on_charge_partial_refunded,
}


# ── Entry point ───────────────────────────────────────────────────────────────

def handle_gateway_event(event: dict, now=None) -> str:
    if not isinstance(event, dict):
        raise InvalidRequestError('Gateway event must be an object.')
    event_id = str(event.get('id') or '')
    kind = str(event.get('type') or '')
    data = event.get('data') or {}
    if not event_id or not kind:
        raise InvalidRequestError('Gateway event needs an id and a type.')

    handler = HANDLERS.get(kind)
    if handler is None:
        logger.warning('Gateway event %s of unknown type %r ignored', event_id, kind)
        return 'ignored'

    now = now or timezone.now()
    with transaction.atomic():
        _, created = GatewayEvent.objects.get_or_create(
            event_id=event_id,
            defaults={'kind': kind, 'charge_id': str(data.get('id') or ''), 'payload': event},
        )
        if not created:
            logger.info('Gateway event %s already processed — skipping.', event_id)
            return 'duplicate'

        try:
            with transaction.atomic():
                handler(data, now)
        except (NotFoundError, InvalidStateError) as exc:
            # Permanent: recorded as processed so the gateway stops retrying it
            logger.warning('Gateway event %s (%s) not applied: %s', event_id, kind, exc)
            return 'rejected'

    logger.info('Gateway event %s (%s) processed', event_id, kind)
    return 'processed'
