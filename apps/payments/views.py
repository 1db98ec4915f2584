"""
Payment and escrow endpoints.

  GET  /payments/earnings/                          earnings overview (provider)
  POST /payments/withdrawals/                       requestWithdrawal
  POST /payments/withdrawals/<uuid>/complete/       payout confirmed (platform)
  POST /payments/withdrawals/<uuid>/fail/           payout rejected (platform)
  POST /payments/bookings/<uuid>/early-release/     request early release (provider)
  POST /payments/bookings/<uuid>/early-release/approve/   (platform)
  POST /payments/bookings/<uuid>/dispute/           open a dispute (client)
  POST /payments/bookings/<uuid>/dispute/resolve/   (platform)
  GET  /payments/escrow/stats/                      escrow statistics (platform)
  POST /payments/webhook/                           Razorpay server-side events
"""
import hashlib
import hmac
import json
import logging

from django.conf import settings
from django.http import HttpResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_POST

from apps.core.api import actor_id, api_endpoint, json_body, require
from apps.core.db import storage_errors
from apps.core.exceptions import EngineError, InvalidRequestError, PermissionDeniedError

from . import escrow
from .webhooks import handle_gateway_event

logger = logging.getLogger(__name__)


def _require_platform_admin(request):
    actor = actor_id(request)
    if not settings.PLATFORM_ADMIN_ID or actor != str(settings.PLATFORM_ADMIN_ID):
        raise PermissionDeniedError('Only the platform administrator can do this.')
    return actor


def _payment_summary(payment) -> dict:
    return {
        'booking_id': payment.booking_id,
        'status': payment.status,
        'amount': payment.amount,
        'service_fee': payment.service_fee,
        'net_amount': payment.net_amount,
        'refund_amount': payment.refund_amount,
        'escrow_release_date': payment.escrow_release_date,
        'released_at': payment.released_at,
        'disputed': payment.is_disputed,
        'early_release_requested_at': payment.early_release_requested_at,
    }


def _withdrawal_summary(withdrawal) -> dict:
    return {
        'id': withdrawal.id,
        'amount': withdrawal.amount,
        'status': withdrawal.status,
        'bank_account_id': withdrawal.bank_account_id,
        'processed_at': withdrawal.processed_at,
        'failure_reason': withdrawal.failure_reason,
    }


# ─────────────────────────────────────────────────────────────────────────────
# Earnings & withdrawals
# ─────────────────────────────────────────────────────────────────────────────

@api_endpoint('GET')
def earnings(request):
    return escrow.get_earnings_overview(actor_id(request))


@api_endpoint('POST')
def withdrawals(request):
    data = json_body(request)
    withdrawal = escrow.request_withdrawal(
        actor_id(request), require(data, 'amount'), bank_account_id=data.get('bank_account_id'),
    )
    return {'withdrawal': _withdrawal_summary(withdrawal)}, 201


@api_endpoint('POST')
def complete_withdrawal(request, withdrawal_id):
    _require_platform_admin(request)
    return {'withdrawal': _withdrawal_summary(escrow.complete_withdrawal(withdrawal_id))}


@api_endpoint('POST')
def fail_withdrawal(request, withdrawal_id):
    _require_platform_admin(request)
    data = json_body(request)
    withdrawal = escrow.fail_withdrawal(withdrawal_id, data.get('reason', ''))
    return {'withdrawal': _withdrawal_summary(withdrawal)}


# ─────────────────────────────────────────────────────────────────────────────
# Early release & disputes
# ─────────────────────────────────────────────────────────────────────────────

@api_endpoint('POST')
def request_early_release(request, booking_id):
    data = json_body(request)
    payment = escrow.request_early_release(booking_id, data.get('justification'), actor_id(request))
    return {'payment': _payment_summary(payment)}


@api_endpoint('POST')
def approve_early_release(request, booking_id):
    _require_platform_admin(request)
    return {'payment': _payment_summary(escrow.approve_early_release(booking_id))}


@api_endpoint('POST')
def dispute(request, booking_id):
    data = json_body(request)
    payment = escrow.dispute_payment(booking_id, data.get('reason'), actor_id(request))
    return {'payment': _payment_summary(payment)}


@api_endpoint('POST')
def resolve_dispute(request, booking_id):
    _require_platform_admin(request)
    data = json_body(request)
    payment = escrow.resolve_dispute(booking_id, require(data, 'outcome'))
    return {'payment': _payment_summary(payment)}


@api_endpoint('GET')
def escrow_stats(request):
    _require_platform_admin(request)
    return escrow.get_escrow_stats()


# ─────────────────────────────────────────────────────────────────────────────
# Webhook
# ─────────────────────────────────────────────────────────────────────────────

def _verify_webhook_signature(raw_body: bytes, signature: str) -> bool:
    """Verify Razorpay webhook signature."""
    secret = settings.RAZORPAY_WEBHOOK_SECRET.encode()
    computed = hmac.new(key=secret, msg=raw_body, digestmod=hashlib.sha256).hexdigest()
    return hmac.compare_digest(computed, signature)


@csrf_exempt
@require_POST
def razorpay_webhook(request):
    """
    The gateway fires this endpoint for every charge event.
    Security comes from the HMAC-SHA256 signature check. Only a retryable
    storage failure answers 503; everything else answers 200 (or 400 for a
    malformed body) so the gateway stops resending it.
    """
    raw_body = request.body
    signature = request.headers.get('X-Razorpay-Signature', '')

    # Skip signature check if webhook secret not configured (dev convenience)
    if settings.RAZORPAY_WEBHOOK_SECRET:
        if not _verify_webhook_signature(raw_body, signature):
            logger.warning('Webhook signature verification failed.')
            return HttpResponse(status=400)

    try:
        event = json.loads(raw_body)
    except json.JSONDecodeError:
        return HttpResponse(status=400)

    try:
        with storage_errors():
            outcome = handle_gateway_event(event)
    except InvalidRequestError as exc:
        logger.warning('Webhook payload rejected: %s', exc)
        return HttpResponse(status=400)
    except EngineError as exc:
        if exc.retryable:
            logger.error('Webhook processing deferred, gateway will retry: %s', exc)
            return HttpResponse(status=503)
        logger.exception('Webhook processing error: %s', exc)
        return HttpResponse(status=200)

    logger.info('Webhook event %s: %s', event.get('id'), outcome)
    return HttpResponse(status=200)
