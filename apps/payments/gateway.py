"""
Outbound calls to the payment gateway (Razorpay).
Inbound gateway events are handled in webhooks.py.

Everything here runs from transaction.on_commit hooks: a gateway outage is
logged and left for reconciliation, it never undoes a committed refund.
"""
import logging

import razorpay
from django.conf import settings

from apps.core.money import to_minor_units

logger = logging.getLogger(__name__)


def _razorpay_client():
    return razorpay.Client(
        auth=(settings.RAZORPAY_KEY_ID, settings.RAZORPAY_KEY_SECRET)
    )


def issue_refund(payment_gateway_id: str, amount) -> None:
    """Ask the gateway to refund `amount` of a captured charge. Never raises."""
    if not payment_gateway_id:
        logger.warning('Gateway refund of %s skipped — payment has no gateway id', amount)
        return
    if not settings.RAZORPAY_KEY_ID:
        logger.warning('Gateway refund of %s for %s skipped — gateway keys not configured',
                       amount, payment_gateway_id)
        return

    try:
        response = _razorpay_client().payment.refund(
            payment_gateway_id, {'amount': to_minor_units(amount)},
        )
        logger.info('Gateway refund %s issued for %s (%s)',
                    response.get('id', '?'), payment_gateway_id, amount)
    except Exception as exc:
        # The ledger already records the refund; the gateway call is retried by hand
        logger.exception('Gateway refund failed for %s (%s): %s', payment_gateway_id, amount, exc)
