"""
Booking policy engine — cancellation, rescheduling and no-show verdicts.
Pure business logic, no HTTP/request awareness.

Public API:
  select_policy(service_id, kind)
  compute_penalty(policy, amount)
  evaluate_cancellation_policy(booking_id, now=None, actor_role='client', reason='')
  evaluate_rescheduling_policy(booking_id, new_date, now=None)
  apply_no_show_policy(booking_id, now=None)
  apply_no_show_sweep(now=None)
  create_policy(actor_id, name, type, ...)
  update_policy(policy_id, actor_id, **changes)
  deactivate_policy(policy_id, actor_id)
  get_service_policies(service_id)
  get_policy_templates()

A verdict is a dict:
  {allowed, penalty_amount, policy_applied, policy_name, reason, hours_until_start}
"""
import logging
from datetime import timedelta
from decimal import Decimal

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from apps.bookings.models import Booking, BookingStatus, CancelledBy, TERMINAL_STATUSES
from apps.core.exceptions import (
    InvalidRequestError,
    InvalidStateError,
    InvalidTransitionError,
    PermissionDeniedError,
)
from apps.core.money import ZERO, to_money, percentage_of
from apps.policies.models import BookingPolicy, PolicyEvaluation, PolicyType, PenaltyType
from apps.services.models import Service

logger = logging.getLogger(__name__)

EXCEPTION_CONDITION_KEYS = ('cancelled_by', 'reason_keywords', 'max_prior_cancellations')
EDITABLE_FIELDS = (
    'name', 'description', 'hours_before_booking', 'penalty_type', 'penalty_value',
    'allow_exceptions', 'exception_conditions',
)

POLICY_TEMPLATES = [
    {
        'type': PolicyType.CANCELLATION,
        'name': 'Standard Cancellation Policy',
        'description': 'Cancel at least 24 hours ahead; later cancellations are charged half the price.',
        'hours_before_booking': 24,
        'penalty_type': PenaltyType.PERCENTAGE,
        'penalty_value': Decimal('50'),
    },
    {
        'type': PolicyType.CANCELLATION,
        'name': 'Flexible Cancellation Policy',
        'description': 'Free cancellation up to 2 hours before the booking.',
        'hours_before_booking': 2,
        'penalty_type': PenaltyType.NONE,
        'penalty_value': Decimal('0'),
    },
    {
        'type': PolicyType.RESCHEDULING,
        'name': 'Rescheduling Policy',
        'description': 'Reschedule at least 12 hours before the booking.',
        'hours_before_booking': 12,
        'penalty_type': PenaltyType.NONE,
        'penalty_value': Decimal('0'),
    },
    {
        'type': PolicyType.NO_SHOW,
        'name': 'No-show Policy',
        'description': 'Missing the booking is charged the full service price.',
        'hours_before_booking': 0,
        'penalty_type': PenaltyType.PERCENTAGE,
        'penalty_value': Decimal('100'),
    },
]


# ── Selection & penalty math ──────────────────────────────────────────────────

def select_policy(service_id, kind):
    """
    Active service-specific policies override platform defaults. Among the
    candidates the longest free window wins; ties go to the newest policy.
    """
    candidates = BookingPolicy.objects.filter(type=kind, is_active=True)
    specific = candidates.filter(service_id=service_id)
    pool = specific if specific.exists() else candidates.filter(service__isnull=True)
    return pool.order_by('-hours_before_booking', '-created_at').first()


def compute_penalty(policy, amount) -> Decimal:
    """Penalty for `amount` under `policy`, never more than the amount itself."""
    amount = to_money(amount)
    if policy is None or policy.penalty_type == PenaltyType.NONE:
        return ZERO
    if policy.penalty_type == PenaltyType.PERCENTAGE:
        penalty = percentage_of(amount, policy.penalty_value)
    else:
        penalty = to_money(policy.penalty_value)
    return max(ZERO, min(penalty, amount))


def _verdict(allowed, penalty, policy, reason, hours_until) -> dict:
    return {
        'allowed': allowed,
        'penalty_amount': to_money(penalty),
        'policy_applied': policy.id if policy else None,
        'policy_name': policy.name if policy else None,
        'reason': reason,
        'hours_until_start': round(hours_until, 2),
    }


def _record(booking, kind, verdict, actor_role=''):
    PolicyEvaluation.objects.create(
        policy_id=verdict['policy_applied'],
        booking=booking,
        kind=kind,
        actor_role=actor_role,
        allowed=verdict['allowed'],
        penalty_amount=verdict['penalty_amount'],
        reason=verdict['reason'],
    )


def _hours_until(booking, now) -> float:
    return (booking.scheduled_start - now).total_seconds() / 3600


def _prior_client_cancellations(booking) -> int:
    return (
        Booking.all_objects
        .filter(client_id=booking.client_id, status=BookingStatus.CANCELLED, cancelled_by=CancelledBy.CLIENT)
        .exclude(id=booking.id)
        .count()
    )


def _exception_applies(policy, booking, actor_role, reason) -> bool:
    """Any matching condition waives the penalty."""
    conditions = policy.exception_conditions or {}

    if actor_role in (conditions.get('cancelled_by') or []):
        return True

    text = (reason or '').lower()
    if text and any(str(word).lower() in text for word in conditions.get('reason_keywords') or []):
        return True

    max_prior = conditions.get('max_prior_cancellations')
    if max_prior is not None and _prior_client_cancellations(booking) <= int(max_prior):
        return True

    return False


# ── Verdicts ──────────────────────────────────────────────────────────────────

def evaluate_cancellation_policy(booking_id, now=None, actor_role=CancelledBy.CLIENT, reason='') -> dict:
    """
    Decide whether a cancellation is allowed and what it costs.

    Provider- and system-initiated cancellations are free. A client inside
    the policy's free window pays nothing; later, the policy penalty applies
    unless an exception condition matches. With no policy at all, the
    service's cancellation_hours is a hard cut-off.
    """
    now = now or timezone.now()
    booking = Booking.get(booking_id)
    hours_until = _hours_until(booking, now)

    if booking.status in TERMINAL_STATUSES:
        verdict = _verdict(False, ZERO, None, f'Booking is already {booking.status}.', hours_until)
    elif actor_role in (CancelledBy.PROVIDER, CancelledBy.SYSTEM):
        verdict = _verdict(True, ZERO, None, f'Cancelled by the {actor_role}; no penalty for the client.', hours_until)
    else:
        policy = select_policy(booking.service_id, PolicyType.CANCELLATION)
        if policy is None:
            threshold = booking.service.cancellation_hours
            if booking.scheduled_start - now >= timedelta(hours=threshold):
                verdict = _verdict(True, ZERO, None, 'Cancelled within the free cancellation window.', hours_until)
            else:
                verdict = _verdict(
                    False, ZERO, None,
                    f'Cancellations must be made at least {threshold} hours before the booking.',
                    hours_until,
                )
        elif booking.scheduled_start - now >= timedelta(hours=policy.hours_before_booking):
            verdict = _verdict(True, ZERO, policy, 'Cancelled within the free cancellation window.', hours_until)
        elif policy.allow_exceptions and _exception_applies(policy, booking, actor_role, reason):
            verdict = _verdict(True, ZERO, policy, 'Policy exception applies; penalty waived.', hours_until)
        else:
            penalty = compute_penalty(policy, booking.total_price)
            verdict = _verdict(
                True, penalty, policy,
                f'Late cancellation (less than {policy.hours_before_booking} hours before start): '
                f'penalty of {penalty} under "{policy.name}".',
                hours_until,
            )

    _record(booking, PolicyType.CANCELLATION, verdict, actor_role)
    logger.info('Cancellation verdict for booking %s (%s): allowed=%s penalty=%s',
                booking.id, actor_role, verdict['allowed'], verdict['penalty_amount'])
    return verdict


def evaluate_rescheduling_policy(booking_id, new_date, now=None) -> dict:
    """Verdict only; moving the booking is up to the caller."""
    now = now or timezone.now()
    if new_date is None or new_date <= now:
        raise InvalidRequestError('The new date must be in the future.')

    booking = Booking.get(booking_id)
    hours_until = _hours_until(booking, now)

    if booking.status in TERMINAL_STATUSES:
        verdict = _verdict(False, ZERO, None, f'A {booking.status} booking can not be rescheduled.', hours_until)
    else:
        policy = select_policy(booking.service_id, PolicyType.RESCHEDULING)
        if policy is None:
            threshold = booking.service.rescheduling_hours
            if booking.scheduled_start - now >= timedelta(hours=threshold):
                verdict = _verdict(True, ZERO, None, 'Rescheduled within the free window.', hours_until)
            else:
                verdict = _verdict(
                    False, ZERO, None,
                    f'Rescheduling must be done at least {threshold} hours before the booking.',
                    hours_until,
                )
        elif booking.scheduled_start - now >= timedelta(hours=policy.hours_before_booking):
            verdict = _verdict(True, ZERO, policy, 'Rescheduled within the free window.', hours_until)
        else:
            penalty = compute_penalty(policy, booking.total_price)
            verdict = _verdict(
                True, penalty, policy,
                f'Late rescheduling: penalty of {penalty} under "{policy.name}".',
                hours_until,
            )

    _record(booking, PolicyType.RESCHEDULING, verdict)
    return verdict


# ── No-shows ──────────────────────────────────────────────────────────────────

def apply_no_show_policy(booking_id, now=None) -> dict:
    """
    An accepted booking whose end has passed without completion is a no-show:
    cancelled by the system, penalty kept from escrow, remainder refunded.
    No time threshold applies; without a no-show policy the full price is kept.
    """
    from apps.bookings.engine import finalize_cancellation, SYSTEM_ACTOR

    now = now or timezone.now()
    booking = Booking.get(booking_id)
    if booking.status != BookingStatus.ACCEPTED:
        raise InvalidStateError(f'Only accepted bookings can be marked no-show (booking is {booking.status}).')
    if booking.scheduled_end > now:
        raise InvalidStateError('The booking has not ended yet.')

    policy = select_policy(booking.service_id, PolicyType.NO_SHOW)
    if policy is None:
        penalty = to_money(booking.total_price)
        reason = 'No-show: full price retained (no no-show policy).'
    else:
        penalty = compute_penalty(policy, booking.total_price)
        reason = f'No-show: penalty of {penalty} under "{policy.name}".'
    verdict = _verdict(True, penalty, policy, reason, _hours_until(booking, now))

    with transaction.atomic():
        finalize_cancellation(
            booking, changed_by=SYSTEM_ACTOR, cancelled_by=CancelledBy.SYSTEM,
            reason='No-show', penalty_amount=penalty,
        )
        _record(booking, PolicyType.NO_SHOW, verdict, CancelledBy.SYSTEM)

    logger.info('No-show applied to booking %s: penalty %s', booking.id, penalty)
    return verdict


def apply_no_show_sweep(now=None) -> dict:
    now = now or timezone.now()
    report = {'applied': 0, 'skipped': 0, 'failed': []}
    due = Booking.objects.filter(status=BookingStatus.ACCEPTED, scheduled_end__lte=now).values_list('id', flat=True)
    for booking_id in list(due):
        try:
            apply_no_show_policy(booking_id, now=now)
            report['applied'] += 1
        except (InvalidTransitionError, InvalidStateError):
            # Completed or cancelled since the scan
            report['skipped'] += 1
        except Exception as exc:
            logger.exception('No-show processing failed for booking %s: %s', booking_id, exc)
            report['failed'].append({'booking_id': str(booking_id), 'error': str(exc)})

    logger.info('No-show sweep: %d applied, %d skipped, %d failed',
                report['applied'], report['skipped'], len(report['failed']))
    return report


# ── Policy management ─────────────────────────────────────────────────────────

def _normalise_type(kind):
    kind = str(kind or '').replace('_', '-')
    if kind not in PolicyType.values:
        raise InvalidRequestError(f"type must be one of {', '.join(PolicyType.values)}.")
    return kind


def _validate_fields(fields: dict) -> dict:
    """Check a full set of editable fields; returns them normalised."""
    name = (fields.get('name') or '').strip()
    if not name:
        raise InvalidRequestError('Policy name is required.')

    penalty_type = fields.get('penalty_type') or PenaltyType.NONE
    if penalty_type not in PenaltyType.values:
        raise InvalidRequestError(f"penalty_type must be one of {', '.join(PenaltyType.values)}.")
    penalty_value = to_money(fields.get('penalty_value') or 0)
    if penalty_value < ZERO:
        raise InvalidRequestError('penalty_value can not be negative.')
    if penalty_type == PenaltyType.PERCENTAGE and penalty_value > 100:
        raise InvalidRequestError('A percentage penalty can not exceed 100.')
    if penalty_type == PenaltyType.NONE:
        penalty_value = ZERO

    try:
        hours = int(fields.get('hours_before_booking', 24))
    except (TypeError, ValueError):
        raise InvalidRequestError('hours_before_booking must be a whole number of hours.')
    if hours < 0:
        raise InvalidRequestError('hours_before_booking can not be negative.')

    conditions = fields.get('exception_conditions') or {}
    if not isinstance(conditions, dict):
        raise InvalidRequestError('exception_conditions must be an object.')
    unknown = set(conditions) - set(EXCEPTION_CONDITION_KEYS)
    if unknown:
        raise InvalidRequestError(f"Unknown exception condition(s): {', '.join(sorted(unknown))}.")
    for key in ('cancelled_by', 'reason_keywords'):
        if key in conditions and not isinstance(conditions[key], list):
            raise InvalidRequestError(f'{key} must be a list.')
    if 'max_prior_cancellations' in conditions:
        try:
            int(conditions['max_prior_cancellations'])
        except (TypeError, ValueError):
            raise InvalidRequestError('max_prior_cancellations must be an integer.')

    return {
        'name': name,
        'description': fields.get('description') or '',
        'hours_before_booking': hours,
        'penalty_type': penalty_type,
        'penalty_value': penalty_value,
        'allow_exceptions': bool(fields.get('allow_exceptions', False)),
        'exception_conditions': conditions,
    }


def _require_policy_owner(service, actor_id):
    """Service policies belong to the service's provider; platform defaults to the platform admin."""
    if service is not None:
        if str(actor_id) != str(service.provider_id):
            raise PermissionDeniedError('Only the service provider can manage its policies.')
    elif not settings.PLATFORM_ADMIN_ID or str(actor_id) != str(settings.PLATFORM_ADMIN_ID):
        raise PermissionDeniedError('Only the platform administrator can manage platform policies.')


def create_policy(actor_id, name, type, penalty_type=PenaltyType.NONE, penalty_value=0,
                  hours_before_booking=24, service_id=None, description='',
                  allow_exceptions=False, exception_conditions=None) -> BookingPolicy:
    kind = _normalise_type(type)
    service = Service.get(service_id) if service_id else None
    _require_policy_owner(service, actor_id)
    fields = _validate_fields({
        'name': name,
        'description': description,
        'hours_before_booking': hours_before_booking,
        'penalty_type': penalty_type,
        'penalty_value': penalty_value,
        'allow_exceptions': allow_exceptions,
        'exception_conditions': exception_conditions,
    })
    policy = BookingPolicy.objects.create(
        service=service, type=kind, created_by=service.provider if service else None,
        **fields,
    )
    logger.info('Policy %s created (%s, service=%s)', policy.id, kind, service_id)
    return policy


def update_policy(policy_id, actor_id, **changes) -> BookingPolicy:
    """
    Edit a policy. Once any verdict references it, the policy is retired and
    a new version carrying the changes takes its place.
    """
    policy = BookingPolicy.get(policy_id)
    _require_policy_owner(policy.service, actor_id)
    if not policy.is_active:
        raise InvalidStateError('Inactive policies can not be edited.')
    unknown = set(changes) - set(EDITABLE_FIELDS)
    if unknown:
        raise InvalidRequestError(f"Fields can not be edited: {', '.join(sorted(unknown))}.")

    merged = {field: getattr(policy, field) for field in EDITABLE_FIELDS}
    merged.update(changes)
    fields = _validate_fields(merged)

    with transaction.atomic():
        if PolicyEvaluation.objects.filter(policy=policy).exists():
            retired = BookingPolicy.objects.filter(id=policy.id, is_active=True).update(
                is_active=False, updated_at=timezone.now(),
            )
            if not retired:
                raise InvalidStateError('Policy was changed concurrently. Please reload it.')
            new_policy = BookingPolicy.objects.create(
                service=policy.service,
                type=policy.type,
                created_by=policy.created_by,
                version=policy.version + 1,
                previous_version=policy,
                **fields,
            )
            logger.info('Policy %s superseded by version %d (%s)', policy.id, new_policy.version, new_policy.id)
            return new_policy

        for field, value in fields.items():
            setattr(policy, field, value)
        policy.save(update_fields=list(fields) + ['updated_at'])

    logger.info('Policy %s updated in place', policy.id)
    return policy


def deactivate_policy(policy_id, actor_id) -> BookingPolicy:
    policy = BookingPolicy.get(policy_id)
    _require_policy_owner(policy.service, actor_id)
    BookingPolicy.objects.filter(id=policy.id).update(is_active=False, updated_at=timezone.now())
    policy.is_active = False
    logger.info('Policy %s deactivated', policy.id)
    return policy


# ── Queries ───────────────────────────────────────────────────────────────────

def policy_summary(policy: BookingPolicy) -> dict:
    return {
        'id': policy.id,
        'service_id': policy.service_id,
        'name': policy.name,
        'type': policy.type,
        'description': policy.description,
        'hours_before_booking': policy.hours_before_booking,
        'penalty_type': policy.penalty_type,
        'penalty_value': policy.penalty_value,
        'allow_exceptions': policy.allow_exceptions,
        'exception_conditions': policy.exception_conditions,
        'is_active': policy.is_active,
        'version': policy.version,
    }


def get_service_policies(service_id) -> dict:
    """Active policies of the service plus the platform defaults that back them up."""
    service = Service.get(service_id)
    active = BookingPolicy.objects.filter(is_active=True)
    return {
        'service': [policy_summary(p) for p in active.filter(service=service)],
        'platform_defaults': [policy_summary(p) for p in active.filter(service__isnull=True)],
        'effective': {
            kind: (policy.id if policy else None)
            for kind, policy in (
                (kind, select_policy(service.id, kind)) for kind in PolicyType.values
            )
        },
    }


def get_policy_templates() -> list:
    return [dict(template) for template in POLICY_TEMPLATES]
