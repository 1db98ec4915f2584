"""
Waitlist engine — queueing clients for freed slots and converting offers into bookings.
Pure business logic, no HTTP/request awareness.

Public API:
  join_waitlist(service_id, user_id, preferred_date, alternative_dates=(), priority=0,
                preferred_time=None, notes='')
  leave_waitlist(waitlist_id, actor_id)
  update_priority(waitlist_id, priority, actor_id)
  notify_availability(waitlist_id, available_slot_id, expires_in_hours=None, now=None, actor_id=None)
  offer_slot(slot_id, now=None)
  expire_sweep(now=None)
  convert_to_booking(waitlist_id, booking_date, actor_id, now=None)
  get_service_waitlist(service_id, actor_id)
  get_user_waitlists(user_id)

Ordering everywhere: higher priority first, then earliest join.
"""
import logging
from datetime import date as date_type, timedelta

from django.conf import settings
from django.db import IntegrityError, transaction
from django.db.models import Q
from django.utils import timezone

from apps.accounts.models import Account
from apps.availability.models import TimeSlot
from apps.bookings.engine import create_booking
from apps.core.exceptions import (
    ConflictError,
    InvalidRequestError,
    InvalidStateError,
    NotFoundError,
    PermissionDeniedError,
)
from apps.notifications.dispatch import notify_on_commit
from apps.notifications.models import NotificationType
from apps.services.models import Service
from apps.waitlist.models import WaitlistEntry, WaitlistStatus, ACTIVE_STATUSES

logger = logging.getLogger(__name__)

QUEUE_ORDER = ('-priority', 'created_at')


def entry_summary(entry: WaitlistEntry) -> dict:
    return {
        'id': entry.id,
        'service_id': entry.service_id,
        'service': entry.service.title,
        'user_id': entry.user_id,
        'user': entry.user.name,
        'preferred_date': entry.preferred_date,
        'alternative_dates': entry.alternative_dates,
        'preferred_time': entry.preferred_time,
        'priority': entry.priority,
        'status': entry.status,
        'notified_at': entry.notified_at,
        'expires_at': entry.expires_at,
        'offered_slot_id': entry.offered_slot_id,
        'booking_id': entry.booking_id,
        'created_at': entry.created_at,
    }


# ── Joining & leaving ─────────────────────────────────────────────────────────

def join_waitlist(service_id, user_id, preferred_date, alternative_dates=(), priority=0,
                  preferred_time=None, notes='') -> WaitlistEntry:
    """
    Queue the user for the service. One live entry per (service, user):
    a second join raises ConflictError, also when two joins race.
    """
    service = Service.get(service_id)
    if not service.is_active:
        raise InvalidRequestError('This service is not available.')
    user = Account.get(user_id)
    if user.id == service.provider_id:
        raise InvalidRequestError('You can not join the waitlist of your own service.')

    if not isinstance(preferred_date, date_type):
        raise InvalidRequestError('preferred_date must be a date.')
    today = timezone.localdate()
    if preferred_date < today:
        raise InvalidRequestError('preferred_date can not be in the past.')
    alternatives = []
    for day in alternative_dates or ():
        if not isinstance(day, date_type):
            raise InvalidRequestError('alternative_dates must be dates.')
        if day >= today and day != preferred_date and day.isoformat() not in alternatives:
            alternatives.append(day.isoformat())
    try:
        priority = int(priority or 0)
    except (TypeError, ValueError):
        raise InvalidRequestError('priority must be an integer.')

    if WaitlistEntry.objects.filter(service=service, user=user, status__in=ACTIVE_STATUSES).exists():
        raise ConflictError('You are already on the waitlist for this service.')

    try:
        with transaction.atomic():
            entry = WaitlistEntry.objects.create(
                service=service,
                user=user,
                preferred_date=preferred_date,
                alternative_dates=alternatives,
                preferred_time=preferred_time,
                priority=priority,
                notes=notes or '',
            )
            notify_on_commit(
                service.provider_id,
                NotificationType.WAITLIST_JOINED,
                'New waitlist entry',
                f'A client joined the waitlist for {service.title} ({preferred_date:%d %b %Y}).',
            )
    except IntegrityError:
        raise ConflictError('You are already on the waitlist for this service.')

    logger.info('User %s joined waitlist for service %s (entry %s)', user.id, service.id, entry.id)
    return entry


def leave_waitlist(waitlist_id, actor_id) -> WaitlistEntry:
    entry = WaitlistEntry.get(waitlist_id)
    if str(actor_id) != str(entry.user_id):
        raise PermissionDeniedError('You can only leave your own waitlist entries.')
    left = WaitlistEntry.objects.filter(id=entry.id, status__in=ACTIVE_STATUSES).update(
        status=WaitlistStatus.LEFT, updated_at=timezone.now(),
    )
    if not left:
        raise InvalidStateError(f'Waitlist entry is {entry.status}.')
    entry.refresh_from_db()
    logger.info('Waitlist entry %s left', entry.id)
    return entry


def update_priority(waitlist_id, priority, actor_id) -> WaitlistEntry:
    entry = WaitlistEntry.get(waitlist_id)
    if str(actor_id) != str(entry.service.provider_id):
        raise PermissionDeniedError('You can only update priorities for your own services.')
    try:
        priority = int(priority)
    except (TypeError, ValueError):
        raise InvalidRequestError('priority must be an integer.')
    updated = WaitlistEntry.objects.filter(id=entry.id, status__in=ACTIVE_STATUSES).update(
        priority=priority, updated_at=timezone.now(),
    )
    if not updated:
        raise InvalidStateError(f'Waitlist entry is {entry.status}.')
    entry.priority = priority
    return entry


# ── Offers ────────────────────────────────────────────────────────────────────

def notify_availability(waitlist_id, available_slot_id, expires_in_hours=None, now=None,
                        actor_id=None) -> WaitlistEntry:
    """
    Offer a slot to one waiting entry: waiting -> notified with
    expires_at = now + expires_in_hours. When actor_id is given it must be
    the service's provider.
    """
    now = now or timezone.now()
    entry = WaitlistEntry.get(waitlist_id)
    if actor_id is not None and str(actor_id) != str(entry.service.provider_id):
        raise PermissionDeniedError('You can only notify waitlists for your own services.')

    hours = settings.WAITLIST_DEFAULT_EXPIRY_HOURS if expires_in_hours is None else expires_in_hours
    try:
        hours = int(hours)
    except (TypeError, ValueError):
        raise InvalidRequestError('expires_in_hours must be a whole number of hours.')
    if hours <= 0:
        raise InvalidRequestError('expires_in_hours must be positive.')

    slot = TimeSlot.get(available_slot_id)
    if slot.provider_id != entry.service.provider_id:
        raise InvalidRequestError('Slot does not belong to the service\'s provider.')

    expires_at = now + timedelta(hours=hours)
    with transaction.atomic():
        offered = WaitlistEntry.objects.filter(id=entry.id, status=WaitlistStatus.WAITING).update(
            status=WaitlistStatus.NOTIFIED,
            notified_at=now,
            expires_at=expires_at,
            offered_slot=slot,
            updated_at=now,
        )
        if not offered:
            raise InvalidStateError(f'Waitlist entry is {entry.status}, not waiting.')

        when = timezone.localtime(slot.start).strftime('%d %b %Y, %H:%M')
        until = timezone.localtime(expires_at).strftime('%d %b %Y, %H:%M')
        notify_on_commit(
            entry.user_id,
            NotificationType.WAITLIST_SLOT_AVAILABLE,
            f'Slot available: {entry.service.title}',
            f'Good news! {entry.service.title} is available on {when}. '
            f'Confirm your booking before {until}.',
        )

    entry.refresh_from_db()
    logger.info('Waitlist entry %s offered slot %s until %s', entry.id, slot.id, expires_at)
    return entry


def offer_slot(slot_id, now=None) -> list:
    """
    Offer a free slot to the next waiting entries whose preferred or
    alternative date is the slot's date. At most WAITLIST_NOTIFY_BATCH
    offers are outstanding per slot. Returns the notified entry ids.
    """
    now = now or timezone.now()
    slot = TimeSlot.objects.filter(id=slot_id).first()
    if slot is None or slot.is_booked or slot.start <= now:
        return []

    outstanding = WaitlistEntry.objects.filter(
        offered_slot=slot, status=WaitlistStatus.NOTIFIED, expires_at__gt=now,
    ).count()
    capacity = settings.WAITLIST_NOTIFY_BATCH - outstanding
    if capacity <= 0:
        return []

    waiting = WaitlistEntry.objects.select_related('service').filter(
        status=WaitlistStatus.WAITING,
        service__provider_id=slot.provider_id,
        service__is_active=True,
    )
    if slot.service_id:
        waiting = waiting.filter(service_id=slot.service_id)

    slot_day = timezone.localtime(slot.start).date()
    candidates = [e for e in waiting.order_by(*QUEUE_ORDER) if e.wants_date(slot_day)][:capacity]

    notified = []
    for entry in candidates:
        try:
            notify_availability(entry.id, slot.id, now=now)
            notified.append(entry.id)
        except InvalidStateError:
            # Left or offered elsewhere since the query
            continue
    if notified:
        logger.info('Slot %s offered to %d waitlist entr(y/ies)', slot.id, len(notified))
    return notified


def expire_sweep(now=None) -> dict:
    """
    Periodic batch: notified entries whose offer lapsed (expires_at <= now)
    become expired, each by its own conditional UPDATE. Slots they were
    offered that are still free go to the next entries in line.
    """
    now = now or timezone.now()
    report = {'expired': 0, 'reoffered': 0, 'failed': []}
    freed_slots = []

    due = WaitlistEntry.objects.filter(status=WaitlistStatus.NOTIFIED, expires_at__lte=now)
    for entry_id, slot_id in list(due.values_list('id', 'offered_slot_id')):
        try:
            expired = WaitlistEntry.objects.filter(
                id=entry_id, status=WaitlistStatus.NOTIFIED, expires_at__lte=now,
            ).update(status=WaitlistStatus.EXPIRED, updated_at=now)
        except Exception as exc:
            logger.exception('Waitlist expiry failed for entry %s: %s', entry_id, exc)
            report['failed'].append({'waitlist_id': str(entry_id), 'error': str(exc)})
            continue
        if expired:
            report['expired'] += 1
            if slot_id and slot_id not in freed_slots:
                freed_slots.append(slot_id)

    for slot_id in freed_slots:
        try:
            report['reoffered'] += len(offer_slot(slot_id, now=now))
        except Exception as exc:
            logger.exception('Waitlist re-offer failed for slot %s: %s', slot_id, exc)
            report['failed'].append({'slot_id': str(slot_id), 'error': str(exc)})

    logger.info('Waitlist expiry sweep: %d expired, %d re-offered, %d failed',
                report['expired'], report['reoffered'], len(report['failed']))
    return report


# ── Conversion ────────────────────────────────────────────────────────────────

def _slot_for_conversion(entry: WaitlistEntry, booking_date):
    if booking_date is None or (entry.offered_slot_id and entry.offered_slot.start == booking_date):
        if entry.offered_slot_id is None:
            raise InvalidRequestError('booking_date is required: no slot was offered with this entry.')
        return entry.offered_slot_id

    slot_id = (
        TimeSlot.objects
        .filter(provider_id=entry.service.provider_id, start=booking_date, is_booked=False)
        .filter(Q(service_id=entry.service_id) | Q(service__isnull=True))
        .values_list('id', flat=True)
        .first()
    )
    if slot_id is None:
        raise NotFoundError('No free slot starts at the requested time.')
    return slot_id


def convert_to_booking(waitlist_id, booking_date, actor_id, now=None):
    """
    Turn an open offer into a booking through create_booking.

    Only from notified and strictly before expires_at. The booking and the
    notified -> converted move commit together; if the slot claim loses a
    race (SlotConflictError) nothing is written and the entry stays notified.
    """
    now = now or timezone.now()
    entry = WaitlistEntry.get(waitlist_id)
    if str(actor_id) != str(entry.user_id):
        raise PermissionDeniedError('Only the waitlisted client can convert this entry.')
    if entry.status != WaitlistStatus.NOTIFIED:
        raise InvalidStateError(f'Waitlist entry is {entry.status}, not notified.')
    if entry.expires_at is None or now >= entry.expires_at:
        raise InvalidStateError('This offer has expired.')

    slot_id = _slot_for_conversion(entry, booking_date)

    with transaction.atomic():
        booking = create_booking(entry.user_id, slot_id, entry.service_id, notes=entry.notes, now=now)
        converted = WaitlistEntry.objects.filter(
            id=entry.id, status=WaitlistStatus.NOTIFIED, expires_at__gt=now,
        ).update(status=WaitlistStatus.CONVERTED, booking=booking, updated_at=now)
        if not converted:
            raise InvalidStateError('Waitlist entry changed while booking. Please retry.')

    logger.info('Waitlist entry %s converted into booking %s', entry.id, booking.id)
    return booking


# ── Queries ───────────────────────────────────────────────────────────────────

def get_service_waitlist(service_id, actor_id) -> list:
    service = Service.get(service_id)
    if str(actor_id) != str(service.provider_id):
        raise PermissionDeniedError('You can only view waitlists for your own services.')
    entries = (
        WaitlistEntry.objects
        .select_related('service', 'user')
        .filter(service=service, status__in=ACTIVE_STATUSES)
        .order_by(*QUEUE_ORDER)
    )
    return [entry_summary(e) for e in entries]


def get_user_waitlists(user_id) -> list:
    entries = (
        WaitlistEntry.objects
        .select_related('service', 'user')
        .filter(user_id=user_id, status__in=ACTIVE_STATUSES)
        .order_by('-created_at')
    )
    return [entry_summary(e) for e in entries]
