"""
Availability engine — weekly templates, slot generation and the slot claim.
Pure business logic, no HTTP/request awareness.

Public API:
  set_weekly_availability(provider_id, weekly_pattern, actor_id)
  get_weekly_availability(provider_id)
  generate_time_slots(provider_id, start_date, end_date, slot_duration_minutes, service_id=None)
  reserve_slot(time_slot_id, booking)
  book_time_slot(time_slot_id, booking_id, actor_id)
  release_slot(time_slot_id)
  get_available_slots(provider_id, on_date, service_id=None, now=None)
  get_weekly_schedule(provider_id, week_start)
"""
import logging
from datetime import datetime, timedelta, date as date_type, time as time_type

from django.conf import settings
from django.db import IntegrityError, transaction
from django.db.models import Q
from django.utils import timezone

from apps.accounts.models import Account
from apps.availability.models import WeeklyAvailability, TimeSlot
from apps.bookings.models import Booking, BookingStatus
from apps.core.exceptions import (
    ConflictError,
    InvalidRequestError,
    InvalidStateError,
    NotFoundError,
    PermissionDeniedError,
    SlotConflictError,
)
from apps.services.models import Service

logger = logging.getLogger(__name__)

MIN_SLOT_MINUTES = 15
MAX_SLOT_MINUTES = 480

# A slot can only be handed back when its holder no longer needs it
RELEASABLE_STATUSES = frozenset({BookingStatus.DECLINED, BookingStatus.CANCELLED})


# ── Time helpers ──────────────────────────────────────────────────────────────

def _fmt_time(t: time_type) -> str:
    """
    Format time as '10:00 AM' without a leading zero on the hour.
    Cross-platform replacement for strftime('%-I:%M %p') which is Linux-only.
    """
    hour = t.hour % 12 or 12
    minute = t.strftime('%M')
    ampm = 'AM' if t.hour < 12 else 'PM'
    return f"{hour}:{minute} {ampm}"


def _time_to_minutes(t: time_type) -> int:
    return t.hour * 60 + t.minute


def _overlaps(a_start: time_type, a_end: time_type,
              b_start: time_type, b_end: time_type) -> bool:
    """True if time window [a_start, a_end) overlaps [b_start, b_end)."""
    return _time_to_minutes(a_start) < _time_to_minutes(b_end) and \
           _time_to_minutes(a_end) > _time_to_minutes(b_start)


def _parse_time(value, field) -> time_type:
    if isinstance(value, time_type):
        return value
    try:
        return datetime.strptime(str(value), '%H:%M').time()
    except ValueError:
        raise InvalidRequestError(f"'{field}' must be a HH:MM time.")


def _aware(day: date_type, t: time_type) -> datetime:
    """Local wall-clock day+time as an aware datetime in the current timezone."""
    return timezone.make_aware(datetime.combine(day, t))


def _day_bounds(day: date_type):
    start = _aware(day, time_type.min)
    return start, _aware(day + timedelta(days=1), time_type.min)


# ── Weekly template ───────────────────────────────────────────────────────────

def _validate_pattern(weekly_pattern) -> list:
    """
    Normalise [{weekday, start_time, end_time, is_active?}, ...] into tuples.
    Raises InvalidRequestError before anything is written.
    """
    if not isinstance(weekly_pattern, (list, tuple)):
        raise InvalidRequestError('Weekly availability must be a list of windows.')

    windows = []
    for index, raw in enumerate(weekly_pattern):
        if not isinstance(raw, dict):
            raise InvalidRequestError(f'Window #{index} must be an object.')
        try:
            weekday = int(raw.get('weekday'))
        except (TypeError, ValueError):
            raise InvalidRequestError(f'Window #{index}: weekday must be 0 (Mon) .. 6 (Sun).')
        if not 0 <= weekday <= 6:
            raise InvalidRequestError(f'Window #{index}: weekday must be 0 (Mon) .. 6 (Sun).')
        start = _parse_time(raw.get('start_time'), 'start_time')
        end = _parse_time(raw.get('end_time'), 'end_time')
        if start >= end:
            raise InvalidRequestError(f'Window #{index}: start_time must be before end_time.')
        windows.append((weekday, start, end, bool(raw.get('is_active', True))))

    for i, (day_a, start_a, end_a, _) in enumerate(windows):
        for day_b, start_b, end_b, _ in windows[i + 1:]:
            if day_a == day_b and _overlaps(start_a, end_a, start_b, end_b):
                raise InvalidRequestError(
                    f'Overlapping windows on weekday {day_a}: '
                    f'{_fmt_time(start_a)}–{_fmt_time(end_a)} and {_fmt_time(start_b)}–{_fmt_time(end_b)}.'
                )
    return windows


def set_weekly_availability(provider_id, weekly_pattern, actor_id) -> list:
    """
    Replace the provider's recurring template. Already-generated slots are
    left alone; call generate_time_slots for new dates.
    """
    provider = Account.get(provider_id)
    if str(actor_id) != str(provider.id):
        raise PermissionDeniedError('You can only set your own availability.')
    if not provider.is_professional:
        raise PermissionDeniedError('Only professionals can set availability.')

    windows = _validate_pattern(weekly_pattern)

    with transaction.atomic():
        WeeklyAvailability.objects.filter(provider=provider).delete()
        created = WeeklyAvailability.objects.bulk_create([
            WeeklyAvailability(
                provider=provider, weekday=weekday,
                start_time=start, end_time=end, is_active=is_active,
            )
            for weekday, start, end, is_active in windows
        ])

    logger.info('Weekly availability replaced for provider %s (%d window(s))', provider.id, len(created))
    return created


def get_weekly_availability(provider_id) -> dict:
    """{weekday: [{id, start_time, end_time, is_active}, ...]} for all 7 weekdays."""
    provider = Account.get(provider_id)
    grouped = {weekday: [] for weekday in range(7)}
    for window in WeeklyAvailability.objects.filter(provider=provider).order_by('weekday', 'start_time'):
        grouped[window.weekday].append({
            'id': window.id,
            'start_time': window.start_time.strftime('%H:%M'),
            'end_time': window.end_time.strftime('%H:%M'),
            'is_active': window.is_active,
        })
    return grouped


# ── Slot generation ───────────────────────────────────────────────────────────

def generate_time_slots(provider_id, start_date: date_type, end_date: date_type,
                        slot_duration_minutes, service_id=None) -> list:
    """
    Materialise bookable slots from the active template over [start_date, end_date].

    Raises ConflictError when the provider already has any slot in the range,
    so a second run never duplicates slots. Two concurrent runs collide on the
    unique (provider, start) constraint and the loser gets ConflictError too.
    """
    try:
        duration = int(slot_duration_minutes)
    except (TypeError, ValueError):
        raise InvalidRequestError('Slot duration must be a whole number of minutes.')
    if not MIN_SLOT_MINUTES <= duration <= MAX_SLOT_MINUTES:
        raise InvalidRequestError(
            f'Slot duration must be between {MIN_SLOT_MINUTES} and {MAX_SLOT_MINUTES} minutes.'
        )
    if end_date < start_date:
        raise InvalidRequestError('end_date must not be before start_date.')
    if (end_date - start_date).days + 1 > settings.SLOT_GENERATION_MAX_DAYS:
        raise InvalidRequestError(
            f'Slots can be generated for at most {settings.SLOT_GENERATION_MAX_DAYS} days at once.'
        )

    provider = Account.get(provider_id)
    service = None
    if service_id:
        service = Service.get(service_id)
        if service.provider_id != provider.id:
            raise InvalidRequestError('Service does not belong to this provider.')

    templates = list(WeeklyAvailability.objects.filter(provider=provider, is_active=True))
    range_start, _ = _day_bounds(start_date)
    _, range_end = _day_bounds(end_date)

    if TimeSlot.objects.filter(provider=provider, start__lt=range_end, end__gt=range_start).exists():
        raise ConflictError(
            f'Slots already exist between {start_date} and {end_date}. '
            f'Pick a range without existing slots.'
        )

    step = timedelta(minutes=duration)
    slots = []
    day = start_date
    while day <= end_date:
        for window in (t for t in templates if t.weekday == day.weekday()):
            current = _aware(day, window.start_time)
            window_end = _aware(day, window.end_time)
            while current + step <= window_end:
                slots.append(TimeSlot(provider=provider, service=service, start=current, end=current + step))
                current += step
        day += timedelta(days=1)

    try:
        with transaction.atomic():
            TimeSlot.objects.bulk_create(slots)
    except IntegrityError:
        raise ConflictError('Slots for this range were generated concurrently. Please refresh.')

    logger.info(
        'Generated %d slot(s) for provider %s between %s and %s',
        len(slots), provider.id, start_date, end_date,
    )
    return slots


# ── Core: Atomic Slot Claim ───────────────────────────────────────────────────

def reserve_slot(time_slot_id, booking: Booking) -> Booking:
    """
    Claim the slot for `booking` with one conditional UPDATE
    (is_booked false -> true). Exactly one concurrent caller matches the row.

    Call inside the caller's transaction so a later failure rolls the claim back.

    Raises:
      NotFoundError     — no such slot
      SlotConflictError — somebody else holds it
    """
    claimed = TimeSlot.objects.filter(id=time_slot_id, is_booked=False).update(
        is_booked=True, booking=booking, updated_at=timezone.now(),
    )
    if not claimed:
        if not TimeSlot.objects.filter(id=time_slot_id).exists():
            raise NotFoundError('Time slot not found.')
        raise SlotConflictError(
            'This slot was just booked by another client. Please choose a different time.'
        )
    logger.info('Slot %s claimed by booking %s', time_slot_id, booking.id)
    return booking


def book_time_slot(time_slot_id, booking_id, actor_id) -> Booking:
    """
    Attach a free slot to a pending booking that was requested without one.
    The booking's schedule is taken from the slot.
    """
    booking = Booking.get(booking_id)
    if booking.role_of(actor_id) is None:
        raise PermissionDeniedError('Only the client or the provider can book a slot for this booking.')
    if booking.status != BookingStatus.PENDING:
        raise InvalidStateError(f'Booking is {booking.status}; only pending bookings can take a slot.')
    if booking.time_slot_id is not None:
        raise ConflictError('Booking already holds a time slot.')

    slot = TimeSlot.get(time_slot_id)
    if slot.provider_id != booking.provider_id:
        raise InvalidRequestError('Slot does not belong to the booking\'s provider.')
    if slot.service_id and slot.service_id != booking.service_id:
        raise InvalidRequestError('Slot is reserved for a different service.')

    with transaction.atomic():
        reserve_slot(slot.id, booking)
        attached = Booking.objects.filter(
            id=booking.id, status=BookingStatus.PENDING, time_slot__isnull=True,
        ).update(
            time_slot=slot, scheduled_start=slot.start, scheduled_end=slot.end,
            updated_at=timezone.now(),
        )
        if not attached:
            raise InvalidStateError('Booking changed while the slot was being attached. Please retry.')

    booking.time_slot = slot
    booking.scheduled_start = slot.start
    booking.scheduled_end = slot.end
    return booking


def release_slot(time_slot_id) -> TimeSlot:
    """
    Hand a slot back. Only legal once the holding booking is declined or
    cancelled; a free slot is returned unchanged.
    """
    slot = TimeSlot.objects.select_related('booking').filter(id=time_slot_id).first()
    if slot is None:
        raise NotFoundError('Time slot not found.')
    if not slot.is_booked:
        return slot

    holder = slot.booking
    if holder.status not in RELEASABLE_STATUSES:
        raise InvalidStateError(
            f'Slot is held by a {holder.status} booking and cannot be released.'
        )

    released = TimeSlot.objects.filter(id=slot.id, booking_id=holder.id).update(
        is_booked=False, booking=None, updated_at=timezone.now(),
    )
    if released:
        logger.info('Slot %s released from booking %s', slot.id, holder.id)
    slot.refresh_from_db()
    return slot


# ── Queries ───────────────────────────────────────────────────────────────────

def slot_summary(slot: TimeSlot) -> dict:
    local_start = timezone.localtime(slot.start)
    local_end = timezone.localtime(slot.end)
    return {
        'id': slot.id,
        'service_id': slot.service_id,
        'start': slot.start,
        'end': slot.end,
        'display': f"{_fmt_time(local_start.time())} – {_fmt_time(local_end.time())}",
        'is_booked': slot.is_booked,
    }


def get_available_slots(provider_id, on_date: date_type, service_id=None, now=None) -> list:
    """Free, future slots of the provider on `on_date`, earliest first."""
    now = now or timezone.now()
    day_start, day_end = _day_bounds(on_date)
    qs = TimeSlot.objects.filter(
        provider_id=provider_id,
        is_booked=False,
        start__gte=day_start,
        start__lt=day_end,
        start__gt=now,
    )
    if service_id:
        qs = qs.filter(Q(service_id=service_id) | Q(service__isnull=True))
    return list(qs.order_by('start'))


def get_weekly_schedule(provider_id, week_start: date_type) -> dict:
    """
    Every slot in the Monday-based week containing week_start, grouped by
    ISO date, with the holding booking summarised.
    """
    monday = week_start - timedelta(days=week_start.weekday())
    range_start, _ = _day_bounds(monday)
    _, range_end = _day_bounds(monday + timedelta(days=6))

    schedule = {(monday + timedelta(days=i)).isoformat(): [] for i in range(7)}
    slots = (
        TimeSlot.objects
        .filter(provider_id=provider_id, start__gte=range_start, start__lt=range_end)
        .select_related('booking__client', 'booking__service')
        .order_by('start')
    )
    for slot in slots:
        entry = slot_summary(slot)
        entry['booking'] = None
        if slot.booking is not None:
            entry['booking'] = {
                'id': slot.booking.id,
                'status': slot.booking.status,
                'client': slot.booking.client.name,
                'service': slot.booking.service.title,
            }
        day_key = timezone.localtime(slot.start).date().isoformat()
        schedule.setdefault(day_key, []).append(entry)
    return schedule
