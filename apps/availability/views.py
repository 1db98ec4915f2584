"""
Availability JSON endpoints.

  PUT  /availability/providers/<uuid>/weekly/         setAvailability
  GET  /availability/providers/<uuid>/weekly/         weekly template
  POST /availability/providers/<uuid>/slots/generate/ generateTimeSlots
  GET  /availability/providers/<uuid>/slots/?date=    getAvailableTimeSlots
  GET  /availability/providers/<uuid>/schedule/?week= getWeeklySchedule
  POST /availability/slots/<uuid>/book/               bookTimeSlot
  POST /availability/slots/<uuid>/release/            releaseTimeSlot
"""
import logging

from django.utils import timezone

from apps.availability import engine
from apps.availability.models import TimeSlot
from apps.bookings.engine import booking_summary
from apps.core.api import actor_id, api_endpoint, as_date, json_body, require
from apps.core.exceptions import PermissionDeniedError

logger = logging.getLogger(__name__)


@api_endpoint('GET', 'PUT')
def weekly_availability(request, provider_id):
    if request.method == 'PUT':
        data = json_body(request)
        engine.set_weekly_availability(provider_id, require(data, 'windows'), actor_id(request))
    return {'provider_id': provider_id, 'weekly': engine.get_weekly_availability(provider_id)}


@api_endpoint('POST')
def generate_slots(request, provider_id):
    actor = actor_id(request)
    if actor != str(provider_id):
        raise PermissionDeniedError('You can only generate your own slots.')
    data = json_body(request)
    slots = engine.generate_time_slots(
        provider_id,
        as_date(require(data, 'start_date'), 'start_date'),
        as_date(require(data, 'end_date'), 'end_date'),
        require(data, 'slot_duration_minutes'),
        service_id=data.get('service_id'),
    )
    return {'created': len(slots)}, 201


@api_endpoint('GET')
def available_slots(request, provider_id):
    on_date = as_date(request.GET.get('date'), 'date')
    slots = engine.get_available_slots(provider_id, on_date, service_id=request.GET.get('service_id'))
    return {'date': on_date, 'slots': [engine.slot_summary(s) for s in slots]}


@api_endpoint('GET')
def weekly_schedule(request, provider_id):
    if actor_id(request) != str(provider_id):
        raise PermissionDeniedError('You can only view your own schedule.')
    week = request.GET.get('week')
    week_start = as_date(week, 'week') if week else timezone.localdate()
    return {'schedule': engine.get_weekly_schedule(provider_id, week_start)}


@api_endpoint('POST')
def book_slot(request, slot_id):
    data = json_body(request)
    booking = engine.book_time_slot(slot_id, require(data, 'booking_id'), actor_id(request))
    return {'booking': booking_summary(booking)}


@api_endpoint('POST')
def release_slot(request, slot_id):
    slot = TimeSlot.get(slot_id)
    if actor_id(request) != str(slot.provider_id):
        raise PermissionDeniedError('Only the provider can release a slot.')
    return {'slot': engine.slot_summary(engine.release_slot(slot_id))}
