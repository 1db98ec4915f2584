"""
Waitlist JSON endpoints.

  GET  /waitlist/                          my live entries
  POST /waitlist/                          joinWaitlist
  POST /waitlist/<uuid>/leave/             leave
  POST /waitlist/<uuid>/priority/          update priority (provider)
  POST /waitlist/<uuid>/notify/            notifyWaitlistAvailability (provider)
  POST /waitlist/<uuid>/convert/           convertToBooking
  GET  /waitlist/services/<uuid>/          service queue (provider)
"""
from django.utils.dateparse import parse_time

from apps.bookings.engine import booking_summary
from apps.core.api import actor_id, api_endpoint, as_date, as_datetime, json_body, require
from apps.core.exceptions import InvalidRequestError
from apps.waitlist import engine
from apps.waitlist.engine import entry_summary


@api_endpoint('GET', 'POST')
def waitlists(request):
    actor = actor_id(request)
    if request.method == 'GET':
        return {'entries': engine.get_user_waitlists(actor)}

    data = json_body(request)
    preferred_time = data.get('preferred_time')
    if preferred_time:
        preferred_time = parse_time(str(preferred_time))
        if preferred_time is None:
            raise InvalidRequestError("'preferred_time' must be HH:MM.")
    alternatives = data.get('alternative_dates') or []
    if not isinstance(alternatives, list):
        raise InvalidRequestError("'alternative_dates' must be a list of dates.")
    entry = engine.join_waitlist(
        require(data, 'service_id'),
        actor,
        as_date(require(data, 'preferred_date'), 'preferred_date'),
        alternative_dates=[as_date(day, 'alternative_dates') for day in alternatives],
        priority=data.get('priority', 0),
        preferred_time=preferred_time or None,
        notes=data.get('notes', ''),
    )
    return {'entry': entry_summary(entry)}, 201


@api_endpoint('POST')
def leave(request, waitlist_id):
    return {'entry': entry_summary(engine.leave_waitlist(waitlist_id, actor_id(request)))}


@api_endpoint('POST')
def priority(request, waitlist_id):
    data = json_body(request)
    entry = engine.update_priority(waitlist_id, require(data, 'priority'), actor_id(request))
    return {'entry': entry_summary(entry)}


@api_endpoint('POST')
def notify(request, waitlist_id):
    data = json_body(request)
    entry = engine.notify_availability(
        waitlist_id,
        require(data, 'slot_id'),
        expires_in_hours=data.get('expires_in_hours'),
        actor_id=actor_id(request),
    )
    return {'entry': entry_summary(entry)}


@api_endpoint('POST')
def convert(request, waitlist_id):
    data = json_body(request)
    booking_date = data.get('booking_date')
    booking = engine.convert_to_booking(
        waitlist_id,
        as_datetime(booking_date, 'booking_date') if booking_date else None,
        actor_id(request),
    )
    return {'booking': booking_summary(booking)}, 201


@api_endpoint('GET')
def service_waitlist(request, service_id):
    return {'entries': engine.get_service_waitlist(service_id, actor_id(request))}
