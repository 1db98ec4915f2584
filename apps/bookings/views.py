"""
Booking JSON endpoints.

  POST /bookings/                          createBooking
  GET  /bookings/?role=&status=&cursor=    listBookings
  GET  /bookings/<uuid>/                   getBooking
  POST /bookings/<uuid>/accept/            acceptBooking
  POST /bookings/<uuid>/decline/           declineBooking
  POST /bookings/<uuid>/status/            updateBookingStatus
"""
import logging

from apps.bookings import engine
from apps.bookings.engine import booking_summary
from apps.core.api import actor_id, api_endpoint, as_datetime, json_body, require
from apps.payments.models import Payment

logger = logging.getLogger(__name__)


@api_endpoint('GET', 'POST')
def bookings(request):
    actor = actor_id(request)
    if request.method == 'POST':
        data = json_body(request)
        start = data.get('scheduled_start')
        booking = engine.create_booking(
            client_id=actor,
            time_slot_id=data.get('time_slot_id'),
            service_id=require(data, 'service_id'),
            notes=data.get('notes', ''),
            scheduled_start=as_datetime(start, 'scheduled_start') if start else None,
        )
        return {'booking': booking_summary(booking)}, 201

    return engine.list_bookings(
        actor,
        request.GET.get('role', 'client'),
        status=request.GET.get('status'),
        limit=request.GET.get('limit', 20),
        cursor=request.GET.get('cursor'),
    )


@api_endpoint('GET')
def booking_detail(request, booking_id):
    booking = engine.get_booking(booking_id, actor_id(request))
    body = booking_summary(booking)
    payment = Payment.objects.filter(booking_id=booking.id).first()
    if payment is not None:
        body['payment'] = {
            'status': payment.status,
            'amount': payment.amount,
            'refund_amount': payment.refund_amount,
            'escrow_release_date': payment.escrow_release_date,
            'released': payment.is_released,
        }
    return {'booking': body}


@api_endpoint('POST')
def accept(request, booking_id):
    booking = engine.accept_booking(booking_id, actor_id(request))
    return {'booking': booking_summary(booking)}


@api_endpoint('POST')
def decline(request, booking_id):
    data = json_body(request)
    booking = engine.decline_booking(booking_id, actor_id(request), reason=data.get('reason', ''))
    return {'booking': booking_summary(booking)}


@api_endpoint('POST')
def update_status(request, booking_id):
    data = json_body(request)
    booking = engine.update_booking_status(
        booking_id, require(data, 'status'), actor_id(request), reason=data.get('reason', ''),
    )
    return {'booking': booking_summary(booking)}
