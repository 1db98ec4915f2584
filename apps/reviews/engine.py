"""
Reviews & ratings.

Public API:
  leave_review(booking_id, actor_id, rating, comment='')
  update_service_ratings()
"""
import logging
from decimal import Decimal, ROUND_HALF_UP

from django.db import IntegrityError, transaction
from django.db.models import Avg

from apps.bookings.models import Booking, BookingStatus
from apps.core.exceptions import (
    ConflictError,
    InvalidRequestError,
    InvalidStateError,
    PermissionDeniedError,
)
from apps.reviews.models import Review
from apps.services.models import Service

logger = logging.getLogger(__name__)


def leave_review(booking_id, actor_id, rating, comment='') -> Review:
    booking = Booking.get(booking_id)
    if str(actor_id) != str(booking.client_id):
        raise PermissionDeniedError('Only the client can review this booking.')
    if booking.status != BookingStatus.COMPLETED:
        raise InvalidStateError('Only completed bookings can be reviewed.')
    try:
        rating = int(rating)
    except (TypeError, ValueError):
        raise InvalidRequestError('rating must be a whole number from 1 to 5.')
    if not 1 <= rating <= 5:
        raise InvalidRequestError('rating must be a whole number from 1 to 5.')

    try:
        with transaction.atomic():
            review = Review.objects.create(
                booking=booking,
                service_id=booking.service_id,
                client_id=booking.client_id,
                rating=rating,
                comment=comment or '',
            )
    except IntegrityError:
        raise ConflictError('This booking has already been reviewed.')

    logger.info('Review %s (%d★) left for booking %s', review.id, rating, booking.id)
    return review


def update_service_ratings() -> dict:
    """Periodic: recompute avg_rating for every service from its published reviews."""
    averages = dict(
        Review.objects
        .filter(is_published=True)
        .order_by()
        .values('service_id')
        .annotate(avg=Avg('rating'))
        .values_list('service_id', 'avg')
    )
    updated = 0
    for service in Service.objects.all().only('id', 'avg_rating'):
        avg = averages.get(service.id)
        new_rating = None
        if avg is not None:
            new_rating = Decimal(str(avg)).quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)
        if new_rating != service.avg_rating:
            Service.objects.filter(id=service.id).update(avg_rating=new_rating)
            updated += 1

    logger.info('Service ratings recomputed: %d service(s) changed', updated)
    return {'updated': updated, 'rated_services': len(averages)}
