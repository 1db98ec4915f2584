from apps.core.api import actor_id, api_endpoint, json_body, require
from apps.reviews.engine import leave_review


@api_endpoint('POST')
def review_booking(request, booking_id):
    data = json_body(request)
    review = leave_review(booking_id, actor_id(request), require(data, 'rating'), data.get('comment', ''))
    return {'review': {
        'id': review.id,
        'booking_id': review.booking_id,
        'rating': review.rating,
        'comment': review.comment,
    }}, 201
