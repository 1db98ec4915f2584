"""
Policy JSON endpoints.

  POST /policies/                                create a policy
  GET  /policies/templates/                      ready-made policy templates
  POST /policies/<uuid>/                         update (may create a new version)
  POST /policies/<uuid>/deactivate/              deactivate
  GET  /policies/services/<uuid>/                service + platform policies
  POST /policies/bookings/<uuid>/cancellation/   evaluateCancellation
  POST /policies/bookings/<uuid>/rescheduling/   evaluateRescheduling
"""
from apps.bookings.engine import get_booking
from apps.core.api import actor_id, api_endpoint, as_datetime, json_body, require
from apps.policies import engine
from apps.policies.engine import EDITABLE_FIELDS, policy_summary


@api_endpoint('POST')
def create_policy(request):
    data = json_body(request)
    policy = engine.create_policy(
        actor_id(request),
        require(data, 'name'),
        require(data, 'type'),
        penalty_type=data.get('penalty_type', 'none'),
        penalty_value=data.get('penalty_value', 0),
        hours_before_booking=data.get('hours_before_booking', 24),
        service_id=data.get('service_id'),
        description=data.get('description', ''),
        allow_exceptions=data.get('allow_exceptions', False),
        exception_conditions=data.get('exception_conditions'),
    )
    return {'policy': policy_summary(policy)}, 201


@api_endpoint('POST')
def update_policy(request, policy_id):
    data = json_body(request)
    changes = {key: value for key, value in data.items() if key in EDITABLE_FIELDS}
    policy = engine.update_policy(policy_id, actor_id(request), **changes)
    return {'policy': policy_summary(policy)}


@api_endpoint('POST')
def deactivate_policy(request, policy_id):
    return {'policy': policy_summary(engine.deactivate_policy(policy_id, actor_id(request)))}


@api_endpoint('GET')
def service_policies(request, service_id):
    return engine.get_service_policies(service_id)


@api_endpoint('GET')
def templates(request):
    return {'templates': engine.get_policy_templates()}


@api_endpoint('POST')
def evaluate_cancellation(request, booking_id):
    actor = actor_id(request)
    booking = get_booking(booking_id, actor)
    data = json_body(request)
    return engine.evaluate_cancellation_policy(
        booking.id, actor_role=booking.role_of(actor), reason=data.get('reason', ''),
    )


@api_endpoint('POST')
def evaluate_rescheduling(request, booking_id):
    booking = get_booking(booking_id, actor_id(request))
    data = json_body(request)
    new_date = as_datetime(require(data, 'new_date'), 'new_date')
    return engine.evaluate_rescheduling_policy(booking.id, new_date)
