"""
Tests for the JSON endpoints: identity header, error mapping and the main flows.
"""
import json
from datetime import timedelta

import pytest
from django.urls import reverse

from apps.bookings.models import Booking, BookingStatus


def _post(client, url, actor=None, body=None, **extra):
    if actor is not None:
        extra['HTTP_X_ACTOR_ID'] = str(actor)
    return client.post(url, data=json.dumps(body or {}), content_type='application/json', **extra)


def _get(client, url, actor=None, **params):
    extra = {'HTTP_X_ACTOR_ID': str(actor)} if actor is not None else {}
    return client.get(url, params, **extra)


@pytest.mark.django_db
class TestBookingEndpoints:

    def test_create_and_fetch(self, client, client_account, service, slot):
        response = _post(client, reverse('bookings:bookings'), client_account.id, {
            'service_id': str(service.id), 'time_slot_id': str(slot.id), 'notes': 'Hi',
        })
        assert response.status_code == 201
        booking_id = response.json()['booking']['id']

        detail = _get(client, reverse('bookings:detail', args=[booking_id]), client_account.id)
        assert detail.status_code == 200
        assert detail.json()['booking']['status'] == 'pending'
        assert detail.json()['booking']['payment']['status'] == 'pending'

    def test_missing_actor_header(self, client, service, slot):
        response = _post(client, reverse('bookings:bookings'), None, {'service_id': str(service.id)})
        assert response.status_code == 403
        assert response.json()['error'] == 'permission_denied'

    def test_slot_conflict_is_409(self, client, client_account, other_client, service, slot):
        body = {'service_id': str(service.id), 'time_slot_id': str(slot.id)}
        _post(client, reverse('bookings:bookings'), client_account.id, body)

        response = _post(client, reverse('bookings:bookings'), other_client.id, body)

        assert response.status_code == 409
        assert response.json() == {
            'error': 'slot_conflict',
            'message': 'This slot was just booked by another client. Please choose a different time.',
            'retryable': False,
        }

    def test_policy_violation_carries_verdict(self, client, paid_booking):
        booking = paid_booking(hours_ahead=5)
        response = _post(client, reverse('bookings:status', args=[booking.id]), booking.client_id,
                         {'status': 'cancelled'})

        assert response.status_code == 422
        assert response.json()['verdict']['allowed'] is False

    def test_accept_and_list(self, client, make_booking, provider):
        booking = make_booking()
        assert _post(client, reverse('bookings:accept', args=[booking.id]), provider.id).status_code == 200

        listing = _get(client, reverse('bookings:bookings'), provider.id, role='provider', status='accepted')
        assert [r['id'] for r in listing.json()['results']] == [str(booking.id)]
        assert Booking.objects.get(id=booking.id).status == BookingStatus.ACCEPTED

    def test_wrong_method(self, client, make_booking):
        booking = make_booking()
        assert client.get(reverse('bookings:accept', args=[booking.id])).status_code == 405


@pytest.mark.django_db
class TestAvailabilityEndpoints:

    def test_set_template_and_list_slots(self, client, provider, slot):
        weekly = client.put(
            reverse('availability:weekly', args=[provider.id]),
            data=json.dumps({'windows': [{'weekday': 0, 'start_time': '09:00', 'end_time': '12:00'}]}),
            content_type='application/json',
            HTTP_X_ACTOR_ID=str(provider.id),
        )
        assert weekly.status_code == 200
        assert weekly.json()['weekly']['0'][0]['start_time'] == '09:00'

        slots = _get(client, reverse('availability:slots', args=[provider.id]),
                     date=slot.start.date().isoformat())
        assert [s['id'] for s in slots.json()['slots']] == [str(slot.id)]

    def test_bad_date(self, client, provider):
        response = _get(client, reverse('availability:slots', args=[provider.id]), date='tomorrow')
        assert response.status_code == 400


@pytest.mark.django_db
class TestPaymentEndpoints:

    def test_withdrawal_insufficient_balance(self, client, provider):
        response = _post(client, reverse('payments:withdrawals'), provider.id, {'amount': '50.00'})
        assert response.status_code == 422
        assert response.json()['error'] == 'insufficient_balance'

    def test_withdrawal_nan_amount(self, client, provider):
        response = _post(client, reverse('payments:withdrawals'), provider.id, {'amount': 'NaN'})
        assert response.status_code == 400
        assert response.json()['error'] == 'invalid_request'

    def test_resolve_dispute_needs_platform_admin(self, client, paid_booking, platform_admin, now):
        booking = paid_booking(hours_ahead=3)
        _post(client, reverse('payments:dispute', args=[booking.id]), booking.client_id, {'reason': 'Late'})

        denied = _post(client, reverse('payments:dispute_resolve', args=[booking.id]),
                       booking.provider_id, {'outcome': 'release'})
        allowed = _post(client, reverse('payments:dispute_resolve', args=[booking.id]),
                        platform_admin.id, {'outcome': 'release'})

        assert denied.status_code == 403
        assert allowed.status_code == 200
        assert allowed.json()['payment']['disputed'] is False

    def test_earnings(self, client, provider):
        response = _get(client, reverse('payments:earnings'), provider.id)
        assert response.json()['available_balance'] == '0.00'


@pytest.mark.django_db
class TestWaitlistEndpoints:

    def test_join_and_list(self, client, client_account, service, slot):
        response = _post(client, reverse('waitlist:waitlists'), client_account.id, {
            'service_id': str(service.id), 'preferred_date': slot.start.date().isoformat(),
            'preferred_time': '10:00',
        })
        assert response.status_code == 201

        mine = _get(client, reverse('waitlist:waitlists'), client_account.id)
        assert len(mine.json()['entries']) == 1

        again = _post(client, reverse('waitlist:waitlists'), client_account.id, {
            'service_id': str(service.id), 'preferred_date': slot.start.date().isoformat(),
        })
        assert again.status_code == 409


@pytest.mark.django_db
class TestPolicyEndpoints:

    def test_create_and_evaluate(self, client, provider, service, make_booking):
        created = _post(client, reverse('policies:create'), provider.id, {
            'service_id': str(service.id), 'name': 'Standard', 'type': 'cancellation',
            'penalty_type': 'percentage', 'penalty_value': '50', 'hours_before_booking': 24,
        })
        assert created.status_code == 201

        booking = make_booking(hours_ahead=5)
        verdict = _post(client, reverse('policies:cancellation', args=[booking.id]), booking.client_id)
        assert verdict.json()['penalty_amount'] == '100.00'

    def test_templates(self, client):
        assert len(client.get(reverse('policies:templates')).json()['templates']) == 4


@pytest.mark.django_db
class TestCronEndpoint:

    def test_requires_secret(self, client):
        assert client.post(reverse('core:cron', args=['escrow'])).status_code == 403

    def test_runs_task(self, client):
        response = client.post(
            reverse('core:cron', args=['notifications']),
            HTTP_AUTHORIZATION='Bearer test-cron-secret',
        )
        assert response.status_code == 200
        assert response.json()['results'] == {'cleanup_old_notifications': 0}

    def test_deadline_header_validated(self, client):
        response = client.post(
            reverse('core:cron', args=['notifications']),
            HTTP_AUTHORIZATION='Bearer test-cron-secret',
            HTTP_X_REQUEST_DEADLINE_MS='soon',
        )
        assert response.status_code == 400
