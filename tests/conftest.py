"""
Pytest Configuration and Fixtures

Accounts, a service and slot factories shared by the engine tests.
"""
from datetime import timedelta
from decimal import Decimal

import pytest
from django.utils import timezone

from apps.accounts.models import Account
from apps.availability.models import TimeSlot
from apps.services.models import Service


@pytest.fixture
def now():
    """A fixed 'now' on the hour, so boundary arithmetic stays exact."""
    return timezone.now().replace(minute=0, second=0, microsecond=0)


@pytest.fixture
def provider(db):
    return Account.objects.create(name='Asha Provider', email='asha@example.com', is_professional=True)


@pytest.fixture
def client_account(db):
    return Account.objects.create(name='Ravi Client', email='ravi@example.com')


@pytest.fixture
def other_client(db):
    return Account.objects.create(name='Meera Client', email='meera@example.com')


@pytest.fixture
def platform_admin(db, settings):
    admin = Account.objects.create(name='Platform Admin', email='admin@example.com')
    settings.PLATFORM_ADMIN_ID = str(admin.id)
    settings.EARLY_RELEASE_REVIEWER_ID = str(admin.id)
    return admin


@pytest.fixture
def service(provider):
    return Service.objects.create(
        provider=provider,
        title='Deep Tissue Massage',
        duration_minutes=60,
        price=Decimal('200.00'),
        cancellation_hours=24,
        rescheduling_hours=24,
    )


@pytest.fixture
def make_slot(provider, now):
    """Factory: a free 60-minute slot starting `hours_ahead` hours from now."""
    def _make(hours_ahead=72, owner=None, service=None, minutes=60):
        start = now + timedelta(hours=hours_ahead)
        return TimeSlot.objects.create(
            provider=owner or provider,
            service=service,
            start=start,
            end=start + timedelta(minutes=minutes),
        )
    return _make


@pytest.fixture
def slot(make_slot):
    return make_slot()


@pytest.fixture
def make_booking(client_account, service, make_slot, now):
    """Factory: a pending booking on a fresh slot."""
    from apps.bookings.engine import create_booking

    def _make(hours_ahead=72, client=None):
        new_slot = make_slot(hours_ahead=hours_ahead)
        return create_booking((client or client_account).id, new_slot.id, service.id, now=now)
    return _make


@pytest.fixture
def paid_booking(make_booking, now):
    """Factory: a booking whose charge was confirmed (escrow open)."""
    from apps.payments.escrow import open_escrow

    def _make(hours_ahead=72, accept=True, **kwargs):
        from apps.bookings.engine import accept_booking

        booking = make_booking(hours_ahead=hours_ahead, **kwargs)
        open_escrow(booking.id, now=now, payment_gateway_id=f'pay_{str(booking.id)[:12]}')
        if accept:
            accept_booking(booking.id, booking.provider_id)
        booking.refresh_from_db()
        return booking
    return _make
