"""
Tests for the availability engine: weekly templates, slot generation and the slot claim.
"""
import threading
from datetime import date, time, timedelta

import pytest
from django.db import connection
from django.utils import timezone

from apps.availability.engine import (
    book_time_slot,
    generate_time_slots,
    get_available_slots,
    get_weekly_availability,
    get_weekly_schedule,
    release_slot,
    reserve_slot,
    set_weekly_availability,
)
from apps.availability.models import TimeSlot, WeeklyAvailability
from apps.bookings.engine import cancel_booking, create_booking
from apps.bookings.models import Booking
from apps.core.exceptions import (
    ConflictError,
    InvalidRequestError,
    InvalidStateError,
    NotFoundError,
    PermissionDeniedError,
    SlotConflictError,
)


def _next_monday():
    today = timezone.localdate()
    return today + timedelta(days=7 - today.weekday())


MORNINGS = [
    {'weekday': 0, 'start_time': '09:00', 'end_time': '12:00'},
    {'weekday': 2, 'start_time': '09:00', 'end_time': '11:00'},
]


@pytest.mark.django_db
class TestWeeklyAvailability:

    def test_set_replaces_template(self, provider):
        set_weekly_availability(provider.id, MORNINGS, provider.id)
        set_weekly_availability(provider.id, MORNINGS[:1], provider.id)

        assert WeeklyAvailability.objects.filter(provider=provider).count() == 1
        weekly = get_weekly_availability(provider.id)
        assert weekly[0] == [{
            'id': weekly[0][0]['id'], 'start_time': '09:00', 'end_time': '12:00', 'is_active': True,
        }]
        assert weekly[2] == []

    def test_split_shifts_allowed(self, provider):
        set_weekly_availability(provider.id, [
            {'weekday': 1, 'start_time': '09:00', 'end_time': '12:00'},
            {'weekday': 1, 'start_time': '13:00', 'end_time': '17:00'},
        ], provider.id)
        assert len(get_weekly_availability(provider.id)[1]) == 2

    def test_overlapping_windows_rejected(self, provider):
        with pytest.raises(InvalidRequestError):
            set_weekly_availability(provider.id, [
                {'weekday': 1, 'start_time': '09:00', 'end_time': '12:00'},
                {'weekday': 1, 'start_time': '11:00', 'end_time': '14:00'},
            ], provider.id)
        assert not WeeklyAvailability.objects.exists()

    @pytest.mark.parametrize('window', [
        {'weekday': 7, 'start_time': '09:00', 'end_time': '10:00'},
        {'weekday': 1, 'start_time': '10:00', 'end_time': '09:00'},
        {'weekday': 1, 'start_time': '25:00', 'end_time': '26:00'},
    ])
    def test_invalid_window_rejected(self, provider, window):
        with pytest.raises(InvalidRequestError):
            set_weekly_availability(provider.id, [window], provider.id)

    def test_only_owner_can_set(self, provider, client_account):
        with pytest.raises(PermissionDeniedError):
            set_weekly_availability(provider.id, MORNINGS, client_account.id)

    def test_clients_can_not_set(self, client_account):
        with pytest.raises(PermissionDeniedError):
            set_weekly_availability(client_account.id, MORNINGS, client_account.id)


@pytest.mark.django_db
class TestGenerateTimeSlots:

    def test_generates_from_template(self, provider):
        set_weekly_availability(provider.id, MORNINGS, provider.id)
        monday = _next_monday()

        slots = generate_time_slots(provider.id, monday, monday + timedelta(days=6), 60)

        # Monday 09-12 gives 3 slots, Wednesday 09-11 gives 2
        assert len(slots) == 5
        starts = sorted(timezone.localtime(s.start) for s in TimeSlot.objects.filter(provider=provider))
        assert starts[0].date() == monday and starts[0].time() == time(9, 0)
        assert all(s.end - s.start == timedelta(minutes=60) for s in TimeSlot.objects.all())

    def test_partial_trailing_slot_is_dropped(self, provider):
        set_weekly_availability(provider.id, [{'weekday': 0, 'start_time': '09:00', 'end_time': '10:40'}], provider.id)
        monday = _next_monday()
        assert len(generate_time_slots(provider.id, monday, monday, 30)) == 3

    def test_second_run_conflicts(self, provider):
        set_weekly_availability(provider.id, MORNINGS, provider.id)
        monday = _next_monday()
        generate_time_slots(provider.id, monday, monday + timedelta(days=6), 60)

        with pytest.raises(ConflictError):
            generate_time_slots(provider.id, monday, monday + timedelta(days=6), 60)
        assert TimeSlot.objects.count() == 5

    @pytest.mark.parametrize('minutes', [14, 481, 'abc'])
    def test_duration_bounds(self, provider, minutes):
        monday = _next_monday()
        with pytest.raises(InvalidRequestError):
            generate_time_slots(provider.id, monday, monday, minutes)

    @pytest.mark.parametrize('minutes', [15, 480])
    def test_duration_bounds_inclusive(self, provider, minutes):
        set_weekly_availability(provider.id, [{'weekday': 0, 'start_time': '08:00', 'end_time': '16:00'}], provider.id)
        monday = _next_monday()
        assert generate_time_slots(provider.id, monday, monday, minutes)

    def test_end_before_start_rejected(self, provider):
        monday = _next_monday()
        with pytest.raises(InvalidRequestError):
            generate_time_slots(provider.id, monday, monday - timedelta(days=1), 60)

    def test_service_must_belong_to_provider(self, provider, client_account, service):
        client_account.is_professional = True
        client_account.save()
        monday = _next_monday()
        with pytest.raises(InvalidRequestError):
            generate_time_slots(client_account.id, monday, monday, 60, service_id=service.id)


@pytest.mark.django_db
class TestSlotClaim:

    def test_reserve_marks_slot(self, make_booking):
        booking = make_booking()
        slot = TimeSlot.objects.get(booking=booking)
        assert slot.is_booked

    def test_reserve_taken_slot_conflicts(self, make_booking):
        booking = make_booking()
        slot = TimeSlot.objects.get(booking=booking)
        with pytest.raises(SlotConflictError):
            reserve_slot(slot.id, booking)

    def test_reserve_unknown_slot(self, make_booking):
        import uuid
        with pytest.raises(NotFoundError):
            reserve_slot(uuid.uuid4(), make_booking())

    def test_release_requires_cancelled_holder(self, make_booking):
        booking = make_booking()
        slot = TimeSlot.objects.get(booking=booking)
        with pytest.raises(InvalidStateError):
            release_slot(slot.id)

    def test_release_free_slot_is_noop(self, slot):
        assert release_slot(slot.id).is_booked is False

    def test_cancel_frees_slot(self, make_booking, now):
        booking = make_booking()
        slot_id = TimeSlot.objects.get(booking=booking).id
        cancel_booking(booking.id, booking.client_id, now=now)

        slot = TimeSlot.objects.get(id=slot_id)
        assert slot.is_booked is False
        assert slot.booking_id is None

    def test_book_time_slot_attaches_slot(self, client_account, service, slot, now):
        booking = create_booking(
            client_account.id, None, service.id, scheduled_start=slot.start, now=now,
        )
        assert booking.time_slot_id is None

        book_time_slot(slot.id, booking.id, client_account.id)

        booking = Booking.objects.get(id=booking.id)
        slot.refresh_from_db()
        assert booking.time_slot_id == slot.id
        assert booking.scheduled_end == slot.end
        assert slot.is_booked and slot.booking_id == booking.id

    def test_book_time_slot_rejects_second_slot(self, make_booking, make_slot):
        booking = make_booking()
        with pytest.raises(ConflictError):
            book_time_slot(make_slot(hours_ahead=96).id, booking.id, booking.client_id)


@pytest.mark.django_db
class TestQueries:

    def test_available_slots_excludes_booked_and_past(self, provider, make_slot, make_booking, now):
        free = make_slot(hours_ahead=72)
        booked = make_booking(hours_ahead=73)
        day = timezone.localtime(free.start).date()

        ids = [s.id for s in get_available_slots(provider.id, day, now=now)]

        assert free.id in ids
        assert TimeSlot.objects.get(booking=booked).id not in ids

    def test_weekly_schedule_groups_by_day(self, provider, make_booking):
        booking = make_booking(hours_ahead=72)
        day = timezone.localtime(booking.scheduled_start).date()

        schedule = get_weekly_schedule(provider.id, day)

        assert len(schedule) == 7
        entries = schedule[day.isoformat()]
        assert entries[0]['booking']['id'] == booking.id
        assert entries[0]['booking']['status'] == 'pending'


@pytest.mark.postgres
@pytest.mark.skipif(connection.vendor == 'sqlite', reason='needs a database with row-level concurrency')
@pytest.mark.django_db(transaction=True)
def test_concurrent_claims_have_one_winner(client_account, other_client, service, slot, now):
    """Two clients race for one slot: exactly one booking, one SlotConflictError."""
    results = []
    barrier = threading.Barrier(2)

    def attempt(account_id):
        try:
            barrier.wait()
            create_booking(account_id, slot.id, service.id, now=now)
            results.append('ok')
        except SlotConflictError:
            results.append('conflict')
        finally:
            connection.close()

    threads = [threading.Thread(target=attempt, args=(a.id,)) for a in (client_account, other_client)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(results) == ['conflict', 'ok']
    assert Booking.objects.count() == 1
