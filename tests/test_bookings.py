"""
Tests for the booking lifecycle: creation, provider decisions, completion,
cancellation, listing and the periodic booking jobs.
"""
import uuid
from datetime import timedelta
from decimal import Decimal

import pytest

from apps.availability.models import TimeSlot
from apps.bookings.engine import (
    accept_booking,
    cancel_booking,
    cancel_stale_pending_bookings,
    complete_booking,
    create_booking,
    decline_booking,
    get_booking,
    list_bookings,
    send_booking_reminders,
    update_booking_status,
)
from apps.bookings.models import Booking, BookingStatus, BookingStatusLog, CancelledBy
from apps.core.exceptions import (
    InvalidRequestError,
    InvalidStateError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    PolicyViolationError,
    SlotConflictError,
)
from apps.notifications.models import Notification, NotificationType
from apps.payments.escrow import process_releases
from apps.payments.models import Payment, PaymentStatus
from apps.services.models import Service


@pytest.mark.django_db
class TestCreateBooking:

    def test_creates_pending_booking_with_payment(self, client_account, service, slot, now):
        booking = create_booking(client_account.id, slot.id, service.id, notes='Lower back', now=now)

        assert booking.status == BookingStatus.PENDING
        assert booking.provider_id == service.provider_id
        assert booking.scheduled_start == slot.start
        assert booking.total_price == Decimal('200.00')
        payment = Payment.objects.get(booking=booking)
        assert payment.status == PaymentStatus.PENDING
        assert payment.amount == Decimal('200.00')
        assert payment.service_fee == Decimal('20.00')
        assert payment.net_amount == Decimal('180.00')
        service.refresh_from_db()
        assert service.booking_count == 1
        log = BookingStatusLog.objects.get(booking=booking)
        assert log.from_status == '' and log.to_status == BookingStatus.PENDING

    def test_price_is_snapshotted(self, client_account, service, slot, now):
        booking = create_booking(client_account.id, slot.id, service.id, now=now)
        Service.objects.filter(id=service.id).update(price=Decimal('999.00'))
        booking.refresh_from_db()
        assert booking.total_price == Decimal('200.00')

    def test_taken_slot_conflicts_and_writes_nothing(self, client_account, other_client, service, slot, now):
        create_booking(client_account.id, slot.id, service.id, now=now)

        with pytest.raises(SlotConflictError):
            create_booking(other_client.id, slot.id, service.id, now=now)
        assert Booking.objects.count() == 1
        assert Payment.objects.count() == 1

    def test_past_slot_rejected(self, client_account, service, make_slot, now):
        past = make_slot(hours_ahead=-2)
        with pytest.raises(InvalidRequestError):
            create_booking(client_account.id, past.id, service.id, now=now)

    def test_own_service_rejected(self, provider, service, slot, now):
        with pytest.raises(InvalidRequestError):
            create_booking(provider.id, slot.id, service.id, now=now)

    def test_inactive_service_rejected(self, client_account, service, slot, now):
        Service.objects.filter(id=service.id).update(is_active=False)
        with pytest.raises(InvalidRequestError):
            create_booking(client_account.id, slot.id, service.id, now=now)
        slot.refresh_from_db()
        assert slot.is_booked is False

    def test_foreign_slot_rejected(self, client_account, service, make_slot, other_client, now):
        foreign = make_slot(owner=other_client)
        with pytest.raises(InvalidRequestError):
            create_booking(client_account.id, foreign.id, service.id, now=now)

    def test_unknown_service(self, client_account, slot, now):
        with pytest.raises(NotFoundError):
            create_booking(client_account.id, slot.id, uuid.uuid4(), now=now)

    def test_request_without_slot(self, client_account, service, now):
        start = now + timedelta(days=2)
        booking = create_booking(client_account.id, None, service.id, scheduled_start=start, now=now)
        assert booking.time_slot_id is None
        assert booking.scheduled_end == start + timedelta(minutes=60)

    def test_provider_notified_after_commit(self, client_account, service, slot, now,
                                            django_capture_on_commit_callbacks, mailoutbox):
        with django_capture_on_commit_callbacks(execute=True):
            create_booking(client_account.id, slot.id, service.id, now=now)

        note = Notification.objects.get(user=service.provider)
        assert note.type == NotificationType.BOOKING_REQUEST
        assert len(mailoutbox) == 1
        assert mailoutbox[0].to == ['asha@example.com']


@pytest.mark.django_db
class TestProviderDecisions:

    def test_accept(self, make_booking):
        booking = make_booking()
        accept_booking(booking.id, booking.provider_id)

        booking.refresh_from_db()
        assert booking.status == BookingStatus.ACCEPTED
        assert booking.accepted_at is not None
        assert list(booking.status_logs.values_list('to_status', flat=True)) == ['pending', 'accepted']

    def test_only_provider_accepts(self, make_booking):
        booking = make_booking()
        with pytest.raises(PermissionDeniedError):
            accept_booking(booking.id, booking.client_id)

    def test_accept_twice_fails(self, make_booking):
        booking = make_booking()
        accept_booking(booking.id, booking.provider_id)
        with pytest.raises(InvalidTransitionError):
            accept_booking(booking.id, booking.provider_id)

    def test_stale_copy_loses_the_race(self, make_booking):
        booking = make_booking()
        stale = Booking.objects.get(id=booking.id)
        accept_booking(booking.id, booking.provider_id)

        # Second caller still believes the booking is pending
        with pytest.raises(InvalidTransitionError):
            stale.decline(changed_by=booking.provider_id)
        booking.refresh_from_db()
        assert booking.status == BookingStatus.ACCEPTED

    def test_decline_frees_slot_and_refunds(self, paid_booking):
        booking = paid_booking(accept=False)
        slot_id = TimeSlot.objects.get(booking=booking).id

        decline_booking(booking.id, booking.provider_id, reason='Fully booked')

        booking.refresh_from_db()
        assert booking.status == BookingStatus.DECLINED
        assert TimeSlot.objects.get(id=slot_id).is_booked is False
        payment = Payment.objects.get(booking=booking)
        assert payment.status == PaymentStatus.REFUNDED
        assert payment.refund_amount == Decimal('200.00')

    def test_declined_is_terminal(self, make_booking):
        booking = make_booking()
        decline_booking(booking.id, booking.provider_id)
        with pytest.raises(InvalidTransitionError):
            accept_booking(booking.id, booking.provider_id)


@pytest.mark.django_db
class TestCompleteBooking:

    def test_complete_after_end(self, paid_booking):
        booking = paid_booking()
        complete_booking(booking.id, booking.provider_id, now=booking.scheduled_end)

        booking.refresh_from_db()
        assert booking.status == BookingStatus.COMPLETED
        assert booking.completed_at is not None

    def test_complete_before_end_rejected(self, paid_booking, now):
        booking = paid_booking()
        with pytest.raises(InvalidStateError):
            complete_booking(booking.id, booking.provider_id, now=now)

    def test_pending_can_not_complete(self, make_booking):
        booking = make_booking()
        with pytest.raises(InvalidTransitionError):
            complete_booking(booking.id, booking.provider_id, now=booking.scheduled_end)


@pytest.mark.django_db
class TestCancelBooking:

    def test_client_cancels_early_for_free(self, paid_booking, now):
        booking = paid_booking(hours_ahead=72)
        cancel_booking(booking.id, booking.client_id, reason='Travel', now=now)

        booking.refresh_from_db()
        assert booking.status == BookingStatus.CANCELLED
        assert booking.cancelled_by == CancelledBy.CLIENT
        assert booking.penalty_amount == Decimal('0.00')
        payment = Payment.objects.get(booking=booking)
        assert payment.status == PaymentStatus.REFUNDED
        assert payment.refund_amount == Decimal('200.00')

    def test_late_client_cancel_without_policy_denied(self, paid_booking, now):
        booking = paid_booking(hours_ahead=5)

        with pytest.raises(PolicyViolationError) as excinfo:
            cancel_booking(booking.id, booking.client_id, now=now)

        assert excinfo.value.verdict['allowed'] is False
        booking.refresh_from_db()
        assert booking.status == BookingStatus.ACCEPTED
        assert TimeSlot.objects.get(booking=booking).is_booked

    def test_provider_cancels_any_time(self, paid_booking, now):
        booking = paid_booking(hours_ahead=2)
        cancel_booking(booking.id, booking.provider_id, reason='Sick', now=now)

        booking.refresh_from_db()
        assert booking.cancelled_by == CancelledBy.PROVIDER
        assert Payment.objects.get(booking=booking).refund_amount == Decimal('200.00')

    def test_cancel_after_escrow_release_refused(self, paid_booking, provider, now):
        booking = paid_booking(hours_ahead=20 * 24)
        assert process_releases(now=now + timedelta(days=15))['released'] == 1

        with pytest.raises(InvalidStateError):
            cancel_booking(booking.id, booking.client_id, now=now + timedelta(days=16))

        booking.refresh_from_db()
        assert booking.status == BookingStatus.ACCEPTED
        assert TimeSlot.objects.get(booking=booking).is_booked
        payment = Payment.objects.get(booking=booking)
        assert payment.status == PaymentStatus.PAID
        assert payment.refund_amount == Decimal('0.00')
        provider.refresh_from_db()
        assert provider.account_balance == Decimal('180.00')

    def test_stranger_can_not_cancel(self, make_booking, other_client, now):
        booking = make_booking()
        with pytest.raises(PermissionDeniedError):
            cancel_booking(booking.id, other_client.id, now=now)

    def test_cancel_twice_fails(self, make_booking, now):
        booking = make_booking()
        cancel_booking(booking.id, booking.client_id, now=now)
        with pytest.raises(InvalidTransitionError):
            cancel_booking(booking.id, booking.client_id, now=now)

    def test_unpaid_booking_cancels_without_refund(self, make_booking, now):
        booking = make_booking()
        cancel_booking(booking.id, booking.client_id, now=now)
        assert Payment.objects.get(booking=booking).status == PaymentStatus.PENDING

    def test_counterpart_notified(self, make_booking, now, django_capture_on_commit_callbacks):
        booking = make_booking()
        with django_capture_on_commit_callbacks(execute=True):
            cancel_booking(booking.id, booking.client_id, now=now)

        assert Notification.objects.filter(
            user_id=booking.provider_id, type=NotificationType.BOOKING_CANCELLED,
        ).count() == 1
        assert not Notification.objects.filter(
            user_id=booking.client_id, type=NotificationType.BOOKING_CANCELLED,
        ).exists()


@pytest.mark.django_db
class TestUpdateBookingStatus:

    def test_dispatches_to_transition(self, make_booking):
        booking = make_booking()
        result = update_booking_status(booking.id, 'accepted', booking.provider_id)
        assert result.status == BookingStatus.ACCEPTED

    def test_unknown_status(self, make_booking):
        booking = make_booking()
        with pytest.raises(InvalidRequestError):
            update_booking_status(booking.id, 'paused', booking.provider_id)


@pytest.mark.django_db
class TestQueries:

    def test_list_paginates_with_cursor(self, make_booking, client_account):
        created = [make_booking(hours_ahead=72 + i) for i in range(5)]

        first = list_bookings(client_account.id, 'client', limit=2)
        second = list_bookings(client_account.id, 'client', limit=2, cursor=first['next_cursor'])
        third = list_bookings(client_account.id, 'client', limit=2, cursor=second['next_cursor'])

        seen = [r['id'] for page in (first, second, third) for r in page['results']]
        assert sorted(seen) == sorted(b.id for b in created)
        assert len(set(seen)) == 5
        assert third['next_cursor'] is None

    def test_list_by_provider_and_status(self, make_booking, provider):
        accepted = make_booking()
        make_booking(hours_ahead=80)
        accept_booking(accepted.id, provider.id)

        page = list_bookings(provider.id, 'provider', status='accepted')
        assert [r['id'] for r in page['results']] == [accepted.id]

    def test_list_rejects_bad_cursor(self, client_account):
        with pytest.raises(InvalidRequestError):
            list_bookings(client_account.id, 'client', cursor='not-a-cursor')

    def test_get_booking_requires_participant(self, make_booking, other_client):
        booking = make_booking()
        assert get_booking(booking.id, booking.client_id).id == booking.id
        with pytest.raises(PermissionDeniedError):
            get_booking(booking.id, other_client.id)


@pytest.mark.django_db
class TestPeriodicJobs:

    def test_stale_pending_bookings_cancelled(self, make_booking, now):
        booking = make_booking()
        report = cancel_stale_pending_bookings(now=now + timedelta(hours=25))

        assert report['cancelled'] == 1
        booking.refresh_from_db()
        assert booking.status == BookingStatus.CANCELLED
        assert booking.cancelled_by == CancelledBy.SYSTEM

    def test_fresh_pending_bookings_kept(self, make_booking, now):
        make_booking()
        assert cancel_stale_pending_bookings(now=now + timedelta(hours=1))['cancelled'] == 0

    def test_reminders_sent_once(self, paid_booking, now, django_capture_on_commit_callbacks):
        booking = paid_booking(hours_ahead=72)
        day_before = booking.scheduled_start - timedelta(days=1)

        with django_capture_on_commit_callbacks(execute=True):
            first = send_booking_reminders(now=day_before)
        second = send_booking_reminders(now=day_before)

        assert first['sent'] == 1
        assert second['sent'] == 0
        assert Notification.objects.filter(type=NotificationType.BOOKING_REMINDER).count() == 2
