"""
Tests for the escrow ledger: holding, release, refunds, disputes and withdrawals.
"""
from datetime import timedelta
from decimal import Decimal

import pytest

from apps.accounts.models import Account, BankAccount
from apps.bookings.engine import complete_booking
from apps.core.exceptions import (
    InsufficientBalanceError,
    InvalidRequestError,
    InvalidStateError,
    PermissionDeniedError,
)
from apps.notifications.models import Notification, NotificationType
from apps.payments import escrow
from apps.payments.models import Payment, PaymentStatus, Withdrawal, WithdrawalStatus


def _completed(paid_booking):
    booking = paid_booking(hours_ahead=3)
    complete_booking(booking.id, booking.provider_id, now=booking.scheduled_end)
    booking.refresh_from_db()
    return booking


@pytest.mark.django_db
class TestFees:

    @pytest.mark.parametrize('amount, fee, net', [
        ('200.00', '20.00', '180.00'),
        ('99.99', '10.00', '89.99'),
        ('0.05', '0.01', '0.04'),
    ])
    def test_calculate_fees(self, amount, fee, net):
        assert escrow.calculate_fees(amount) == (Decimal(fee), Decimal(net))


@pytest.mark.django_db
class TestOpenEscrow:

    def test_open_sets_release_date(self, make_booking, now):
        booking = make_booking()
        payment = escrow.open_escrow(booking.id, now=now)

        assert payment.status == PaymentStatus.PAID
        assert payment.paid_at == now
        assert payment.escrow_release_date == now + timedelta(days=15)

    def test_open_is_idempotent(self, make_booking, now):
        booking = make_booking()
        escrow.open_escrow(booking.id, now=now)
        again = escrow.open_escrow(booking.id, now=now + timedelta(days=3))
        assert again.escrow_release_date == now + timedelta(days=15)

    def test_charged_amount_is_held(self, make_booking, now):
        booking = make_booking()
        payment = escrow.open_escrow(booking.id, amount='150.00', now=now)
        assert payment.amount == Decimal('150.00')
        assert payment.net_amount == Decimal('135.00')

    def test_cancelled_booking_can_not_be_paid(self, make_booking, now):
        from apps.bookings.engine import cancel_booking
        booking = make_booking()
        cancel_booking(booking.id, booking.client_id, now=now)
        with pytest.raises(InvalidStateError):
            escrow.open_escrow(booking.id, now=now)


@pytest.mark.django_db
class TestRelease:

    def test_fifteen_day_scenario(self, paid_booking, now, provider, django_capture_on_commit_callbacks):
        """Paid at T, released by the first batch at or after T + 15 days, exactly once."""
        booking = paid_booking(hours_ahead=3)
        complete_booking(booking.id, booking.provider_id, now=booking.scheduled_end)

        early = escrow.process_releases(now=now + timedelta(days=15) - timedelta(seconds=1))
        assert early['released'] == 0

        with django_capture_on_commit_callbacks(execute=True):
            report = escrow.process_releases(now=now + timedelta(days=15))
        assert report['released'] == 1
        assert report['total_amount'] == Decimal('180.00')

        provider.refresh_from_db()
        assert provider.account_balance == Decimal('180.00')
        assert Notification.objects.filter(user=provider, type=NotificationType.ESCROW_RELEASED).count() == 1

    def test_second_run_is_noop(self, paid_booking, now, provider):
        paid_booking(hours_ahead=3)
        later = now + timedelta(days=16)

        escrow.process_releases(now=later)
        report = escrow.process_releases(now=later)

        assert report['released'] == 0
        provider.refresh_from_db()
        assert provider.account_balance == Decimal('180.00')

    def test_stale_record_is_credited_once(self, paid_booking, now, provider):
        """A record fetched by two overlapping runs is only credited by the first."""
        paid_booking(hours_ahead=3)
        later = now + timedelta(days=16)
        fetched = escrow.get_payments_ready_for_release(later)

        escrow.process_releases(now=later)
        assert escrow._release_one(fetched[0], later) is False

        provider.refresh_from_db()
        assert provider.account_balance == Decimal('180.00')

    def test_disputed_record_is_skipped(self, paid_booking, now, provider):
        booking = paid_booking(hours_ahead=3)
        escrow.dispute_payment(booking.id, 'Service not delivered', booking.client_id, now=now)

        assert escrow.process_releases(now=now + timedelta(days=30))['released'] == 0
        provider.refresh_from_db()
        assert provider.account_balance == Decimal('0.00')

    def test_partially_refunded_releases_remainder(self, paid_booking, now, provider):
        booking = paid_booking(hours_ahead=3)
        escrow.apply_refund(booking.id, '100.00', partial=True, now=now)

        escrow.process_releases(now=now + timedelta(days=15))

        provider.refresh_from_db()
        assert provider.account_balance == Decimal('90.00')

    def test_released_funds_are_not_refundable(self, paid_booking, now):
        booking = paid_booking(hours_ahead=3)
        escrow.process_releases(now=now + timedelta(days=15))
        with pytest.raises(InvalidStateError):
            escrow.apply_refund(booking.id, now=now + timedelta(days=16))


@pytest.mark.django_db
class TestEarlyRelease:

    def test_request_and_approve(self, paid_booking, now, platform_admin, provider,
                                 django_capture_on_commit_callbacks):
        booking = _completed(paid_booking)

        with django_capture_on_commit_callbacks(execute=True):
            escrow.request_early_release(booking.id, 'Regular client, job done', provider.id, now=now)
        assert Notification.objects.filter(
            user=platform_admin, type=NotificationType.EARLY_RELEASE_REQUESTED,
        ).exists()

        payment = escrow.approve_early_release(booking.id, now=now + timedelta(hours=1))
        assert payment.escrow_release_date == now + timedelta(hours=1)
        assert escrow.process_releases(now=now + timedelta(hours=1))['released'] == 1

    def test_requires_completed_booking(self, paid_booking, provider, now):
        booking = paid_booking(hours_ahead=3)
        with pytest.raises(InvalidStateError):
            escrow.request_early_release(booking.id, 'Please', provider.id, now=now)

    def test_requires_justification(self, paid_booking, provider, now):
        booking = _completed(paid_booking)
        with pytest.raises(InvalidRequestError):
            escrow.request_early_release(booking.id, '  ', provider.id, now=now)

    def test_only_provider_requests(self, paid_booking, now):
        booking = _completed(paid_booking)
        with pytest.raises(PermissionDeniedError):
            escrow.request_early_release(booking.id, 'Please', booking.client_id, now=now)

    def test_approve_without_request(self, paid_booking, now):
        booking = _completed(paid_booking)
        with pytest.raises(InvalidStateError):
            escrow.approve_early_release(booking.id, now=now)


@pytest.mark.django_db
class TestDisputes:

    def test_only_client_disputes(self, paid_booking, now):
        booking = paid_booking(hours_ahead=3)
        with pytest.raises(PermissionDeniedError):
            escrow.dispute_payment(booking.id, 'No', booking.provider_id, now=now)

    def test_dispute_twice_fails(self, paid_booking, now):
        booking = paid_booking(hours_ahead=3)
        escrow.dispute_payment(booking.id, 'Late', booking.client_id, now=now)
        with pytest.raises(InvalidStateError):
            escrow.dispute_payment(booking.id, 'Late again', booking.client_id, now=now)

    def test_resolve_release(self, paid_booking, now, provider):
        booking = paid_booking(hours_ahead=3)
        escrow.dispute_payment(booking.id, 'Late', booking.client_id, now=now)
        escrow.resolve_dispute(booking.id, 'release', now=now)

        assert escrow.process_releases(now=now + timedelta(days=15))['released'] == 1

    def test_resolve_refund(self, paid_booking, now):
        booking = paid_booking(hours_ahead=3)
        escrow.dispute_payment(booking.id, 'Never showed up', booking.client_id, now=now)
        payment = escrow.resolve_dispute(booking.id, 'refund', now=now)

        assert payment.status == PaymentStatus.REFUNDED
        assert payment.refund_amount == Decimal('200.00')
        assert payment.disputed_at is None

    def test_resolve_unknown_outcome(self, paid_booking, now):
        booking = paid_booking(hours_ahead=3)
        escrow.dispute_payment(booking.id, 'Late', booking.client_id, now=now)
        with pytest.raises(InvalidRequestError):
            escrow.resolve_dispute(booking.id, 'split', now=now)


@pytest.mark.django_db
class TestRefunds:

    def test_full_refund_must_cover_remainder(self, paid_booking, now):
        booking = paid_booking(hours_ahead=3)
        with pytest.raises(InvalidRequestError):
            escrow.apply_refund(booking.id, '50.00', now=now)

    def test_refund_over_amount_rejected(self, paid_booking, now):
        booking = paid_booking(hours_ahead=3)
        with pytest.raises(InvalidRequestError):
            escrow.apply_refund(booking.id, '250.00', partial=True, now=now)

    def test_gateway_refund_uses_minor_units(self, paid_booking, now, settings, monkeypatch,
                                             django_capture_on_commit_callbacks):
        settings.RAZORPAY_KEY_ID = 'rzp_test_key'
        settings.RAZORPAY_KEY_SECRET = 'secret'
        calls = []

        class FakePayments:
            def refund(self, payment_id, data):
                calls.append((payment_id, data))
                return {'id': 'rfnd_1'}

        class FakeClient:
            payment = FakePayments()

        monkeypatch.setattr('apps.payments.gateway._razorpay_client', lambda: FakeClient())
        booking = paid_booking(hours_ahead=3)

        with django_capture_on_commit_callbacks(execute=True):
            escrow.apply_refund(booking.id, '75.50', partial=True, now=now)

        payment = Payment.objects.get(booking=booking)
        assert calls == [(payment.payment_gateway_id, {'amount': 7550})]

    def test_record_gateway_refund_is_absolute(self, paid_booking, now):
        booking = paid_booking(hours_ahead=3)
        escrow.record_gateway_refund(booking.id, '80.00', now=now)
        escrow.record_gateway_refund(booking.id, '80.00', now=now)
        escrow.record_gateway_refund(booking.id, '50.00', now=now)

        payment = Payment.objects.get(booking=booking)
        assert payment.refund_amount == Decimal('80.00')
        assert payment.status == PaymentStatus.PARTIALLY_REFUNDED
        assert payment.net_amount == Decimal('108.00')


@pytest.mark.django_db
class TestWithdrawals:

    @pytest.fixture
    def funded(self, provider):
        Account.objects.filter(id=provider.id).update(account_balance=Decimal('500.00'))
        provider.refresh_from_db()
        return provider

    def test_withdraw_entire_balance(self, funded):
        withdrawal = escrow.request_withdrawal(funded.id, '500.00')

        funded.refresh_from_db()
        assert funded.account_balance == Decimal('0.00')
        assert withdrawal.status == WithdrawalStatus.PENDING

    def test_one_cent_over_balance(self, funded):
        with pytest.raises(InsufficientBalanceError):
            escrow.request_withdrawal(funded.id, '500.01')
        funded.refresh_from_db()
        assert funded.account_balance == Decimal('500.00')
        assert not Withdrawal.objects.exists()

    def test_below_minimum(self, funded):
        with pytest.raises(InvalidRequestError):
            escrow.request_withdrawal(funded.id, '9.99')

    def test_above_maximum_with_enough_balance(self, provider):
        Account.objects.filter(id=provider.id).update(account_balance=Decimal('20000.00'))
        with pytest.raises(InvalidRequestError):
            escrow.request_withdrawal(provider.id, '10000.01')

    def test_one_cent_over_balance_at_maximum(self, provider):
        Account.objects.filter(id=provider.id).update(account_balance=Decimal('10000.00'))
        with pytest.raises(InsufficientBalanceError):
            escrow.request_withdrawal(provider.id, '10000.01')
        provider.refresh_from_db()
        assert provider.account_balance == Decimal('10000.00')

    @pytest.mark.parametrize('amount', ['NaN', 'Infinity', '-Infinity', 'sNaN'])
    def test_non_finite_amounts_rejected(self, funded, amount):
        with pytest.raises(InvalidRequestError):
            escrow.request_withdrawal(funded.id, amount)
        funded.refresh_from_db()
        assert funded.account_balance == Decimal('500.00')
        assert not Withdrawal.objects.exists()

    def test_sequential_requests_never_overdraw(self, funded):
        escrow.request_withdrawal(funded.id, '300.00')
        with pytest.raises(InsufficientBalanceError):
            escrow.request_withdrawal(funded.id, '300.00')
        funded.refresh_from_db()
        assert funded.account_balance == Decimal('200.00')

    def test_primary_bank_account_used(self, funded):
        bank = BankAccount.objects.create(
            account=funded, bank_name='State Bank', account_number_last4='4321', is_primary=True,
        )
        assert escrow.request_withdrawal(funded.id, '100.00').bank_account_id == bank.id

    def test_failed_withdrawal_is_credited_back(self, funded):
        withdrawal = escrow.request_withdrawal(funded.id, '200.00')
        escrow.fail_withdrawal(withdrawal.id, 'Invalid IFSC')

        funded.refresh_from_db()
        assert funded.account_balance == Decimal('500.00')
        with pytest.raises(InvalidStateError):
            escrow.complete_withdrawal(withdrawal.id)

    def test_earnings_overview(self, paid_booking, now, provider):
        paid_booking(hours_ahead=3)
        paid_booking(hours_ahead=5)
        escrow.process_releases(now=now + timedelta(days=15))
        # The second booking was paid at the same `now`, so both are released
        withdrawal = escrow.request_withdrawal(provider.id, '100.00')
        escrow.complete_withdrawal(withdrawal.id)

        overview = escrow.get_earnings_overview(provider.id)
        assert overview['total_earnings'] == Decimal('360.00')
        assert overview['available_balance'] == Decimal('260.00')
        assert overview['total_withdrawn'] == Decimal('100.00')
        assert overview['pending_escrow'] == Decimal('0.00')


@pytest.mark.django_db
def test_escrow_stats(paid_booking, now):
    paid_booking(hours_ahead=3)
    disputed = paid_booking(hours_ahead=5)
    escrow.dispute_payment(disputed.id, 'Late', disputed.client_id, now=now)

    stats = escrow.get_escrow_stats(now=now + timedelta(days=15))

    assert stats['in_escrow']['count'] == 2
    assert stats['disputed']['count'] == 1
    assert stats['ready_for_release']['count'] == 1
    assert stats['by_status'] == {'paid': 2}
    assert stats['in_escrow']['amount'] == Decimal('400.00')
