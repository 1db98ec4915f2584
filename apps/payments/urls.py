"""
Payment URL patterns.

/payments/earnings/                              → earnings overview
/payments/withdrawals/                           → request a withdrawal
/payments/withdrawals/<uuid>/complete|fail/      → payout outcome
/payments/bookings/<uuid>/early-release/         → early release request / approval
/payments/bookings/<uuid>/dispute/               → dispute open / resolve
/payments/escrow/stats/                          → escrow statistics
/payments/webhook/                               → Razorpay webhook (CSRF-exempt)
"""
from django.urls import path
from . import views

app_name = 'payments'

urlpatterns = [
    # Earnings & withdrawals
    path('earnings/',                                  views.earnings,              name='earnings'),
    path('withdrawals/',                               views.withdrawals,           name='withdrawals'),
    path('withdrawals/<uuid:withdrawal_id>/complete/', views.complete_withdrawal,   name='withdrawal_complete'),
    path('withdrawals/<uuid:withdrawal_id>/fail/',     views.fail_withdrawal,       name='withdrawal_fail'),

    # Escrow
    path('bookings/<uuid:booking_id>/early-release/',         views.request_early_release, name='early_release'),
    path('bookings/<uuid:booking_id>/early-release/approve/', views.approve_early_release, name='early_release_approve'),
    path('bookings/<uuid:booking_id>/dispute/',               views.dispute,               name='dispute'),
    path('bookings/<uuid:booking_id>/dispute/resolve/',       views.resolve_dispute,       name='dispute_resolve'),
    path('escrow/stats/',                                     views.escrow_stats,          name='escrow_stats'),

    # Webhook (server-side, no CSRF)
    path('webhook/', views.razorpay_webhook, name='webhook'),
]
