from django.contrib import admin
from .models import Payment, GatewayEvent, Withdrawal


@admin.register(Payment)
class PaymentAdmin(admin.ModelAdmin):
    list_display = [
        'booking', 'amount', 'net_amount', 'currency', 'status',
        'escrow_release_date', 'released_at', 'disputed_at',
    ]
    list_filter = ['status', 'currency']
    search_fields = ['payment_gateway_id', 'booking__client__name', 'booking__provider__name']
    readonly_fields = [
        'id', 'payment_gateway_id', 'paid_at', 'released_at', 'refunded_at',
        'created_at', 'updated_at',
    ]
    fieldsets = (
        ('Payment', {'fields': ('id', 'booking', 'payment_gateway_id', 'amount', 'currency', 'status', 'paid_at')}),
        ('Split', {'fields': ('service_fee', 'net_amount', 'refund_amount', 'refunded_at')}),
        ('Escrow', {'fields': ('escrow_release_date', 'released_at', 'early_release_requested_at', 'early_release_reason')}),
        ('Dispute', {'fields': ('disputed_at', 'dispute_reason')}),
        ('Audit', {'fields': ('created_at', 'updated_at'), 'classes': ('collapse',)}),
    )


@admin.register(GatewayEvent)
class GatewayEventAdmin(admin.ModelAdmin):
    list_display = ['event_id', 'kind', 'charge_id', 'processed_at']
    list_filter = ['kind']
    search_fields = ['event_id', 'charge_id']
    readonly_fields = ['id', 'event_id', 'kind', 'charge_id', 'payload', 'processed_at']


@admin.register(Withdrawal)
class WithdrawalAdmin(admin.ModelAdmin):
    list_display = ['account', 'amount', 'status', 'processed_at', 'created_at']
    list_filter = ['status']
    search_fields = ['account__name']
    readonly_fields = ['id', 'processed_at', 'created_at', 'updated_at']
