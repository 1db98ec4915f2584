from django.contrib import admin
from .models import Booking, BookingStatusLog


class BookingStatusLogInline(admin.TabularInline):
    model = BookingStatusLog
    extra = 0
    readonly_fields = ['from_status', 'to_status', 'changed_by', 'reason', 'changed_at']
    can_delete = False


@admin.register(Booking)
class BookingAdmin(admin.ModelAdmin):
    list_display = [
        'short_id', 'client', 'provider', 'service',
        'scheduled_start', 'status', 'total_price', 'penalty_amount',
    ]
    list_filter = ['status', 'cancelled_by']
    search_fields = ['client__name', 'provider__name', 'service__title']
    readonly_fields = [
        'id', 'accepted_at', 'declined_at', 'completed_at', 'cancelled_at',
        'reminder_sent_at', 'created_at', 'updated_at', 'deleted_at',
    ]
    date_hierarchy = 'scheduled_start'
    inlines = [BookingStatusLogInline]
    fieldsets = (
        ('Booking', {'fields': ('id', 'service', 'client', 'provider', 'time_slot')}),
        ('Schedule', {'fields': ('scheduled_start', 'scheduled_end')}),
        ('Status', {'fields': ('status', 'total_price', 'penalty_amount', 'notes')}),
        ('Cancellation', {'fields': ('cancelled_by', 'cancellation_reason')}),
        ('Timeline', {'fields': ('accepted_at', 'declined_at', 'completed_at', 'cancelled_at', 'reminder_sent_at')}),
        ('Audit', {'fields': ('created_at', 'updated_at', 'deleted_at'), 'classes': ('collapse',)}),
    )

    def short_id(self, obj):
        return str(obj.id)[:8]
    short_id.short_description = 'ID'


@admin.register(BookingStatusLog)
class BookingStatusLogAdmin(admin.ModelAdmin):
    list_display = ['booking', 'from_status', 'to_status', 'changed_by', 'changed_at']
    readonly_fields = ['id', 'booking', 'from_status', 'to_status', 'changed_by', 'reason', 'changed_at']
    search_fields = ['booking__client__name', 'changed_by']
