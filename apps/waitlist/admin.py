from django.contrib import admin
from .models import WaitlistEntry


@admin.register(WaitlistEntry)
class WaitlistEntryAdmin(admin.ModelAdmin):
    list_display = ['user', 'service', 'preferred_date', 'priority', 'status', 'expires_at']
    list_filter = ['status']
    search_fields = ['user__name', 'service__title']
    readonly_fields = ['id', 'status', 'notified_at', 'expires_at', 'offered_slot', 'booking',
                       'created_at', 'updated_at']
