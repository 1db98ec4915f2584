from django.contrib import admin
from .models import WeeklyAvailability, TimeSlot


@admin.register(WeeklyAvailability)
class WeeklyAvailabilityAdmin(admin.ModelAdmin):
    list_display = ['provider', 'weekday', 'start_time', 'end_time', 'is_active']
    list_filter = ['weekday', 'is_active']
    search_fields = ['provider__name']


@admin.register(TimeSlot)
class TimeSlotAdmin(admin.ModelAdmin):
    list_display = ['provider', 'service', 'start', 'end', 'is_booked', 'booking']
    list_filter = ['is_booked']
    search_fields = ['provider__name']
    # The claim is owned by the availability engine; never edit it by hand
    readonly_fields = ['id', 'is_booked', 'booking', 'created_at', 'updated_at']
