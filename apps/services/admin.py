from django.contrib import admin
from .models import Service


@admin.register(Service)
class ServiceAdmin(admin.ModelAdmin):
    list_display = ['title', 'provider', 'duration_minutes', 'price', 'avg_rating', 'booking_count', 'is_active']
    list_filter = ['is_active']
    search_fields = ['title', 'provider__name']
    readonly_fields = ['id', 'avg_rating', 'booking_count', 'created_at', 'updated_at', 'deleted_at']
