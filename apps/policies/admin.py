from django.contrib import admin
from .models import BookingPolicy, PolicyEvaluation


@admin.register(BookingPolicy)
class BookingPolicyAdmin(admin.ModelAdmin):
    list_display = ['name', 'type', 'service', 'hours_before_booking', 'penalty_type',
                    'penalty_value', 'is_active', 'version']
    list_filter = ['type', 'penalty_type', 'is_active']
    search_fields = ['name', 'service__title']
    readonly_fields = ['id', 'version', 'previous_version', 'created_at', 'updated_at']


@admin.register(PolicyEvaluation)
class PolicyEvaluationAdmin(admin.ModelAdmin):
    list_display = ['booking', 'kind', 'actor_role', 'allowed', 'penalty_amount', 'policy', 'evaluated_at']
    list_filter = ['kind', 'allowed']

    def has_change_permission(self, request, obj=None):
        return False
