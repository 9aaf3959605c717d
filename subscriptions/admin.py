# subscriptions/admin.py
"""
Admin configuration for subscriptions app.
"""

from django.contrib import admin
from django.utils.html import format_html

from subscriptions.models import SubscriptionEvent, UsageMonthlySnapshot, UserSubscription
from subscriptions.tiers import RESOURCE_FIELDS, UNLIMITED, get_limit


# ==============================================================================
# SUBSCRIPTION ADMIN
# ==============================================================================

@admin.register(UserSubscription)
class UserSubscriptionAdmin(admin.ModelAdmin):
    list_display = ('user', 'tier', 'billing_period', 'status_display',
                    'current_period_end', 'scheduled_tier_change', 'usage_display')
    list_filter = ('tier', 'billing_period', 'status')
    search_fields = ('user__username', 'user__email', 'grow_recurring_id')
    readonly_fields = ('created_at', 'updated_at', 'last_reset_at', 'grow_last_transaction_code')
    raw_id_fields = ('user',)

    fieldsets = (
        ('Subscription', {
            'fields': ('user', 'tier', 'billing_period', 'status')
        }),
        ('Period', {
            'fields': ('current_period_start', 'current_period_end',
                       'cancelled_at', 'cancellation_effective_at')
        }),
        ('Scheduled & Pending', {
            'fields': ('scheduled_tier_change', 'scheduled_billing_period_change',
                       'pending_tier', 'pending_billing_period')
        }),
        ('Usage', {
            'fields': tuple(RESOURCE_FIELDS.values()) + ('last_reset_at',)
        }),
        ('Billing', {
            'fields': ('grow_transaction_token', 'grow_recurring_id',
                       'grow_last_transaction_code', 'morning_customer_id'),
            'classes': ('collapse',)
        }),
        ('Timestamps', {
            'fields': ('created_at', 'updated_at'),
            'classes': ('collapse',)
        }),
    )

    def status_display(self, obj):
        colors = {
            UserSubscription.STATUS_ACTIVE: 'green',
            UserSubscription.STATUS_PAST_DUE: 'orange',
            UserSubscription.STATUS_CANCELLED: 'gray',
            UserSubscription.STATUS_EXPIRED: 'red',
        }
        if not obj.tier:
            return format_html('<span style="color: gray;">{}</span>', 'tracking only')
        return format_html('<span style="color: {};">{}</span>',
                           colors.get(obj.status, 'black'), obj.status)
    status_display.short_description = 'Status'

    def usage_display(self, obj):
        parts = []
        for resource in RESOURCE_FIELDS:
            limit = get_limit(obj.tier, resource) if obj.tier else UNLIMITED
            parts.append(f"{obj.get_usage(resource)}/{'∞' if limit == UNLIMITED else limit}")
        return ' · '.join(parts)
    usage_display.short_description = 'Usage'

    actions = ['mark_payment_failed']

    @admin.action(description='Mark payment failed (past due)')
    def mark_payment_failed(self, request, queryset):
        from subscriptions.services.subscription_service import SubscriptionManager

        count = 0
        for user_id in queryset.with_tier().values_list('user_id', flat=True):
            SubscriptionManager.handle_payment_failure(user_id)
            count += 1
        self.message_user(request, f"Marked {count} subscriptions past due.")


# ==============================================================================
# EVENT LOG ADMIN
# ==============================================================================

@admin.register(SubscriptionEvent)
class SubscriptionEventAdmin(admin.ModelAdmin):
    list_display = ('user', 'event_type', 'tier', 'billing_period', 'amount', 'currency', 'created_at')
    list_filter = ('event_type', 'tier', 'created_at')
    search_fields = ('user__username', 'user__email')
    date_hierarchy = 'created_at'
    readonly_fields = ('user', 'event_type', 'tier', 'billing_period', 'amount',
                       'currency', 'metadata', 'created_at')

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


# ==============================================================================
# USAGE SNAPSHOT ADMIN
# ==============================================================================

@admin.register(UsageMonthlySnapshot)
class UsageMonthlySnapshotAdmin(admin.ModelAdmin):
    list_display = ('user', 'month', 'tier_at_snapshot') + tuple(RESOURCE_FIELDS.values())
    list_filter = ('month', 'tier_at_snapshot')
    search_fields = ('user__username', 'user__email')
    readonly_fields = ('created_at',)
    raw_id_fields = ('user',)
