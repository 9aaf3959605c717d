# subscriptions/models.py
"""
Subscription models - per-user subscription record, audit events, monthly usage snapshots.

Field names on UserSubscription are the storage columns; ``to_dict()`` is the
single mapping from a row to the shape returned by the API.
"""

from django.conf import settings
from django.core.serializers.json import DjangoJSONEncoder
from django.db import models
from django.db.models import F
from django.utils import timezone

from subscriptions.tiers import (
    TIER_CHOICES, BILLING_PERIOD_CHOICES, RESOURCE_FIELDS, get_display_name,
)


# ==============================================================================
# USER SUBSCRIPTION
# ==============================================================================

class UserSubscriptionQuerySet(models.QuerySet):

    def for_user(self, user_id):
        return self.filter(user_id=user_id)

    def get_for_user(self, user_id):
        """Return the user's record or None."""
        return self.filter(user_id=user_id).first()

    def locked_for_user(self, user_id):
        """
        Return the user's record with a row lock, or None.

        Must be called inside transaction.atomic(); concurrent writers of the
        same user block until the surrounding transaction ends.
        """
        return self.select_for_update().filter(user_id=user_id).first()

    def get_or_create_tracking(self, user_id):
        """Return the user's record, creating a tracking-only row (tier null) if missing."""
        record, _ = self.get_or_create(user_id=user_id)
        return record

    def with_tier(self):
        return self.exclude(tier__isnull=True)


class UserSubscription(models.Model):
    """
    One subscription record per user.

    A record with ``tier=None`` is tracking-only: usage is counted but
    nothing is enforced against it yet.
    """
    STATUS_ACTIVE = 'active'
    STATUS_PAST_DUE = 'past_due'
    STATUS_CANCELLED = 'cancelled'
    STATUS_EXPIRED = 'expired'

    STATUS_CHOICES = (
        (STATUS_ACTIVE, 'Active'),
        (STATUS_PAST_DUE, 'Past Due'),
        (STATUS_CANCELLED, 'Cancelled'),
        (STATUS_EXPIRED, 'Expired'),
    )

    user = models.OneToOneField(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name='career_subscription'
    )

    # Plan
    tier = models.CharField(max_length=20, choices=TIER_CHOICES, null=True, blank=True)
    billing_period = models.CharField(
        max_length=20, choices=BILLING_PERIOD_CHOICES, null=True, blank=True
    )
    status = models.CharField(
        max_length=20,
        choices=STATUS_CHOICES,
        null=True,
        blank=True,
        db_index=True
    )

    # Current billing period
    current_period_start = models.DateTimeField(null=True, blank=True)
    current_period_end = models.DateTimeField(null=True, blank=True)

    # Cancellation (set together)
    cancelled_at = models.DateTimeField(null=True, blank=True)
    cancellation_effective_at = models.DateTimeField(null=True, blank=True, db_index=True)

    # Applied at next successful renewal
    scheduled_tier_change = models.CharField(
        max_length=20, choices=TIER_CHOICES, null=True, blank=True
    )
    scheduled_billing_period_change = models.CharField(
        max_length=20, choices=BILLING_PERIOD_CHOICES, null=True, blank=True
    )

    # Selection made before the hosted payment page completes
    pending_tier = models.CharField(max_length=20, choices=TIER_CHOICES, null=True, blank=True)
    pending_billing_period = models.CharField(
        max_length=20, choices=BILLING_PERIOD_CHOICES, null=True, blank=True
    )

    # Payment gateway identifiers
    grow_transaction_token = models.CharField(max_length=255, blank=True, default='')
    grow_recurring_id = models.CharField(max_length=255, blank=True, default='')
    grow_last_transaction_code = models.CharField(max_length=255, blank=True, default='')

    # Invoicing provider
    morning_customer_id = models.CharField(max_length=255, blank=True, default='')

    # Usage counters (one per metered resource)
    usage_applications = models.PositiveIntegerField(default=0)
    usage_cvs = models.PositiveIntegerField(default=0)
    usage_interviews = models.PositiveIntegerField(default=0)
    usage_compensation = models.PositiveIntegerField(default=0)
    usage_contracts = models.PositiveIntegerField(default=0)
    usage_ai_avatar_interviews = models.PositiveIntegerField(default=0)
    last_reset_at = models.DateTimeField(null=True, blank=True)

    # Timestamps
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = UserSubscriptionQuerySet.as_manager()

    class Meta:
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['status', 'cancellation_effective_at'], name='subscriptio_status_5c1e2a_idx'),
            models.Index(fields=['status', 'updated_at'], name='subscriptio_status_9b7d41_idx'),
        ]

    def __str__(self):
        return f"{self.user_id} - {self.tier or 'tracking'} ({self.status or 'none'})"

    # -------------------------------------------------------------------------
    # Usage counters
    # -------------------------------------------------------------------------

    def get_usage(self, resource: str) -> int:
        return getattr(self, RESOURCE_FIELDS[resource])

    def usage_counts(self) -> dict:
        return {resource: getattr(self, field) for resource, field in RESOURCE_FIELDS.items()}

    def clear_usage(self):
        """Zero every counter in memory. Caller saves."""
        for field in RESOURCE_FIELDS.values():
            setattr(self, field, 0)

    # -------------------------------------------------------------------------
    # State helpers
    # -------------------------------------------------------------------------

    def has_tier(self) -> bool:
        return bool(self.tier)

    def is_cancelled(self) -> bool:
        return self.status == self.STATUS_CANCELLED

    def is_past_due(self) -> bool:
        return self.status == self.STATUS_PAST_DUE

    def is_expired(self) -> bool:
        return self.status == self.STATUS_EXPIRED

    def to_dict(self) -> dict:
        """API representation of the record."""
        def _iso(value):
            return value.isoformat() if value else None

        return {
            'user_id': self.user_id,
            'tier': self.tier,
            'tier_display_name': get_display_name(self.tier),
            'billing_period': self.billing_period,
            'status': self.status,
            'current_period_start': _iso(self.current_period_start),
            'current_period_end': _iso(self.current_period_end),
            'cancelled_at': _iso(self.cancelled_at),
            'cancellation_effective_at': _iso(self.cancellation_effective_at),
            'scheduled_tier_change': self.scheduled_tier_change,
            'scheduled_billing_period_change': self.scheduled_billing_period_change,
            'pending_tier': self.pending_tier,
            'pending_billing_period': self.pending_billing_period,
            'usage': self.usage_counts(),
            'last_reset_at': _iso(self.last_reset_at),
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }


# ==============================================================================
# SUBSCRIPTION EVENTS (APPEND-ONLY AUDIT LOG)
# ==============================================================================

class SubscriptionEventManager(models.Manager):

    def log(self, user_id, event_type, metadata=None, tier=None, billing_period=None,
            amount=None, currency='USD'):
        return self.create(
            user_id=user_id,
            event_type=event_type,
            tier=tier,
            billing_period=billing_period,
            amount=amount,
            currency=currency,
            metadata=metadata or {},
        )


class SubscriptionEvent(models.Model):
    """Immutable audit record of a subscription transition."""
    EVENT_ACTIVATED = 'activated'
    EVENT_RENEWED = 'renewed'
    EVENT_UPGRADED = 'upgraded'
    EVENT_DOWNGRADE_SCHEDULED = 'downgrade_scheduled'
    EVENT_BILLING_PERIOD_CHANGE_SCHEDULED = 'billing_period_change_scheduled'
    EVENT_SCHEDULED_CHANGE_CANCELLED = 'scheduled_change_cancelled'
    EVENT_CANCELLED = 'cancelled'
    EVENT_PAYMENT_FAILED = 'payment_failed'
    EVENT_EXPIRED = 'expired'

    EVENT_CHOICES = (
        (EVENT_ACTIVATED, 'Activated'),
        (EVENT_RENEWED, 'Renewed'),
        (EVENT_UPGRADED, 'Upgraded'),
        (EVENT_DOWNGRADE_SCHEDULED, 'Downgrade Scheduled'),
        (EVENT_BILLING_PERIOD_CHANGE_SCHEDULED, 'Billing Period Change Scheduled'),
        (EVENT_SCHEDULED_CHANGE_CANCELLED, 'Scheduled Change Cancelled'),
        (EVENT_CANCELLED, 'Cancelled'),
        (EVENT_PAYMENT_FAILED, 'Payment Failed'),
        (EVENT_EXPIRED, 'Expired'),
    )

    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name='subscription_events'
    )
    event_type = models.CharField(max_length=40, choices=EVENT_CHOICES, db_index=True)
    tier = models.CharField(max_length=20, choices=TIER_CHOICES, null=True, blank=True)
    billing_period = models.CharField(
        max_length=20, choices=BILLING_PERIOD_CHOICES, null=True, blank=True
    )
    amount = models.DecimalField(max_digits=10, decimal_places=2, null=True, blank=True)
    currency = models.CharField(max_length=3, default='USD')
    metadata = models.JSONField(default=dict, blank=True, encoder=DjangoJSONEncoder)
    created_at = models.DateTimeField(default=timezone.now, db_index=True)

    objects = SubscriptionEventManager()

    class Meta:
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['user', 'event_type'], name='subscriptio_user_id_3f8a20_idx'),
        ]

    def __str__(self):
        return f"{self.user_id} - {self.event_type} @ {self.created_at:%Y-%m-%d %H:%M}"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValueError("Subscription events are append-only and cannot be modified.")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValueError("Subscription events are append-only and cannot be deleted.")


# ==============================================================================
# MONTHLY USAGE SNAPSHOTS
# ==============================================================================

def month_start(value=None):
    """First day of the calendar month containing ``value`` (default: today)."""
    value = value or timezone.now()
    if hasattr(value, 'date'):
        value = timezone.localdate(value) if timezone.is_aware(value) else value.date()
    return value.replace(day=1)


class UsageSnapshotManager(models.Manager):

    def record_increment(self, user_id, resource, tier=None, billing_period=None, when=None):
        """
        Add one use of ``resource`` to the current month's snapshot.

        Only the row for the month containing ``when`` is touched; rows for
        earlier months are never written again.
        """
        field = RESOURCE_FIELDS[resource]
        month = month_start(when)
        snapshot, _ = self.get_or_create(
            user_id=user_id,
            month=month,
            defaults={
                'tier_at_snapshot': tier,
                'billing_period_at_snapshot': billing_period,
            }
        )
        self.filter(pk=snapshot.pk).update(
            **{
                field: F(field) + 1,
                'tier_at_snapshot': tier,
                'billing_period_at_snapshot': billing_period,
            }
        )
        return snapshot

    def for_user(self, user_id):
        return self.filter(user_id=user_id).order_by('-month')


class UsageMonthlySnapshot(models.Model):
    """Monthly usage rollup, one row per user per calendar month."""
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name='usage_snapshots'
    )
    month = models.DateField(help_text="First day of the month")

    usage_applications = models.IntegerField(default=0)
    usage_cvs = models.IntegerField(default=0)
    usage_interviews = models.IntegerField(default=0)
    usage_compensation = models.IntegerField(default=0)
    usage_contracts = models.IntegerField(default=0)
    usage_ai_avatar_interviews = models.IntegerField(default=0)

    tier_at_snapshot = models.CharField(max_length=20, choices=TIER_CHOICES, null=True, blank=True)
    billing_period_at_snapshot = models.CharField(
        max_length=20, choices=BILLING_PERIOD_CHOICES, null=True, blank=True
    )

    created_at = models.DateTimeField(auto_now_add=True)

    objects = UsageSnapshotManager()

    class Meta:
        ordering = ['-month']
        constraints = [
            models.UniqueConstraint(fields=['user', 'month'], name='unique_usage_snapshot_per_month'),
        ]

    def __str__(self):
        return f"{self.user_id} - {self.month:%Y-%m}"

    def usage_counts(self) -> dict:
        return {resource: getattr(self, field) for resource, field in RESOURCE_FIELDS.items()}
