# subscriptions/access_control.py
"""
Usage limits and feature access.

Checks are evaluated in this order:
    1. admin (staff/superuser) bypass
    2. global kill switch off -> not enforced
    3. no tier -> NO_SUBSCRIPTION
    4. expired / past_due beyond grace
    5. tier limit for the resource

Usage is counted in every case, including admin bypass and kill switch off.

Usage:
    access = AccessControl()
    check = access.check_usage_limit(request.user, 'cvs')
    if check['allowed']:
        ...do the work...
        access.increment_usage(request.user, 'cvs')
"""

import logging
from datetime import timedelta

from django.conf import settings
from django.db.models import F
from django.utils import timezone

from subscriptions.exceptions import UnknownFeatureError, UnknownResourceError
from subscriptions.tiers import (
    RESOURCE_FIELDS, TIER_ORDER, UNLIMITED, get_display_name, get_limit, get_tier_config,
    is_unlimited, normalize_feature, normalize_resource, tier_includes_feature,
)

logger = logging.getLogger(__name__)


# Denial reasons
NO_SUBSCRIPTION = 'NO_SUBSCRIPTION'
LIMIT_EXCEEDED = 'LIMIT_EXCEEDED'
SUBSCRIPTION_EXPIRED = 'SUBSCRIPTION_EXPIRED'
PAST_DUE_GRACE_EXCEEDED = 'PAST_DUE_GRACE_EXCEEDED'

FEATURE_NO_SUBSCRIPTION = 'no_subscription'
FEATURE_TIER_TOO_LOW = 'tier_too_low'


def is_admin(user) -> bool:
    """Staff and superusers bypass every limit."""
    return bool(
        getattr(user, 'is_authenticated', False)
        and (user.is_staff or user.is_superuser)
    )


class AccessControl:
    """
    Usage-limit and feature-access policy.

    ``enforcement_enabled`` is the kill switch; it defaults to
    settings.SUBSCRIPTION_ENABLED and can be passed explicitly per request
    or per test.
    """

    def __init__(self, enforcement_enabled=None):
        if enforcement_enabled is None:
            enforcement_enabled = getattr(settings, 'SUBSCRIPTION_ENABLED', False)
        self.enforcement_enabled = bool(enforcement_enabled)

    # =========================================================================
    # USAGE LIMITS
    # =========================================================================

    def check_usage_limit(self, user, resource: str) -> dict:
        """
        Returns:
            {allowed, enforced, unlimited, used, limit, remaining, reason, admin_bypass, tier}
        """
        resource = self._resource(resource)
        record = self._get_record(user)
        used = record.get_usage(resource) if record else 0
        tier = record.tier if record else None

        if is_admin(user):
            return self._usage_result(True, False, used, UNLIMITED, tier, admin_bypass=True)

        if not self.enforcement_enabled:
            return self._usage_result(True, False, used, UNLIMITED, tier)

        if record is None or not record.tier:
            return self._usage_result(False, True, used, 0, None, reason=NO_SUBSCRIPTION)

        status_denial = self._status_denial(record)
        if status_denial:
            limit = get_limit(record.tier, resource)
            return self._usage_result(False, True, used, limit, tier, reason=status_denial)

        limit = get_limit(record.tier, resource)
        allowed = is_unlimited(limit) or used < limit
        return self._usage_result(
            allowed, True, used, limit, tier,
            reason=None if allowed else LIMIT_EXCEEDED,
        )

    def increment_usage(self, user, resource: str) -> int:
        """
        Count one use of ``resource`` and add it to this month's snapshot.

        Call only after the gated action succeeded. Runs regardless of the
        kill switch or tier.

        Returns:
            The new counter value.
        """
        from subscriptions.models import UserSubscription, UsageMonthlySnapshot

        resource = self._resource(resource)
        field = RESOURCE_FIELDS[resource]

        record = UserSubscription.objects.get_or_create_tracking(user.id)
        UserSubscription.objects.filter(pk=record.pk).update(**{field: F(field) + 1})
        record.refresh_from_db(fields=[field, 'tier', 'billing_period'])

        UsageMonthlySnapshot.objects.record_increment(
            user.id, resource, tier=record.tier, billing_period=record.billing_period
        )
        return record.get_usage(resource)

    def try_consume_usage(self, user, resource: str, record_snapshot: bool = True) -> dict:
        """
        Check and count one use in a single step.

        When enforced, the counter is bumped with a conditional UPDATE
        (``WHERE counter < limit``), so concurrent callers can never push it
        past the limit. Returns the check_usage_limit shape plus ``consumed``.
        """
        from subscriptions.models import UserSubscription, UsageMonthlySnapshot

        resource = self._resource(resource)
        field = RESOURCE_FIELDS[resource]
        record = UserSubscription.objects.get_or_create_tracking(user.id)

        check = self.check_usage_limit(user, resource)
        if not check['allowed']:
            return dict(check, consumed=False)

        rows = UserSubscription.objects.filter(pk=record.pk)
        if check['enforced'] and not check['unlimited']:
            rows = rows.filter(**{f"{field}__lt": check['limit']})

        if not rows.update(**{field: F(field) + 1}):
            record.refresh_from_db(fields=[field])
            used = record.get_usage(resource)
            logger.info(f"Usage limit reached for user {user.id} on {resource} ({used}/{check['limit']})")
            return dict(
                self._usage_result(False, True, used, check['limit'], check['tier'], reason=LIMIT_EXCEEDED),
                consumed=False,
            )

        record.refresh_from_db(fields=[field, 'tier', 'billing_period'])
        if record_snapshot:
            UsageMonthlySnapshot.objects.record_increment(
                user.id, resource, tier=record.tier, billing_period=record.billing_period
            )

        used = record.get_usage(resource)
        result = self._usage_result(
            True, check['enforced'], used, check['limit'], check['tier'],
            admin_bypass=check['admin_bypass'],
        )
        return dict(result, consumed=True)

    def record_snapshot(self, user, resource: str):
        """Add a use consumed with ``record_snapshot=False`` to this month's snapshot."""
        from subscriptions.models import UserSubscription, UsageMonthlySnapshot

        resource = self._resource(resource)
        record = UserSubscription.objects.get_for_user(user.id)
        UsageMonthlySnapshot.objects.record_increment(
            user.id, resource,
            tier=record.tier if record else None,
            billing_period=record.billing_period if record else None,
        )

    def release_usage(self, user, resource: str):
        """Give back a use reserved by try_consume_usage when the action failed."""
        from subscriptions.models import UserSubscription

        resource = self._resource(resource)
        field = RESOURCE_FIELDS[resource]
        UserSubscription.objects.filter(
            user_id=user.id, **{f"{field}__gt": 0}
        ).update(**{field: F(field) - 1})

    # =========================================================================
    # FEATURE ACCESS
    # =========================================================================

    def check_feature_access(self, user, feature: str) -> dict:
        """
        Returns:
            {has_access, enforced, reason, tier, admin_bypass}
        """
        feature = normalize_feature(feature)
        if feature is None:
            raise UnknownFeatureError()

        record = self._get_record(user)
        tier = record.tier if record else None

        if is_admin(user):
            return self._feature_result(True, False, tier, admin_bypass=True)

        if not self.enforcement_enabled:
            return self._feature_result(True, False, tier)

        if record is None or not record.tier:
            return self._feature_result(False, True, None, reason=FEATURE_NO_SUBSCRIPTION)

        status_denial = self._status_denial(record)
        if status_denial:
            return self._feature_result(False, True, tier, reason=status_denial.lower())

        if not tier_includes_feature(record.tier, feature):
            return self._feature_result(False, True, tier, reason=FEATURE_TIER_TOO_LOW)

        return self._feature_result(True, True, tier)

    # =========================================================================
    # STATUS
    # =========================================================================

    def get_subscription_status(self, user) -> dict:
        """Full subscription state with per-resource usage summaries."""
        record = self._get_record(user)
        tier = record.tier if record else None
        status = record.status if record and tier else None

        usage = {}
        for resource in RESOURCE_FIELDS:
            used = record.get_usage(resource) if record else 0
            limit = get_limit(tier, resource) if tier else UNLIMITED
            usage[resource] = self._usage_summary(used, limit)

        data = record.to_dict() if record else {}
        return {
            'enforcement_enabled': self.enforcement_enabled,
            'admin_bypass': is_admin(user),
            'has_subscription': bool(tier),
            'tier': tier,
            'tier_display_name': get_display_name(tier),
            'billing_period': data.get('billing_period'),
            'status': status,
            'usage': usage,
            'features': get_tier_config(tier)['features'] if tier else [],
            'current_period_start': data.get('current_period_start'),
            'current_period_end': data.get('current_period_end'),
            'cancelled_at': data.get('cancelled_at'),
            'cancellation_effective_at': data.get('cancellation_effective_at'),
            'scheduled_tier_change': data.get('scheduled_tier_change'),
            'scheduled_billing_period_change': data.get('scheduled_billing_period_change'),
            'pending_tier': data.get('pending_tier'),
            'pending_billing_period': data.get('pending_billing_period'),
            'is_cancelled': bool(record and (record.is_cancelled() or record.cancelled_at)),
            'is_past_due': bool(record and record.is_past_due()),
            'is_expired': bool(record and record.is_expired()),
            'can_upgrade': (not tier) or (tier != TIER_ORDER[-1] and status == 'active'),
            'can_downgrade': bool(tier) and tier != TIER_ORDER[0] and status == 'active',
        }

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _get_record(self, user):
        from subscriptions.models import UserSubscription
        if not getattr(user, 'is_authenticated', False):
            return None
        return UserSubscription.objects.get_for_user(user.id)

    def _resource(self, resource):
        normalized = normalize_resource(resource)
        if normalized is None:
            raise UnknownResourceError(f"Unknown resource: {resource}")
        return normalized

    def _status_denial(self, record):
        """Reason to deny an otherwise-tiered record, or None."""
        if record.is_expired():
            return SUBSCRIPTION_EXPIRED
        if record.is_past_due() and record.current_period_end:
            grace_days = getattr(settings, 'SUBSCRIPTION_GRACE_PERIOD_DAYS', 3)
            if timezone.now() > record.current_period_end + timedelta(days=grace_days):
                return PAST_DUE_GRACE_EXCEEDED
        return None

    @staticmethod
    def _usage_result(allowed, enforced, used, limit, tier, reason=None, admin_bypass=False) -> dict:
        unlimited = is_unlimited(limit)
        return {
            'allowed': allowed,
            'enforced': enforced,
            'unlimited': unlimited,
            'used': used,
            'limit': limit,
            'remaining': UNLIMITED if unlimited else max(0, limit - used),
            'reason': reason,
            'admin_bypass': admin_bypass,
            'tier': tier,
        }

    @staticmethod
    def _feature_result(has_access, enforced, tier, reason=None, admin_bypass=False) -> dict:
        return {
            'has_access': has_access,
            'enforced': enforced,
            'reason': reason,
            'tier': tier,
            'admin_bypass': admin_bypass,
        }

    @staticmethod
    def _usage_summary(used, limit) -> dict:
        if is_unlimited(limit):
            return {'used': used, 'limit': UNLIMITED, 'remaining': UNLIMITED,
                    'percent_used': 0, 'unlimited': True}
        return {
            'used': used,
            'limit': limit,
            'remaining': max(0, limit - used),
            'percent_used': round(used / limit * 100) if limit > 0 else 0,
            'unlimited': False,
        }
