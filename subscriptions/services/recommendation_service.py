# subscriptions/services/recommendation_service.py
"""
Usage-based tier recommendation.

Averages come from the monthly usage snapshots; the recommendation itself is
a pure function of those averages.
"""

from subscriptions.tiers import (
    BILLING_MONTHLY, BILLING_QUARTERLY, BILLING_YEARLY, RESOURCE_LABELS, RESOURCES,
    TIER_ACCELERATE, TIER_ELITE, TIER_MOMENTUM, TIER_ORDER,
    get_display_name, get_limit, get_price, is_unlimited,
)


# Average monthly AI-avatar interviews above which only Elite fits
ELITE_AI_AVATAR_THRESHOLD = 5

# Any average above its threshold moves the recommendation to Accelerate
ACCELERATE_THRESHOLDS = {
    'applications': 8,
    'cvs': 8,
    'interviews': 3,
    'compensation': 3,
    'contracts': 2,
    'ai_avatar_interviews': 0,
}


def _average_counts(snapshots) -> dict:
    count = len(snapshots)
    averages = {}
    for resource in RESOURCES:
        if count:
            total = sum(snapshot.usage_counts()[resource] for snapshot in snapshots)
            averages[resource] = round(total / count, 2)
        else:
            averages[resource] = 0.0
    averages['months_tracked'] = count
    return averages


class RecommendationService:
    """
    Usage:
        averages = RecommendationService.get_usage_averages(user.id)
        result = RecommendationService.get_recommendation(averages)
        result['recommended_tier']   # 'accelerate'
    """

    @classmethod
    def get_usage_averages(cls, user_id) -> dict:
        """Average of each counter over every snapshot the user has; zeros if none."""
        from subscriptions.models import UsageMonthlySnapshot
        snapshots = list(UsageMonthlySnapshot.objects.for_user(user_id))
        return _average_counts(snapshots)

    @classmethod
    def get_usage_trends(cls, user_id, months: int = 6) -> dict:
        """Most recent ``months`` snapshots, oldest first, with their averages."""
        from subscriptions.models import UsageMonthlySnapshot

        snapshots = list(UsageMonthlySnapshot.objects.for_user(user_id)[:months])
        snapshots.reverse()

        return {
            'months': [
                {
                    'month': snapshot.month.strftime('%Y-%m'),
                    'usage': snapshot.usage_counts(),
                    'tier': snapshot.tier_at_snapshot,
                    'billing_period': snapshot.billing_period_at_snapshot,
                }
                for snapshot in snapshots
            ],
            'averages': _average_counts(snapshots),
        }

    @classmethod
    def get_recommendation(cls, averages: dict) -> dict:
        """
        Threshold ladder over monthly averages.

        AI avatar average above 5 -> elite; any average above its Accelerate
        threshold -> accelerate; otherwise momentum. No I/O.
        """
        values = {resource: float(averages.get(resource, 0) or 0) for resource in RESOURCES}

        if values['ai_avatar_interviews'] > ELITE_AI_AVATAR_THRESHOLD:
            tier = TIER_ELITE
            drivers = ['ai_avatar_interviews']
        else:
            drivers = [
                resource for resource, threshold in ACCELERATE_THRESHOLDS.items()
                if values[resource] > threshold
            ]
            tier = TIER_ACCELERATE if drivers else TIER_MOMENTUM

        return {
            'recommended_tier': tier,
            'recommended_billing_period': BILLING_YEARLY,
            'reason': cls._build_reason(tier, drivers, values, averages.get('months_tracked')),
            'comparison': cls._build_comparison(values),
            'savings': cls._build_savings(tier),
            'months_tracked': averages.get('months_tracked', 0),
        }

    # =========================================================================
    # HELPERS
    # =========================================================================

    @classmethod
    def _build_reason(cls, tier, drivers, values, months_tracked) -> str:
        if months_tracked == 0:
            return (
                "No usage history yet. Momentum is a good starting point and "
                "you can upgrade any time."
            )

        if tier == TIER_MOMENTUM:
            return "Your usage fits comfortably within the Momentum plan."

        parts = [
            f"{values[resource]:g} {RESOURCE_LABELS[resource]}" for resource in drivers
        ]
        return (
            f"You average {', '.join(parts)} per month. "
            f"The {get_display_name(tier)} plan covers this usage."
        )

    @classmethod
    def _build_comparison(cls, values) -> dict:
        comparison = {}
        for resource in RESOURCES:
            average = values[resource]
            limits = {tier: get_limit(tier, resource) for tier in TIER_ORDER}
            fits_in = next(
                (tier for tier in TIER_ORDER
                 if is_unlimited(limits[tier]) or average <= limits[tier]),
                None
            )
            comparison[resource] = dict(limits, average=average, fits_in=fits_in)
        return comparison

    @classmethod
    def _build_savings(cls, tier) -> dict:
        monthly = get_price(tier, BILLING_MONTHLY)
        quarterly = get_price(tier, BILLING_QUARTERLY)
        yearly = get_price(tier, BILLING_YEARLY)
        return {
            'monthly_price': monthly,
            'quarterly_price': quarterly,
            'yearly_price': yearly,
            'quarterly_savings': monthly * 12 - quarterly * 4,
            'yearly_savings': monthly * 12 - yearly,
        }
