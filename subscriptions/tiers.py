# subscriptions/tiers.py
"""
Tier configuration - prices, per-resource limits and included features.

Pure lookup tables plus small helpers. No database access here.

Usage:
    get_price('accelerate', 'monthly')          # Decimal('18')
    get_limit('momentum', 'applications')       # 8
    is_upgrade('momentum', 'elite')             # True
"""

from decimal import Decimal
from typing import Optional

from dateutil.relativedelta import relativedelta


UNLIMITED = -1

TIER_MOMENTUM = 'momentum'
TIER_ACCELERATE = 'accelerate'
TIER_ELITE = 'elite'

# Lowest to highest
TIER_ORDER = [TIER_MOMENTUM, TIER_ACCELERATE, TIER_ELITE]

BILLING_MONTHLY = 'monthly'
BILLING_QUARTERLY = 'quarterly'
BILLING_YEARLY = 'yearly'

BILLING_PERIODS = [BILLING_MONTHLY, BILLING_QUARTERLY, BILLING_YEARLY]

BILLING_PERIOD_MONTHS = {
    BILLING_MONTHLY: 1,
    BILLING_QUARTERLY: 3,
    BILLING_YEARLY: 12,
}

BILLING_PERIOD_LABELS = {
    BILLING_MONTHLY: 'Monthly',
    BILLING_QUARTERLY: 'Quarterly',
    BILLING_YEARLY: 'Annual',
}

TIER_CHOICES = [(t, t.title()) for t in TIER_ORDER]
BILLING_PERIOD_CHOICES = [(p, BILLING_PERIOD_LABELS[p]) for p in BILLING_PERIODS]


# ==============================================================================
# RESOURCES & FEATURES
# ==============================================================================

# Metered resource -> counter column on UserSubscription
RESOURCE_FIELDS = {
    'applications': 'usage_applications',
    'cvs': 'usage_cvs',
    'interviews': 'usage_interviews',
    'compensation': 'usage_compensation',
    'contracts': 'usage_contracts',
    'ai_avatar_interviews': 'usage_ai_avatar_interviews',
}

RESOURCES = list(RESOURCE_FIELDS)

# Names used in user-facing reason text
RESOURCE_LABELS = {
    'applications': 'applications',
    'cvs': 'CVs',
    'interviews': 'interview sessions',
    'compensation': 'compensation analyses',
    'contracts': 'contract reviews',
    'ai_avatar_interviews': 'AI avatar interviews',
}

# Feature -> resource that meters it
FEATURE_RESOURCES = {
    'application_tracker': 'applications',
    'tailored_cvs': 'cvs',
    'interview_coach': 'interviews',
    'compensation_sessions': 'compensation',
    'contract_reviews': 'contracts',
    'ai_avatar_interviews': 'ai_avatar_interviews',
}

FEATURES = list(FEATURE_RESOURCES)

# camelCase names accepted from API clients
_RESOURCE_ALIASES = {
    'aiAvatarInterviews': 'ai_avatar_interviews',
}

_FEATURE_ALIASES = {
    'applicationTracker': 'application_tracker',
    'tailoredCvs': 'tailored_cvs',
    'interviewCoach': 'interview_coach',
    'compensationSessions': 'compensation_sessions',
    'contractReviews': 'contract_reviews',
    'aiAvatarInterviews': 'ai_avatar_interviews',
}


# ==============================================================================
# TIER TABLE
# ==============================================================================

TIER_CONFIGS = {
    TIER_MOMENTUM: {
        'name': TIER_MOMENTUM,
        'display_name': 'Momentum',
        'prices': {
            BILLING_MONTHLY: Decimal('12'),
            BILLING_QUARTERLY: Decimal('30'),
            BILLING_YEARLY: Decimal('99'),
        },
        'limits': {
            'applications': 8,
            'cvs': 8,
            'interviews': 8,
            'compensation': 8,
            'contracts': 8,
            'ai_avatar_interviews': 0,
        },
        'features': [
            '8 job applications tracked per month',
            '8 tailored CVs per month',
            '8 interview coaching sessions per month',
            '8 compensation sessions per month',
            '8 contract reviews per month',
        ],
        'is_popular': False,
    },
    TIER_ACCELERATE: {
        'name': TIER_ACCELERATE,
        'display_name': 'Accelerate',
        'prices': {
            BILLING_MONTHLY: Decimal('18'),
            BILLING_QUARTERLY: Decimal('45'),
            BILLING_YEARLY: Decimal('149'),
        },
        'limits': {
            'applications': 15,
            'cvs': 15,
            'interviews': 15,
            'compensation': 15,
            'contracts': 15,
            'ai_avatar_interviews': 5,
        },
        'features': [
            '15 job applications tracked per month',
            '15 tailored CVs per month',
            '15 interview coaching sessions per month',
            '15 compensation sessions per month',
            '15 contract reviews per month',
            '5 AI avatar interviews per month',
        ],
        'is_popular': True,
    },
    TIER_ELITE: {
        'name': TIER_ELITE,
        'display_name': 'Elite',
        'prices': {
            BILLING_MONTHLY: Decimal('29'),
            BILLING_QUARTERLY: Decimal('75'),
            BILLING_YEARLY: Decimal('249'),
        },
        'limits': {
            'applications': UNLIMITED,
            'cvs': UNLIMITED,
            'interviews': UNLIMITED,
            'compensation': UNLIMITED,
            'contracts': UNLIMITED,
            'ai_avatar_interviews': 10,
        },
        'features': [
            'Unlimited job applications',
            'Unlimited tailored CVs',
            'Unlimited interview coaching',
            'Unlimited compensation sessions',
            'Unlimited contract reviews',
            '10 AI avatar interviews per month',
        ],
        'is_popular': False,
    },
}


# ==============================================================================
# VALIDATION & NORMALIZATION
# ==============================================================================

def is_valid_tier(value) -> bool:
    return value in TIER_CONFIGS


def is_valid_billing_period(value) -> bool:
    return value in BILLING_PERIOD_MONTHS


def normalize_resource(value) -> Optional[str]:
    """Return the canonical resource name, or None if unknown."""
    if not isinstance(value, str):
        return None
    value = _RESOURCE_ALIASES.get(value, value)
    return value if value in RESOURCE_FIELDS else None


def normalize_feature(value) -> Optional[str]:
    """Return the canonical feature name, or None if unknown."""
    if not isinstance(value, str):
        return None
    value = _FEATURE_ALIASES.get(value, value)
    return value if value in FEATURE_RESOURCES else None


# ==============================================================================
# LOOKUPS
# ==============================================================================

def get_tier_config(tier: str) -> dict:
    return TIER_CONFIGS[tier]


def get_display_name(tier: Optional[str]) -> str:
    if not tier:
        return 'Free'
    return TIER_CONFIGS[tier]['display_name']


def get_price(tier: str, billing_period: str) -> Decimal:
    return TIER_CONFIGS[tier]['prices'][billing_period]


def get_limit(tier: str, resource: str) -> int:
    return TIER_CONFIGS[tier]['limits'][resource]


def is_unlimited(limit: int) -> bool:
    return limit == UNLIMITED


def tier_includes_feature(tier: str, feature: str) -> bool:
    """A tier includes a feature when the metering resource has a non-zero limit."""
    return get_limit(tier, FEATURE_RESOURCES[feature]) != 0


def billing_period_label(billing_period: str) -> str:
    return BILLING_PERIOD_LABELS[billing_period]


def period_end(start, billing_period: str):
    """Calendar-month arithmetic: monthly +1, quarterly +3, yearly +12."""
    return start + relativedelta(months=BILLING_PERIOD_MONTHS[billing_period])


# ==============================================================================
# TIER COMPARISON
# ==============================================================================

def compare_tiers(a: str, b: str) -> int:
    """Negative if a ranks below b, zero if equal, positive if above."""
    return TIER_ORDER.index(a) - TIER_ORDER.index(b)


def is_upgrade(current: str, target: str) -> bool:
    return compare_tiers(target, current) > 0


def is_downgrade(current: str, target: str) -> bool:
    return compare_tiers(target, current) < 0


def subscription_description(tier: str, billing_period: str) -> str:
    """Invoice line text, e.g. 'Accelerate Quarterly Subscription'."""
    return f"{get_display_name(tier)} {billing_period_label(billing_period)} Subscription"
