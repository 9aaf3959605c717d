"""
pytest configuration and fixtures for subscriptions app testing.

Provides:
- Test users (regular and staff)
- Authenticated clients
- Subscription records in various lifecycle states
"""

from datetime import timedelta

import pytest
from django.contrib.auth.models import User
from django.core.cache import cache
from django.test import Client
from django.utils import timezone

from subscriptions.models import UserSubscription
from subscriptions.tiers import period_end


@pytest.fixture(autouse=True)
def clear_cache():
    """Tracking-record and webhook dedupe keys live in the cache."""
    cache.clear()
    yield
    cache.clear()


@pytest.fixture(autouse=True)
def subscription_settings(settings):
    """Baseline settings for every test; individual tests override as needed."""
    settings.SUBSCRIPTION_ENABLED = True
    settings.SUBSCRIPTION_GRACE_PERIOD_DAYS = 3
    settings.CRON_SECRET = 'cron-secret'
    settings.GROW_WEBHOOK_KEY = 'grow-webhook-key'
    settings.GROW_API_URL = 'https://grow.example.test/api/light/server/1.0'
    settings.GROW_USER_ID = 'grow-user'
    settings.APP_URL = 'https://app.example.test'
    settings.MORNING_API_URL = 'https://morning.example.test/api/v1'
    settings.MORNING_API_KEY_ID = 'morning-id'
    settings.MORNING_API_SECRET = 'morning-secret'
    return settings


# ============================================================================
# USER FIXTURES
# ============================================================================

@pytest.fixture
def test_user():
    """Create a regular test user."""
    return User.objects.create_user(
        username="testuser",
        email="test@example.com",
        password="testpass123",
        first_name="Test",
        last_name="User",
    )


@pytest.fixture
def other_user():
    """Create a second regular user."""
    return User.objects.create_user(
        username="otheruser",
        email="other@example.com",
        password="otherpass123",
    )


@pytest.fixture
def admin_user():
    """Create a staff user (bypasses limits)."""
    return User.objects.create_user(
        username="staffuser",
        email="staff@example.com",
        password="staffpass123",
        is_staff=True,
    )


# ============================================================================
# CLIENT FIXTURES
# ============================================================================

@pytest.fixture
def client():
    """Regular Django test client."""
    return Client()


@pytest.fixture
def authenticated_client(test_user):
    """Authenticated client for test_user."""
    client = Client()
    client.force_login(test_user)
    return client


# ============================================================================
# SUBSCRIPTION FIXTURES
# ============================================================================

def make_subscription(user, tier='momentum', billing_period='monthly', status='active',
                      days_into_period=0, **fields):
    """Create (or overwrite) a tiered subscription record directly."""
    now = timezone.now()
    start = now - timedelta(days=days_into_period)
    values = {
        'tier': tier,
        'billing_period': billing_period,
        'status': status,
        'current_period_start': start,
        'current_period_end': period_end(start, billing_period),
    }
    values.update(fields)
    record, _ = UserSubscription.objects.update_or_create(user=user, defaults=values)
    return record


@pytest.fixture
def tracking_record(test_user):
    """Tracking-only record: no tier, counters only."""
    return UserSubscription.objects.create(user=test_user)


@pytest.fixture
def momentum_subscription(test_user):
    """Active Momentum monthly subscription with a stored payment token."""
    return make_subscription(
        test_user, 'momentum', 'monthly',
        grow_transaction_token='tok_123',
        grow_last_transaction_code='code-initial',
    )


@pytest.fixture
def accelerate_subscription(test_user):
    """Active Accelerate monthly subscription."""
    return make_subscription(test_user, 'accelerate', 'monthly', grow_transaction_token='tok_123')
