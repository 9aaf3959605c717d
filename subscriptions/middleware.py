# subscriptions/middleware.py
"""
Subscription tracking middleware.
"""

import re
import logging

from django.conf import settings
from django.core.cache import cache

logger = logging.getLogger(__name__)


class SubscriptionTrackingMiddleware:
    """
    Create the tracking-only subscription record the first time an
    authenticated user is seen, so usage can be counted before they ever pay.

    Configuration in settings.py:

    SUBSCRIPTION_TRACKING_EXEMPT_URLS = [
        r'^/admin/',
        r'^/api/webhooks/',
    ]
    """

    CACHE_TTL = 60 * 60  # 1 hour

    def __init__(self, get_response):
        self.get_response = get_response

        # Compile URL patterns for performance
        exempt_urls = getattr(settings, 'SUBSCRIPTION_TRACKING_EXEMPT_URLS', [
            r'^/admin/',
            r'^/static/',
            r'^/api/webhooks/',
            r'^/api/cron/',
        ])
        self.exempt_patterns = [re.compile(p) for p in exempt_urls]

    def __call__(self, request):
        user = getattr(request, 'user', None)
        if user is not None and user.is_authenticated and not self._is_exempt(request.path):
            self._ensure_tracking_record(user)

        return self.get_response(request)

    def _is_exempt(self, path):
        return any(pattern.match(path) for pattern in self.exempt_patterns)

    def _ensure_tracking_record(self, user):
        cache_key = f'sub_tracking_{user.id}'
        if cache.get(cache_key):
            return

        from subscriptions.models import UserSubscription

        record, created = UserSubscription.objects.get_or_create(user_id=user.id)
        if created:
            logger.info(f"Created tracking subscription record for user {user.id}")
        cache.set(cache_key, True, self.CACHE_TTL)
