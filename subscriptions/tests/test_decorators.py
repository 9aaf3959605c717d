"""
Tests for decorators (@usage_required, @feature_required, @api_login_required)
and the tracking middleware.

Verifies:
- Usage is reserved before the view and released when it fails
- Denials map to 402/403
- Tracking records are created once per user outside exempt paths
"""

import pytest
from django.contrib.auth.models import AnonymousUser
from django.http import HttpResponse, JsonResponse
from django.test import RequestFactory

from subscriptions.access_control import AccessControl
from subscriptions.decorators import api_login_required, feature_required, usage_required
from subscriptions.middleware import SubscriptionTrackingMiddleware
from subscriptions.models import UsageMonthlySnapshot, UserSubscription


def _request(user, path='/'):
    request = RequestFactory().post(path)
    request.user = user
    return request


@pytest.mark.django_db
class TestApiLoginRequired:
    """Tests for @api_login_required."""

    def test_anonymous_user(self):
        """Anonymous users get a JSON 401 instead of a redirect."""
        @api_login_required
        def view(request):
            return HttpResponse('OK')

        response = view(_request(AnonymousUser()))
        assert response.status_code == 401

    def test_authenticated_user(self, test_user):
        """Logged-in users reach the view."""
        @api_login_required
        def view(request):
            return HttpResponse('OK')

        assert view(_request(test_user)).status_code == 200


@pytest.mark.django_db
class TestUsageRequired:
    """Tests for @usage_required."""

    def test_successful_view_consumes(self, test_user, momentum_subscription):
        """A successful response keeps the use and records the snapshot."""
        @usage_required('cvs')
        def view(request):
            assert request.usage_check['consumed'] is True
            return JsonResponse({'ok': True})

        assert view(_request(test_user)).status_code == 200
        assert UserSubscription.objects.get(user=test_user).usage_cvs == 1
        assert UsageMonthlySnapshot.objects.get(user=test_user).usage_cvs == 1

    def test_error_response_releases(self, test_user, momentum_subscription):
        """A 4xx/5xx response gives the use back."""
        @usage_required('cvs')
        def view(request):
            return JsonResponse({'ok': False}, status=502)

        assert view(_request(test_user)).status_code == 502
        assert UserSubscription.objects.get(user=test_user).usage_cvs == 0
        assert not UsageMonthlySnapshot.objects.filter(user=test_user).exists()

    def test_exception_releases(self, test_user, momentum_subscription):
        """An exception gives the use back and propagates."""
        @usage_required('cvs')
        def view(request):
            raise RuntimeError('model timeout')

        with pytest.raises(RuntimeError):
            view(_request(test_user))
        assert UserSubscription.objects.get(user=test_user).usage_cvs == 0

    def test_limit_reached(self, test_user, momentum_subscription):
        """At the limit the view is not called and the answer is 403."""
        UserSubscription.objects.filter(pk=momentum_subscription.pk).update(usage_cvs=8)
        called = []

        @usage_required('cvs')
        def view(request):
            called.append(True)
            return HttpResponse('OK')

        response = view(_request(test_user))
        assert response.status_code == 403
        assert not called

    def test_no_subscription(self, test_user, tracking_record):
        """Without a tier the answer is 402."""
        @usage_required('cvs')
        def view(request):
            return HttpResponse('OK')

        assert view(_request(test_user)).status_code == 402

    def test_injected_access_control(self, test_user, tracking_record):
        """An AccessControl with enforcement off lets tracking-only users through."""
        @usage_required('cvs', access_control=AccessControl(enforcement_enabled=False))
        def view(request):
            return HttpResponse('OK')

        assert view(_request(test_user)).status_code == 200
        assert UserSubscription.objects.get(user=test_user).usage_cvs == 1


@pytest.mark.django_db
class TestFeatureRequired:
    """Tests for @feature_required."""

    def test_tier_too_low(self, test_user, momentum_subscription):
        """Features outside the tier are a 403."""
        @feature_required('ai_avatar_interviews')
        def view(request):
            return HttpResponse('OK')

        response = view(_request(test_user))
        assert response.status_code == 403

    def test_no_subscription(self, test_user, tracking_record):
        """Users without a tier get a 402."""
        @feature_required('tailored_cvs')
        def view(request):
            return HttpResponse('OK')

        assert view(_request(test_user)).status_code == 402

    def test_included(self, test_user, accelerate_subscription):
        """Included features reach the view."""
        @feature_required('ai_avatar_interviews')
        def view(request):
            return HttpResponse('OK')

        assert view(_request(test_user)).status_code == 200


@pytest.mark.django_db
class TestSubscriptionTrackingMiddleware:
    """Tests for SubscriptionTrackingMiddleware."""

    def _middleware(self):
        return SubscriptionTrackingMiddleware(lambda request: HttpResponse('OK'))

    def test_creates_record_once(self, test_user):
        """The first request creates the tracking record; later ones reuse it."""
        middleware = self._middleware()

        middleware(_request(test_user, '/api/subscription/status/'))
        middleware(_request(test_user, '/api/subscription/status/'))

        assert UserSubscription.objects.filter(user=test_user).count() == 1
        assert UserSubscription.objects.get(user=test_user).tier is None

    def test_exempt_path(self, test_user):
        """Webhook and admin paths never create records."""
        self._middleware()(_request(test_user, '/api/webhooks/grow/'))
        assert not UserSubscription.objects.filter(user=test_user).exists()

    def test_anonymous(self):
        """Anonymous requests pass straight through."""
        response = self._middleware()(_request(AnonymousUser()))
        assert response.status_code == 200
        assert not UserSubscription.objects.exists()
