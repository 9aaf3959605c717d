"""
Tests for the subscription JSON API, the Grow webhook and the cron endpoint.

Verifies:
- Authentication and validation responses
- Plan-change scenarios
- Webhook activation/renewal, replay and failure handling
- Cron secret handling and kill switch
"""

import json
from datetime import timedelta
from unittest.mock import patch

import pytest
from django.test import Client
from django.utils import timezone

from subscriptions.exceptions import InvoicingError
from subscriptions.models import SubscriptionEvent, UserSubscription
from subscriptions.services.invoice_service import InvoiceService
from subscriptions.services.payment_service import PaymentService
from subscriptions.tests.conftest import make_subscription


APPROVED = {'ok': True, 'reason': 'Transaction approved.', 'data': {}}
CHARGE_OK = {'ok': True, 'reason': 'Charge completed.', 'data': {'transaction_id': 'tx-up'}}


def _post_json(client, url, data):
    return client.post(url, data=json.dumps(data), content_type='application/json')


def _webhook_body(user, **overrides):
    body = {
        'webhookKey': 'grow-webhook-key',
        'transactionId': 'tx-100',
        'transactionToken': 'tok-100',
        'transactionCode': 'code-100',
        'status': 'approved',
        'sum': '18.00',
        'cField1': str(user.id),
        'cField2': 'accelerate',
        'cField3': 'monthly',
        'recurringId': 'rec-1',
        'email': 'payer@example.com',
        'fullName': 'Pay Er',
    }
    body.update(overrides)
    return body


# ============================================================================
# SUBSCRIPTION MANAGEMENT
# ============================================================================

@pytest.mark.django_db
class TestSubscriptionStatusView:
    """Tests for GET /api/subscription/status/."""

    def test_requires_login(self, client):
        """Anonymous users get a JSON 401."""
        response = client.get('/api/subscription/status/')
        assert response.status_code == 401
        assert response.json()['code'] == 'AUTH_REQUIRED'

    def test_creates_tracking_record(self, authenticated_client, test_user):
        """The first authenticated request creates a tracking-only record."""
        response = authenticated_client.get('/api/subscription/status/')

        assert response.status_code == 200
        assert response.json()['has_subscription'] is False
        assert UserSubscription.objects.get(user=test_user).tier is None

    def test_reports_tier(self, authenticated_client, accelerate_subscription):
        """Tiered users see their plan and usage."""
        data = authenticated_client.get('/api/subscription/status/').json()

        assert data['tier'] == 'accelerate'
        assert data['usage']['ai_avatar_interviews']['limit'] == 5


@pytest.mark.django_db
class TestInitiateView:
    """Tests for POST /api/subscription/initiate/."""

    def test_returns_payment_url(self, authenticated_client, test_user):
        """A valid plan records the pending selection and returns the page url."""
        created = {'ok': True, 'reason': 'Payment page created.',
                   'data': {'payment_url': 'https://pay.example/xyz'}}
        with patch.object(PaymentService, 'create_recurring_payment', return_value=created):
            response = _post_json(authenticated_client, '/api/subscription/initiate/',
                                  {'tier': 'elite', 'billingPeriod': 'yearly'})

        assert response.status_code == 200
        assert response.json()['payment_url'] == 'https://pay.example/xyz'
        record = UserSubscription.objects.get(user=test_user)
        assert record.pending_tier == 'elite'
        assert record.pending_billing_period == 'yearly'
        assert record.tier is None

    def test_invalid_plan(self, authenticated_client):
        """Unknown tiers are a 400."""
        response = _post_json(authenticated_client, '/api/subscription/initiate/',
                              {'tier': 'platinum', 'billing_period': 'monthly'})
        assert response.status_code == 400

    def test_gateway_failure(self, authenticated_client):
        """A gateway error is a 500."""
        failed = {'ok': False, 'reason': 'down', 'code': 'GATEWAY_ERROR', 'data': {}}
        with patch.object(PaymentService, 'create_recurring_payment', return_value=failed):
            response = _post_json(authenticated_client, '/api/subscription/initiate/',
                                  {'tier': 'elite', 'billing_period': 'monthly'})

        assert response.status_code == 500
        assert response.json()['reason'] == 'Failed to create payment.'


@pytest.mark.django_db
class TestCancelView:
    """Tests for POST /api/subscription/cancel/."""

    def test_cancel(self, authenticated_client, accelerate_subscription):
        """Cancellation answers with the date access ends."""
        response = authenticated_client.post('/api/subscription/cancel/')

        assert response.status_code == 200
        assert response.json()['message'].startswith(
            'Your Accelerate subscription will remain active until '
        )

    def test_cancel_twice(self, authenticated_client, accelerate_subscription):
        """A second cancellation is a 404."""
        authenticated_client.post('/api/subscription/cancel/')
        response = authenticated_client.post('/api/subscription/cancel/')

        assert response.status_code == 404
        assert response.json()['code'] == 'ALREADY_CANCELLED'

    def test_cancel_without_subscription(self, authenticated_client):
        """Users without a tier get a 404."""
        response = authenticated_client.post('/api/subscription/cancel/')
        assert response.status_code == 404


@pytest.mark.django_db
class TestChangePlanView:
    """Tests for POST /api/subscription/change-plan/."""

    URL = '/api/subscription/change-plan/'

    def test_upgrade(self, authenticated_client, test_user, momentum_subscription):
        """Upgrades apply immediately and report the prorated amount."""
        with patch.object(PaymentService, 'charge_token', return_value=CHARGE_OK):
            response = _post_json(authenticated_client, self.URL, {'target_tier': 'elite'})

        data = response.json()
        assert response.status_code == 200
        assert data['immediate'] is True
        assert data['new_tier'] == 'elite'
        assert UserSubscription.objects.get(user=test_user).tier == 'elite'

    def test_downgrade(self, authenticated_client, test_user):
        """Downgrades are scheduled for period end."""
        make_subscription(test_user, 'elite')

        response = _post_json(authenticated_client, self.URL, {'targetTier': 'momentum'})

        data = response.json()
        assert data['immediate'] is False
        assert data['message'].startswith('Your downgrade to Momentum will take effect on ')
        assert UserSubscription.objects.get(user=test_user).scheduled_tier_change == 'momentum'

    def test_undo_scheduled_change(self, authenticated_client, test_user):
        """Choosing the current tier again cancels a scheduled downgrade."""
        make_subscription(test_user, 'elite', scheduled_tier_change='momentum')

        response = _post_json(authenticated_client, self.URL, {'target_tier': 'elite'})

        assert response.json()['message'] == 'Scheduled change cancelled.'
        assert UserSubscription.objects.get(user=test_user).scheduled_tier_change is None

    def test_billing_period_change(self, authenticated_client, test_user, momentum_subscription):
        """Same tier with a new billing period is scheduled for renewal."""
        response = _post_json(authenticated_client, self.URL,
                              {'target_tier': 'momentum', 'target_billing_period': 'yearly'})

        assert 'Annual' in response.json()['message']
        assert UserSubscription.objects.get(user=test_user).scheduled_billing_period_change == 'yearly'

    def test_no_change(self, authenticated_client, momentum_subscription):
        """Same tier and period is a no-op."""
        response = _post_json(authenticated_client, self.URL, {'target_tier': 'momentum'})
        assert response.json()['message'].startswith('No changes needed')

    def test_no_subscription(self, authenticated_client):
        """Tracking-only users get a 404."""
        response = _post_json(authenticated_client, self.URL, {'target_tier': 'elite'})
        assert response.status_code == 404

    def test_upgrade_without_payment_method(self, authenticated_client, test_user):
        """A prorated upgrade without a stored token is a 400."""
        make_subscription(test_user, 'momentum')

        response = _post_json(authenticated_client, self.URL, {'target_tier': 'accelerate'})

        assert response.status_code == 400
        assert response.json()['code'] == 'NO_PAYMENT_METHOD'


# ============================================================================
# USAGE & RECOMMENDATION
# ============================================================================

@pytest.mark.django_db
class TestUsageViews:
    """Tests for check-access, check-limit and increment-usage."""

    def test_check_access_unknown_feature(self, authenticated_client):
        """Unknown features are a 400."""
        response = _post_json(authenticated_client, '/api/subscription/check-access/',
                              {'feature': 'teleportation'})
        assert response.status_code == 400

    def test_check_access(self, authenticated_client, momentum_subscription):
        """Feature access reports the denial reason."""
        data = _post_json(authenticated_client, '/api/subscription/check-access/',
                          {'feature': 'ai_avatar_interviews'}).json()
        assert data['has_access'] is False
        assert data['reason'] == 'tier_too_low'

    def test_check_limit(self, authenticated_client, momentum_subscription):
        """Limit checks return usage figures."""
        data = _post_json(authenticated_client, '/api/subscription/check-limit/',
                          {'resource': 'cvs'}).json()
        assert data['allowed'] is True
        assert data['limit'] == 8

    def test_increment_usage(self, authenticated_client, test_user):
        """Increments are counted even for tracking-only users."""
        response = _post_json(authenticated_client, '/api/subscription/increment-usage/',
                              {'resource': 'aiAvatarInterviews'})

        assert response.status_code == 200
        assert response.json()['used'] == 1
        assert UserSubscription.objects.get(user=test_user).usage_ai_avatar_interviews == 1

    def test_increment_unknown_resource(self, authenticated_client):
        """Unknown resources are a 400."""
        response = _post_json(authenticated_client, '/api/subscription/increment-usage/',
                              {'resource': 'podcasts'})
        assert response.status_code == 400


@pytest.mark.django_db
class TestRecommendationViews:
    """Tests for recommendation and usage-trends."""

    def test_recommendation_marks_current_plan(self, authenticated_client, momentum_subscription):
        """With no history Momentum is recommended, which is the current plan."""
        data = authenticated_client.get('/api/subscription/recommendation/').json()

        assert data['recommended_tier'] == 'momentum'
        assert data['current_tier'] == 'momentum'
        assert data['is_current_plan'] is True
        assert data['is_upgrade'] is False

    def test_recommendation_suggests_downgrade(self, authenticated_client, test_user):
        """An Elite user with no history is shown a downgrade."""
        make_subscription(test_user, 'elite')
        data = authenticated_client.get('/api/subscription/recommendation/').json()
        assert data['is_downgrade'] is True

    def test_usage_trends(self, authenticated_client):
        """Trends return an empty month list without history."""
        data = authenticated_client.get('/api/subscription/usage-trends/?months=3').json()
        assert data['months'] == []
        assert data['averages']['months_tracked'] == 0


# ============================================================================
# GROW WEBHOOK
# ============================================================================

@pytest.mark.django_db
class TestGrowWebhook:
    """Tests for POST /api/webhooks/grow/."""

    URL = '/api/webhooks/grow/'

    def test_invalid_key(self, client, test_user):
        """A wrong webhook key is a 401."""
        response = _post_json(client, self.URL, _webhook_body(test_user, webhookKey='nope'))
        assert response.status_code == 401

    def test_missing_user(self, client, test_user):
        """Missing cField1 is a 400."""
        response = _post_json(client, self.URL, _webhook_body(test_user, cField1=''))
        assert response.status_code == 400
        assert response.json()['error'] == 'Missing userId'

    def test_missing_tier(self, client, test_user):
        """Missing tier or billing period is a 400."""
        response = _post_json(client, self.URL, _webhook_body(test_user, cField3=''))
        assert response.json()['error'] == 'Missing tier or billingPeriod'

    def test_unknown_user(self, client, test_user):
        """User ids that do not exist are a 400."""
        response = _post_json(client, self.URL, _webhook_body(test_user, cField1='999999'))
        assert response.status_code == 400
        assert response.json()['error'] == 'Unknown userId'

    def test_first_payment_activates(self, client, test_user, tracking_record,
                                     django_capture_on_commit_callbacks):
        """A first payment activates the subscription and queues an invoice."""
        with patch.object(PaymentService, 'approve_transaction', return_value=APPROVED), \
                patch('subscriptions.tasks.issue_subscription_invoice.delay') as delay:
            with django_capture_on_commit_callbacks(execute=True):
                response = _post_json(client, self.URL, _webhook_body(test_user))

        assert response.status_code == 200
        assert response.json() == {'success': True}

        record = UserSubscription.objects.get(user=test_user)
        assert record.tier == 'accelerate'
        assert record.grow_transaction_token == 'tok-100'
        assert record.grow_last_transaction_code == 'code-100'
        delay.assert_called_once_with(test_user.id, 'accelerate', 'monthly',
                                      'payer@example.com', 'Pay Er')

    def test_form_encoded_body(self, client, test_user):
        """Grow may post form-encoded bodies."""
        with patch.object(PaymentService, 'approve_transaction', return_value=APPROVED), \
                patch('subscriptions.tasks.issue_subscription_invoice.delay'):
            response = client.post(self.URL, data=_webhook_body(test_user))

        assert response.status_code == 200
        assert UserSubscription.objects.get(user=test_user).tier == 'accelerate'

    def test_later_payment_renews(self, client, test_user, momentum_subscription):
        """A payment for a tiered user renews and resets counters."""
        UserSubscription.objects.filter(pk=momentum_subscription.pk).update(usage_cvs=6)

        with patch.object(PaymentService, 'approve_transaction', return_value=APPROVED), \
                patch('subscriptions.tasks.issue_subscription_invoice.delay'):
            response = _post_json(client, self.URL, _webhook_body(test_user, cField2='momentum'))

        record = UserSubscription.objects.get(user=test_user)
        assert response.status_code == 200
        assert record.usage_cvs == 0
        assert record.grow_last_transaction_code == 'code-100'
        assert SubscriptionEvent.objects.filter(
            user=test_user, event_type=SubscriptionEvent.EVENT_RENEWED
        ).count() == 1

    def test_replayed_transaction(self, client, test_user):
        """The same transaction id delivered twice is processed once."""
        with patch.object(PaymentService, 'approve_transaction', return_value=APPROVED) as approve, \
                patch('subscriptions.tasks.issue_subscription_invoice.delay'):
            _post_json(client, self.URL, _webhook_body(test_user))
            response = _post_json(client, self.URL, _webhook_body(test_user))

        assert response.json() == {'success': True, 'duplicate': True}
        assert approve.call_count == 1
        assert SubscriptionEvent.objects.filter(user=test_user).count() == 1

    def test_redelivered_code_after_cache_loss(self, client, test_user, momentum_subscription,
                                               django_capture_on_commit_callbacks):
        """Without the cache entry, the stored transaction code still stops a double reset."""
        UserSubscription.objects.filter(pk=momentum_subscription.pk).update(usage_cvs=2)

        with patch.object(PaymentService, 'approve_transaction', return_value=APPROVED), \
                patch('subscriptions.tasks.issue_subscription_invoice.delay') as delay:
            with django_capture_on_commit_callbacks(execute=True):
                response = _post_json(client, self.URL, _webhook_body(
                    test_user, cField2='momentum', transactionCode='code-initial'
                ))

        assert response.status_code == 200
        assert UserSubscription.objects.get(user=test_user).usage_cvs == 2
        delay.assert_not_called()

    def test_approval_failure(self, client, test_user):
        """If Grow rejects the approval nothing is activated."""
        rejected = {'ok': False, 'reason': 'nope', 'code': 'GATEWAY_ERROR', 'data': {}}
        with patch.object(PaymentService, 'approve_transaction', return_value=rejected):
            response = _post_json(client, self.URL, _webhook_body(test_user))

        assert response.status_code == 500
        assert not UserSubscription.objects.filter(user=test_user, tier__isnull=False).exists()

    def test_missing_transaction_details(self, client, test_user):
        """Without transactionId and transactionToken nothing is approved or activated."""
        body = _webhook_body(test_user, cField2='elite')
        del body['transactionId']
        del body['transactionToken']

        with patch.object(PaymentService, 'approve_transaction', return_value=APPROVED) as approve:
            response = _post_json(client, self.URL, body)

        assert response.status_code == 400
        approve.assert_not_called()
        assert not UserSubscription.objects.filter(user=test_user, tier__isnull=False).exists()

    def test_failed_payment_marks_past_due(self, client, test_user, momentum_subscription):
        """A failed charge marks the subscription past_due without renewing."""
        UserSubscription.objects.filter(pk=momentum_subscription.pk).update(usage_cvs=5)

        with patch.object(PaymentService, 'approve_transaction') as approve, \
                patch('subscriptions.tasks.issue_subscription_invoice.delay') as delay:
            response = _post_json(client, self.URL, _webhook_body(
                test_user, cField2='momentum', status='failed'
            ))

        assert response.status_code == 200
        assert response.json() == {'success': True, 'payment_failed': True}
        record = UserSubscription.objects.get(user=test_user)
        assert record.status == UserSubscription.STATUS_PAST_DUE
        assert record.usage_cvs == 5
        assert record.grow_last_transaction_code == 'code-initial'
        approve.assert_not_called()
        delay.assert_not_called()
        assert not SubscriptionEvent.objects.filter(
            user=test_user, event_type=SubscriptionEvent.EVENT_RENEWED
        ).exists()
        assert SubscriptionEvent.objects.filter(
            user=test_user, event_type=SubscriptionEvent.EVENT_PAYMENT_FAILED
        ).exists()

    def test_failed_payment_without_tier(self, client, test_user, tracking_record):
        """A failed first charge leaves a tracking-only record alone."""
        response = _post_json(client, self.URL, _webhook_body(test_user, status='declined'))

        assert response.status_code == 200
        record = UserSubscription.objects.get(user=test_user)
        assert record.tier is None
        assert record.status != UserSubscription.STATUS_PAST_DUE

    def test_invoicing_failure_does_not_fail_webhook(self, client, test_user,
                                                     django_capture_on_commit_callbacks):
        """Invoice errors are logged and the webhook still succeeds."""
        with patch.object(PaymentService, 'approve_transaction', return_value=APPROVED), \
                patch.object(InvoiceService, 'create_or_find_customer',
                             side_effect=InvoicingError('Morning is down')) as find_customer:
            with django_capture_on_commit_callbacks(execute=True) as callbacks:
                response = _post_json(client, self.URL, _webhook_body(test_user))

        assert response.status_code == 200
        assert len(callbacks) == 1
        find_customer.assert_called_once_with('Pay Er', 'payer@example.com')
        assert UserSubscription.objects.get(user=test_user).tier == 'accelerate'


# ============================================================================
# CRON
# ============================================================================

@pytest.mark.django_db
class TestProcessSubscriptionsCron:
    """Tests for GET /api/cron/process-subscriptions/."""

    URL = '/api/cron/process-subscriptions/'

    def _get(self, secret='cron-secret'):
        headers = {'HTTP_AUTHORIZATION': f'Bearer {secret}'} if secret else {}
        return Client().get(self.URL, **headers)

    def test_secret_not_configured(self, settings):
        """No configured secret is a 500."""
        settings.CRON_SECRET = ''
        assert self._get().status_code == 500

    def test_wrong_secret(self):
        """Missing or wrong bearer tokens are a 401."""
        assert self._get('wrong').status_code == 401
        assert self._get(None).status_code == 401

    def test_kill_switch_off(self, settings, test_user):
        """With enforcement disabled nothing is expired."""
        settings.SUBSCRIPTION_ENABLED = False
        make_subscription(test_user, 'momentum', status='cancelled',
                          cancellation_effective_at=timezone.now() - timedelta(days=1))

        data = self._get().json()

        assert data['skipped'] is True
        assert data['reason'] == 'enforcement disabled'
        assert UserSubscription.objects.get(user=test_user).status == 'cancelled'

    def test_runs_expirations(self, test_user):
        """Due cancellations are expired and counted."""
        make_subscription(test_user, 'momentum', status='cancelled',
                          cancellation_effective_at=timezone.now() - timedelta(days=1))

        data = self._get().json()

        assert data['expired'] == 1
        assert data['reconciled'] == 0
        assert 'mismatches' not in data
        assert data['execution_time'].endswith('ms')
        assert UserSubscription.objects.get(user=test_user).status == 'expired'
