# subscriptions/views.py
"""
JSON API for subscription management, usage metering, the Grow webhook and
the daily cron.
"""

import json
import logging
import time

from django.conf import settings
from django.contrib.auth import get_user_model
from django.db import transaction
from django.http import JsonResponse
from django.utils import timezone
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET, require_POST

from subscriptions.access_control import AccessControl
from subscriptions.decorators import api_login_required
from subscriptions.exceptions import NoTierError, SubscriptionError
from subscriptions.tiers import (
    billing_period_label, get_display_name, is_downgrade, is_upgrade,
    is_valid_billing_period, is_valid_tier, normalize_feature, normalize_resource,
)

logger = logging.getLogger(__name__)


# ==============================================================================
# HELPERS
# ==============================================================================

def _json_body(request):
    """Parse a JSON request body; empty bodies count as {}."""
    if not request.body:
        return {}
    try:
        data = json.loads(request.body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    return data if isinstance(data, dict) else None


def _bad_request(reason, code='VALIDATION_ERROR'):
    return JsonResponse({'ok': False, 'code': code, 'reason': reason}, status=400)


def _error_response(exc):
    return JsonResponse(exc.as_dict(), status=exc.status_code)


def _internal_error():
    return JsonResponse({
        'ok': False,
        'code': 'INTERNAL_ERROR',
        'reason': 'Internal server error.',
    }, status=500)


def _format_date(value):
    return value.strftime('%B %d, %Y').replace(' 0', ' ') if value else ''


# ==============================================================================
# SUBSCRIPTION MANAGEMENT
# ==============================================================================

@require_GET
@api_login_required
def subscription_status(request):
    """
    Current subscription, usage and feature summary.

    URL: /api/subscription/status/
    """
    return JsonResponse({'ok': True, **AccessControl().get_subscription_status(request.user)})


@require_POST
@api_login_required
def initiate_subscription(request):
    """
    Start checkout: remember the chosen plan and return the hosted payment page.

    URL: /api/subscription/initiate/
    Body: {tier, billing_period}
    """
    from subscriptions.services.payment_service import PaymentService
    from subscriptions.services.subscription_service import SubscriptionManager

    data = _json_body(request)
    if data is None:
        return _bad_request('Invalid JSON.')

    tier = data.get('tier')
    billing_period = data.get('billing_period') or data.get('billingPeriod')
    if not is_valid_tier(tier) or not is_valid_billing_period(billing_period):
        return _bad_request('Invalid tier or billing period.')

    try:
        SubscriptionManager.record_pending_selection(request.user.id, tier, billing_period)
        result = PaymentService.create_recurring_payment(
            user_id=request.user.id,
            tier=tier,
            billing_period=billing_period,
            email=request.user.email,
            full_name=request.user.get_full_name(),
        )
    except SubscriptionError as e:
        return _error_response(e)
    except Exception:
        logger.exception(f"Initiate subscription failed for user {request.user.id}")
        return _internal_error()

    if not result['ok']:
        return JsonResponse({
            'ok': False,
            'code': result.get('code', 'GATEWAY_ERROR'),
            'reason': 'Failed to create payment.',
        }, status=500)

    return JsonResponse({'ok': True, 'payment_url': result['data']['payment_url']})


@require_POST
@api_login_required
def cancel_subscription_view(request):
    """
    Cancel at the end of the current period.

    URL: /api/subscription/cancel/
    """
    from subscriptions.services.subscription_service import SubscriptionManager

    try:
        result = SubscriptionManager.cancel_subscription(request.user.id)
    except SubscriptionError as e:
        if isinstance(e, NoTierError):
            return JsonResponse(e.as_dict(), status=404)
        return _error_response(e)
    except Exception:
        logger.exception(f"Cancel failed for user {request.user.id}")
        return _internal_error()

    effective_at = result['cancellation_effective_at']
    return JsonResponse({
        'ok': True,
        'cancellation_effective_at': effective_at,
        'message': (
            f"Your {get_display_name(result['tier'])} subscription will remain "
            f"active until {_format_date(effective_at)}."
        ),
    })


@require_POST
@api_login_required
def change_plan(request):
    """
    Upgrade, downgrade, change billing period or undo a scheduled change.

    URL: /api/subscription/change-plan/
    Body: {target_tier, target_billing_period?}

    Scenarios, checked in order:
        - same tier with a change scheduled -> cancel the scheduled change
        - higher tier -> immediate upgrade with prorated charge
        - lower tier -> downgrade scheduled for period end
        - same tier, other billing period -> period change at next renewal
    """
    from subscriptions.services.subscription_service import SubscriptionManager

    data = _json_body(request)
    if data is None:
        return _bad_request('Invalid JSON.')

    target_tier = data.get('target_tier') or data.get('targetTier')
    target_period = data.get('target_billing_period') or data.get('targetBillingPeriod')
    if not is_valid_tier(target_tier):
        return _bad_request('Invalid target tier.')
    if target_period and not is_valid_billing_period(target_period):
        return _bad_request('Invalid target billing period.')

    user_id = request.user.id
    record = SubscriptionManager.get_subscription(user_id)
    if record is None or not record.tier:
        return JsonResponse({
            'ok': False,
            'code': 'NO_SUBSCRIPTION',
            'reason': 'No active subscription found.',
        }, status=404)

    try:
        has_scheduled = record.scheduled_tier_change or record.scheduled_billing_period_change
        keeps_period = not target_period or target_period == record.billing_period
        if target_tier == record.tier and has_scheduled and keeps_period:
            SubscriptionManager.cancel_scheduled_change(user_id)
            return JsonResponse({'ok': True, 'message': 'Scheduled change cancelled.'})

        if is_upgrade(record.tier, target_tier):
            result = SubscriptionManager.upgrade_subscription(user_id, target_tier)
            return JsonResponse({
                'ok': True,
                'immediate': True,
                'prorated_amount': result['prorated_amount'],
                'charged': result['charged'],
                'new_tier': target_tier,
            })

        if is_downgrade(record.tier, target_tier):
            effective_date = SubscriptionManager.schedule_downgrade(user_id, target_tier)
            return JsonResponse({
                'ok': True,
                'immediate': False,
                'effective_date': effective_date,
                'message': (
                    f"Your downgrade to {get_display_name(target_tier)} will take "
                    f"effect on {_format_date(effective_date)}."
                ),
            })

        if target_period and target_period != record.billing_period:
            effective_date = SubscriptionManager.schedule_billing_period_change(user_id, target_period)
            return JsonResponse({
                'ok': True,
                'immediate': False,
                'effective_date': effective_date,
                'message': (
                    f"Your billing period will change to "
                    f"{billing_period_label(target_period)} at your next renewal."
                ),
            })
    except SubscriptionError as e:
        return _error_response(e)
    except Exception:
        logger.exception(f"Change plan failed for user {user_id}")
        return _internal_error()

    return JsonResponse({'ok': True, 'message': 'No changes needed. You are already on this plan.'})


# ==============================================================================
# USAGE & FEATURE ACCESS
# ==============================================================================

@require_POST
@api_login_required
def check_access(request):
    """URL: /api/subscription/check-access/  Body: {feature}"""
    data = _json_body(request)
    if data is None or not normalize_feature(data.get('feature')):
        return _bad_request('Unknown feature.', code='UNKNOWN_FEATURE')

    try:
        result = AccessControl().check_feature_access(request.user, data['feature'])
    except SubscriptionError as e:
        return _error_response(e)
    return JsonResponse({'ok': True, **result})


@require_POST
@api_login_required
def check_limit(request):
    """URL: /api/subscription/check-limit/  Body: {resource}"""
    data = _json_body(request)
    if data is None or not normalize_resource(data.get('resource')):
        return _bad_request('Unknown resource.', code='UNKNOWN_RESOURCE')

    try:
        result = AccessControl().check_usage_limit(request.user, data['resource'])
    except SubscriptionError as e:
        return _error_response(e)
    return JsonResponse({'ok': True, **result})


@require_POST
@api_login_required
def increment_usage(request):
    """
    Count one use of a resource. Counting happens whether or not enforcement
    is switched on.

    URL: /api/subscription/increment-usage/
    Body: {resource}
    """
    data = _json_body(request)
    if data is None or not normalize_resource(data.get('resource')):
        return _bad_request('Unknown resource.', code='UNKNOWN_RESOURCE')

    try:
        used = AccessControl().increment_usage(request.user, data['resource'])
    except SubscriptionError as e:
        return _error_response(e)
    except Exception:
        logger.exception(f"Usage increment failed for user {request.user.id}")
        return _internal_error()

    return JsonResponse({'ok': True, 'resource': normalize_resource(data['resource']), 'used': used})


# ==============================================================================
# RECOMMENDATION
# ==============================================================================

@require_GET
@api_login_required
def recommendation(request):
    """URL: /api/subscription/recommendation/"""
    from subscriptions.services.recommendation_service import RecommendationService
    from subscriptions.services.subscription_service import SubscriptionManager

    averages = RecommendationService.get_usage_averages(request.user.id)
    result = RecommendationService.get_recommendation(averages)

    record = SubscriptionManager.get_subscription(request.user.id)
    current_tier = record.tier if record else None
    recommended = result['recommended_tier']

    return JsonResponse({
        'ok': True,
        **result,
        'averages': averages,
        'current_tier': current_tier,
        'is_current_plan': current_tier == recommended,
        'is_upgrade': bool(current_tier) and is_upgrade(current_tier, recommended),
        'is_downgrade': bool(current_tier) and is_downgrade(current_tier, recommended),
    })


@require_GET
@api_login_required
def usage_trends(request):
    """URL: /api/subscription/usage-trends/?months=6"""
    from subscriptions.services.recommendation_service import RecommendationService

    try:
        months = int(request.GET.get('months', 6))
    except ValueError:
        return _bad_request('months must be an integer.')
    months = max(1, min(months, 24))

    return JsonResponse({'ok': True, **RecommendationService.get_usage_trends(request.user.id, months)})


# ==============================================================================
# GROW WEBHOOK
# ==============================================================================

@csrf_exempt
@require_POST
@transaction.non_atomic_requests
def grow_webhook(request):
    """
    Payment notification from Grow (JSON or form-encoded).

    First payment for a user without a tier activates the subscription;
    every later payment renews it. A failed charge marks the subscription
    past_due instead. Invoicing is dispatched after the state change and
    never affects the response.

    URL: /api/webhooks/grow/
    """
    from subscriptions.services.payment_service import PaymentService
    from subscriptions.services.subscription_service import SubscriptionManager

    if request.content_type == 'application/json':
        body = _json_body(request)
        if body is None:
            return JsonResponse({'error': 'Invalid JSON'}, status=400)
    else:
        body = request.POST.dict()

    if not PaymentService.verify_webhook(body):
        logger.warning("[GROW_WEBHOOK] Invalid webhook key")
        return JsonResponse({'error': 'Invalid webhook key'}, status=401)

    payload = PaymentService.parse_webhook_payload(body)
    user_id = payload['user_id']
    if not user_id:
        return JsonResponse({'error': 'Missing userId'}, status=400)

    tier, billing_period = payload['tier'], payload['billing_period']
    if not is_valid_tier(tier) or not is_valid_billing_period(billing_period):
        return JsonResponse({'error': 'Missing tier or billingPeriod'}, status=400)

    User = get_user_model()
    user = User.objects.filter(pk=user_id).first() if str(user_id).isdigit() else None
    if user is None:
        logger.warning(f"[GROW_WEBHOOK] Unknown userId {user_id}")
        return JsonResponse({'error': 'Unknown userId'}, status=400)

    transaction_id = payload['transaction_id']
    if PaymentService.is_duplicate_event(transaction_id):
        logger.info(f"[GROW_WEBHOOK] Duplicate transaction {transaction_id} ignored")
        return JsonResponse({'success': True, 'duplicate': True})

    if not PaymentService.is_successful_payment(payload):
        return _handle_failed_payment(user, payload)

    if not transaction_id or not payload['transaction_token']:
        return JsonResponse({'error': 'Missing transactionId or transactionToken'}, status=400)

    approval = PaymentService.approve_transaction(transaction_id, payload['transaction_token'])
    if not approval['ok']:
        logger.error(f"[GROW_WEBHOOK] Approval failed for {transaction_id}: {approval['reason']}")
        return JsonResponse({'error': 'Failed to approve transaction'}, status=500)

    payment_data = {
        'transaction_token': payload['transaction_token'],
        'recurring_id': payload['recurring_id'],
        'transaction_code': payload['transaction_code'],
    }

    try:
        record = SubscriptionManager.get_subscription(user.id)
        if record is None or not record.tier:
            SubscriptionManager.activate_subscription(user.id, tier, billing_period, payment_data)
            action = 'activated'
        else:
            result = SubscriptionManager.renew_subscription(
                user.id, payload['transaction_code'], payment_data
            )
            action = 'renewed' if result['renewed'] else 'duplicate'
            tier, billing_period = result['tier'], result['billing_period']
    except SubscriptionError as e:
        logger.error(f"[GROW_WEBHOOK] {e.code} for user {user.id}: {e.message}")
        return JsonResponse({'error': e.message}, status=e.status_code)
    except Exception:
        logger.exception(f"[GROW_WEBHOOK] Processing failed for user {user.id}")
        return JsonResponse({'error': 'Internal server error'}, status=500)

    PaymentService.mark_event_processed(transaction_id)
    logger.info(f"[GROW_WEBHOOK] Subscription {action} for user {user.id} ({tier}/{billing_period})")

    if action != 'duplicate':
        _dispatch_invoice(
            user.id, tier, billing_period,
            email=payload['email'] or user.email,
            name=payload['name'] or user.get_full_name(),
        )

    return JsonResponse({'success': True})


def _handle_failed_payment(user, payload):
    """A failed charge marks a tiered subscription past_due; nothing is renewed."""
    from subscriptions.services.payment_service import PaymentService
    from subscriptions.services.subscription_service import SubscriptionManager

    record = SubscriptionManager.get_subscription(user.id)
    if record is None or not record.tier:
        logger.warning(f"[GROW_WEBHOOK] Failed payment for user {user.id} without a subscription")
        return JsonResponse({'success': True, 'ignored': True})

    try:
        SubscriptionManager.handle_payment_failure(user.id)
    except Exception:
        logger.exception(f"[GROW_WEBHOOK] Could not record payment failure for user {user.id}")
        return JsonResponse({'error': 'Internal server error'}, status=500)

    PaymentService.mark_event_processed(payload['transaction_id'])
    logger.warning(
        f"[GROW_WEBHOOK] Payment failed for user {user.id} "
        f"(status {payload['status']}, transaction {payload['transaction_id']})"
    )
    return JsonResponse({'success': True, 'payment_failed': True})


def _dispatch_invoice(user_id, tier, billing_period, email, name):
    from subscriptions.tasks import issue_subscription_invoice

    try:
        transaction.on_commit(
            lambda: issue_subscription_invoice.delay(user_id, tier, billing_period, email, name)
        )
    except Exception:
        logger.exception(f"[GROW_WEBHOOK] Could not queue invoice for user {user_id}")


# ==============================================================================
# CRON
# ==============================================================================

@csrf_exempt
@require_GET
def process_subscriptions_cron(request):
    """
    Daily maintenance: expire subscriptions and check snapshot integrity.

    URL: /api/cron/process-subscriptions/
    Header: Authorization: Bearer <CRON_SECRET>
    """
    from subscriptions.services.reconciliation_service import ReconciliationService
    from subscriptions.services.subscription_service import SubscriptionManager

    secret = getattr(settings, 'CRON_SECRET', '')
    if not secret:
        logger.error("[CRON] CRON_SECRET is not configured")
        return JsonResponse({'error': 'Cron secret not configured'}, status=500)

    auth_header = request.headers.get('Authorization', '')
    if auth_header != f'Bearer {secret}':
        return JsonResponse({'error': 'Unauthorized'}, status=401)

    started = time.monotonic()
    timestamp = timezone.now().isoformat()

    if not AccessControl().enforcement_enabled:
        logger.info("[CRON] Subscription enforcement disabled, skipping")
        return JsonResponse({'skipped': True, 'reason': 'enforcement disabled', 'timestamp': timestamp})

    try:
        expired = SubscriptionManager.process_expirations()
        reconciliation = ReconciliationService.reconcile_snapshots()
    except Exception:
        logger.exception("[CRON] Subscription processing failed")
        return JsonResponse({'error': 'Internal server error'}, status=500)

    response = {
        'expired': expired,
        'reconciled': reconciliation['reconciled'],
        'timestamp': timestamp,
        'execution_time': f"{int((time.monotonic() - started) * 1000)}ms",
    }
    if reconciliation['mismatches']:
        response['mismatches'] = reconciliation['mismatches']

    logger.info(f"[CRON] Processed subscriptions: {response}")
    return JsonResponse(response)
