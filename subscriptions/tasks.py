# subscriptions/tasks.py
"""
Celery tasks for subscription side effects and scheduled maintenance.
"""

import logging
from decimal import Decimal

from celery import shared_task

from subscriptions.tiers import get_price, subscription_description

logger = logging.getLogger(__name__)


@shared_task
def issue_subscription_invoice(user_id, tier, billing_period, email, name=''):
    """
    Issue an invoice-receipt for a subscription payment.

    Failures are logged and reported in the result; nothing is raised or retried.

    Returns:
        {'status': 'issued'|'skipped'|'failed', ...}
    """
    from subscriptions.models import UserSubscription
    from subscriptions.services.invoice_service import InvoiceService

    if not email:
        logger.info(f"[MORNING] No email for user {user_id}, invoice skipped")
        return {'status': 'skipped', 'reason': 'no email'}

    try:
        amount = get_price(tier, billing_period)
        description = subscription_description(tier, billing_period)

        record = UserSubscription.objects.get_for_user(user_id)
        customer_id = record.morning_customer_id if record else ''
        if not customer_id:
            customer_id = InvoiceService.create_or_find_customer(name, email)
            UserSubscription.objects.for_user(user_id).update(morning_customer_id=customer_id)

        document = InvoiceService.create_invoice_receipt(customer_id, Decimal(amount), description)
    except Exception as e:
        logger.error(f"[MORNING] Invoice for user {user_id} failed: {e}", exc_info=True)
        return {'status': 'failed', 'error': str(e)}

    logger.info(f"[MORNING] Invoice {document.get('document_id')} issued for user {user_id}")
    return {'status': 'issued', 'customer_id': customer_id, **document}


@shared_task
def process_subscription_expirations():
    """Daily beat task: expire cancelled and lapsed past_due subscriptions."""
    from django.conf import settings
    from subscriptions.services.subscription_service import SubscriptionManager

    if not getattr(settings, 'SUBSCRIPTION_ENABLED', False):
        logger.info("[CRON] Subscription enforcement disabled, skipping expirations")
        return {'skipped': True, 'reason': 'enforcement disabled'}

    expired = SubscriptionManager.process_expirations()
    return {'expired': expired}
