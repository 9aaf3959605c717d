# subscriptions/services/payment_service.py
"""
Payment gateway service - Grow (Meshulam) recurring billing.

Grow takes form-encoded POSTs (not JSON) and answers with
``{"status": 1, "data": {...}}`` on success or ``{"status": 0, "err": {...}}``.

Usage:
    result = PaymentService.create_recurring_payment(user.id, 'accelerate', 'monthly', email=user.email)
    if result['ok']:
        redirect_to(result['data']['payment_url'])
"""

import hmac
import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Dict, Any

import requests
from django.conf import settings
from django.core.cache import cache

from subscriptions.tiers import get_price, is_valid_tier, is_valid_billing_period

logger = logging.getLogger(__name__)


class PaymentService:
    """
    Grow payment gateway client.

    Every public call returns the standard response dict:
        {'ok': bool, 'reason': str, 'code': str (failures only), 'data': {...}}
    """

    WEBHOOK_DEDUPE_TTL = 60 * 60 * 24  # 24 hours
    SUCCESS_STATUSES = {"", "1", "approved", "success"}

    # =========================================================================
    # RECURRING PAYMENTS
    # =========================================================================

    @classmethod
    def create_recurring_payment(
        cls,
        user_id,
        tier: str,
        billing_period: str,
        email: str = '',
        full_name: str = ''
    ) -> Dict[str, Any]:
        """
        Create a hosted recurring-payment page for a tier and billing period.

        Returns:
            {ok, reason, data: {payment_url}}
        """
        if not is_valid_tier(tier) or not is_valid_billing_period(billing_period):
            return cls._fail("Invalid tier or billing period.", code="INVALID_PLAN")

        page_code = cls._get_page_code(tier, billing_period)
        if not page_code:
            logger.error(f"[GROW] No page code configured for {tier}/{billing_period}")
            return cls._fail("Payment page not configured.", code="GATEWAY_NOT_CONFIGURED")

        app_url = getattr(settings, 'APP_URL', '').rstrip('/')
        fields = {
            'pageCode': page_code,
            'sum': cls._format_amount(get_price(tier, billing_period)),
            'paymentNum': '0',  # recurring
            'cField1': str(user_id),
            'cField2': tier,
            'cField3': billing_period,
            'notifyUrl': f"{app_url}/api/webhooks/grow/",
            'successUrl': f"{app_url}/dashboard/subscription?status=success",
            'cancelUrl': f"{app_url}/dashboard/subscription?status=cancelled",
        }
        if email:
            fields['email'] = email
        if full_name:
            fields['fullName'] = full_name

        result = cls._call('/createPaymentProcess', fields)
        if not result['ok']:
            return result

        payment_url = (result['data'] or {}).get('url')
        if not payment_url:
            return cls._fail("Gateway did not return a payment URL.", code="GATEWAY_ERROR")

        cls._audit_log(user_id, "recurring_payment_created", {
            "tier": tier,
            "billing_period": billing_period,
        })
        return cls._success("Payment page created.", data={"payment_url": payment_url})

    # =========================================================================
    # ONE-TIME CHARGES
    # =========================================================================

    @classmethod
    def charge_token(
        cls,
        transaction_token: str,
        amount: Decimal,
        description: str,
        user_id
    ) -> Dict[str, Any]:
        """Charge a stored card token once (prorated upgrades)."""
        fields = {
            'transactionToken': transaction_token,
            'sum': cls._format_amount(amount),
            'description': description,
            'cField1': str(user_id),
        }
        result = cls._call('/chargeToken', fields)
        if not result['ok']:
            return result

        transaction_id = (result['data'] or {}).get('transactionId', '')
        cls._audit_log(user_id, "token_charged", {
            "amount": str(amount),
            "transaction_id": transaction_id,
        })
        return cls._success("Charge completed.", data={"transaction_id": transaction_id})

    @classmethod
    def approve_transaction(cls, transaction_id: str, transaction_token: str) -> Dict[str, Any]:
        """Acknowledge a transaction reported by webhook."""
        result = cls._call('/approveTransaction', {
            'transactionId': transaction_id,
            'transactionToken': transaction_token,
        })
        if not result['ok']:
            return result
        return cls._success("Transaction approved.", data={"transaction_id": transaction_id})

    # =========================================================================
    # WEBHOOK VERIFICATION & PARSING
    # =========================================================================

    @classmethod
    def verify_webhook(cls, body: dict) -> bool:
        """Compare the body's webhookKey with GROW_WEBHOOK_KEY in constant time."""
        expected = getattr(settings, 'GROW_WEBHOOK_KEY', '')
        if not expected:
            logger.warning("[GROW] GROW_WEBHOOK_KEY is not set - rejecting webhook")
            return False

        received = body.get('webhookKey') or ''
        if not isinstance(received, str) or not received:
            return False

        return hmac.compare_digest(received.encode('utf-8'), expected.encode('utf-8'))

    @classmethod
    def parse_webhook_payload(cls, body: dict) -> dict:
        """Normalize a webhook body. Custom fields carry user id, tier and billing period."""
        try:
            amount = Decimal(str(body.get('sum') or '0'))
        except ArithmeticError:
            amount = Decimal('0')

        return {
            'transaction_id': body.get('transactionId') or '',
            'transaction_token': body.get('transactionToken') or '',
            'transaction_code': body.get('transactionCode') or '',
            'status': body.get('status') or '',
            'sum': amount,
            'currency': body.get('currency') or 'ILS',
            'user_id': body.get('cField1') or '',
            'tier': body.get('cField2') or None,
            'billing_period': body.get('cField3') or None,
            'recurring_id': body.get('recurringId') or '',
            'email': body.get('email') or '',
            'name': body.get('fullName') or '',
        }

    @classmethod
    def is_successful_payment(cls, payload: dict) -> bool:
        """True unless the webhook reports a failed charge. A missing status counts as paid."""
        return str(payload.get('status') or '').strip().lower() in cls.SUCCESS_STATUSES

    # =========================================================================
    # IDEMPOTENCY / DEDUPLICATION
    # =========================================================================

    @classmethod
    def is_duplicate_event(cls, transaction_id: str) -> bool:
        """Check if a webhook for this transaction was already processed."""
        if not transaction_id:
            return False
        return cache.get(cls._event_cache_key(transaction_id)) is not None

    @classmethod
    def mark_event_processed(cls, transaction_id: str) -> None:
        """Remember a processed transaction (TTL: 24 hours)."""
        if not transaction_id:
            return
        cache.set(cls._event_cache_key(transaction_id), True, cls.WEBHOOK_DEDUPE_TTL)

    @classmethod
    def _event_cache_key(cls, transaction_id: str) -> str:
        return f"grow_webhook_{transaction_id}"

    # =========================================================================
    # GROW API
    # =========================================================================

    @classmethod
    def _call(cls, endpoint: str, fields: dict) -> Dict[str, Any]:
        """POST form fields to Grow and unwrap its status envelope."""
        api_url = getattr(settings, 'GROW_API_URL', '').rstrip('/')
        grow_user_id = getattr(settings, 'GROW_USER_ID', '')
        if not api_url or not grow_user_id:
            return cls._fail("Payment gateway not configured.", code="GATEWAY_NOT_CONFIGURED")

        payload = dict(fields, userId=grow_user_id)
        try:
            response = requests.post(
                f"{api_url}{endpoint}",
                data=payload,
                timeout=getattr(settings, 'GROW_TIMEOUT', 30),
            )
            response.raise_for_status()
            body = response.json()
        except requests.RequestException as e:
            logger.error(f"[GROW] {endpoint} request failed: {e}")
            return cls._fail(f"Gateway request failed: {e}", code="GATEWAY_ERROR")
        except ValueError as e:
            logger.error(f"[GROW] {endpoint} returned invalid JSON: {e}")
            return cls._fail("Gateway returned an invalid response.", code="GATEWAY_ERROR")

        if str(body.get('status')) == '1':
            return cls._success("OK", data=body.get('data') or {})

        message = (body.get('err') or {}).get('message') or 'Unknown gateway error'
        logger.warning(f"[GROW] {endpoint} rejected: {message}")
        return cls._fail(message, code="GATEWAY_ERROR")

    @classmethod
    def _get_page_code(cls, tier: str, billing_period: str) -> Optional[str]:
        page_codes = getattr(settings, 'GROW_PAGE_CODES', {})
        return (page_codes.get(tier) or {}).get(billing_period) or None

    @classmethod
    def _format_amount(cls, amount) -> str:
        return str(Decimal(str(amount)).quantize(Decimal('0.01'), rounding=ROUND_HALF_UP))

    # =========================================================================
    # RESPONSE BUILDERS
    # =========================================================================

    @classmethod
    def _success(cls, reason: str, data: Optional[dict] = None) -> dict:
        return {"ok": True, "reason": reason, "data": data or {}}

    @classmethod
    def _fail(cls, reason: str, code: str = "ERROR", data: Optional[dict] = None) -> dict:
        return {"ok": False, "reason": reason, "code": code, "data": data or {}}

    # =========================================================================
    # AUDIT
    # =========================================================================

    @classmethod
    def _audit_log(cls, user_id, action: str, metadata: dict):
        """Log payment events."""
        logger.info(f"[PAYMENT_AUDIT] {action} | user={user_id} | {metadata}")
