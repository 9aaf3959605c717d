# subscriptions/services/subscription_service.py
"""
Subscription lifecycle - activation, renewal, plan changes, cancellation, expiration.

SubscriptionManager is the only writer of tier, status, period, scheduled-change
and counter-reset fields. Every mutation locks the user's row for the duration
of its transaction, so concurrent webhooks and client requests for the same
user are applied one after the other.
"""

import logging
from datetime import timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from subscriptions.exceptions import (
    AlreadyCancelledError, InvalidBillingPeriodError, InvalidTierError,
    MissingPeriodEndError, NoPaymentMethodError, NoSubscriptionError, NoTierError,
    NotADowngradeError, NotAnUpgradeError, PaymentGatewayError,
)
from subscriptions.tiers import (
    billing_period_label, get_display_name, get_price, is_downgrade, is_upgrade,
    is_valid_billing_period, is_valid_tier, period_end,
)

logger = logging.getLogger(__name__)


def get_grace_period_days() -> int:
    return getattr(settings, 'SUBSCRIPTION_GRACE_PERIOD_DAYS', 3)


def calculate_proration(current_tier: str, target_tier: str, billing_period: str,
                        period_start, period_end_at, now=None) -> Decimal:
    """
    Prorated charge for switching tiers mid-period.

    (new price - old price) / total days * remaining days, using whole
    calendar days, rounded to cents. Zero when the period has no days left.
    """
    now = now or timezone.now()
    total_days = (timezone.localdate(period_end_at) - timezone.localdate(period_start)).days
    remaining_days = (timezone.localdate(period_end_at) - timezone.localdate(now)).days

    if total_days <= 0 or remaining_days <= 0:
        return Decimal('0.00')

    difference = get_price(target_tier, billing_period) - get_price(current_tier, billing_period)
    amount = difference / Decimal(total_days) * Decimal(remaining_days)
    return amount.quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)


class SubscriptionManager:
    """
    Subscription state machine.

    Usage:
        SubscriptionManager.activate_subscription(user.id, 'accelerate', 'monthly')
        SubscriptionManager.upgrade_subscription(user.id, 'elite')
        SubscriptionManager.renew_subscription(user.id, transaction_code)
    """

    # =========================================================================
    # LOOKUP
    # =========================================================================

    @classmethod
    def get_subscription(cls, user_id):
        from subscriptions.models import UserSubscription
        return UserSubscription.objects.get_for_user(user_id)

    @classmethod
    def _lock_or_create(cls, user_id):
        """Lock the user's row, creating a tracking-only row first if needed."""
        from subscriptions.models import UserSubscription
        UserSubscription.objects.get_or_create_tracking(user_id)
        return UserSubscription.objects.locked_for_user(user_id)

    @classmethod
    def _lock_existing(cls, user_id):
        from subscriptions.models import UserSubscription
        record = UserSubscription.objects.locked_for_user(user_id)
        if record is None:
            raise NoSubscriptionError()
        return record

    @classmethod
    def _require_tier(cls, record):
        if not record.tier or not record.billing_period:
            raise NoTierError()

    # =========================================================================
    # ACTIVATION
    # =========================================================================

    @classmethod
    def activate_subscription(cls, user_id, tier: str, billing_period: str,
                              payment_data: Optional[dict] = None):
        """
        Start (or restart) a paid subscription.

        Resets all usage counters and clears pending, scheduled and
        cancellation state. ``last_reset_at`` is left untouched so the first
        renewal performs its own reset.

        Args:
            payment_data: optional {transaction_token, recurring_id, transaction_code}
        """
        from subscriptions.models import SubscriptionEvent

        if not is_valid_tier(tier):
            raise InvalidTierError(f"Invalid tier: {tier}")
        if not is_valid_billing_period(billing_period):
            raise InvalidBillingPeriodError(f"Invalid billing period: {billing_period}")

        payment_data = payment_data or {}

        with transaction.atomic():
            record = cls._lock_or_create(user_id)
            now = timezone.now()

            record.tier = tier
            record.billing_period = billing_period
            record.status = record.STATUS_ACTIVE
            record.current_period_start = now
            record.current_period_end = period_end(now, billing_period)
            record.clear_usage()
            record.pending_tier = None
            record.pending_billing_period = None
            record.scheduled_tier_change = None
            record.scheduled_billing_period_change = None
            record.cancelled_at = None
            record.cancellation_effective_at = None

            if payment_data.get('transaction_token'):
                record.grow_transaction_token = payment_data['transaction_token']
            if payment_data.get('recurring_id'):
                record.grow_recurring_id = payment_data['recurring_id']
            if payment_data.get('transaction_code'):
                record.grow_last_transaction_code = payment_data['transaction_code']

            record.save()

            SubscriptionEvent.objects.log(
                user_id,
                SubscriptionEvent.EVENT_ACTIVATED,
                metadata={
                    'transaction_code': payment_data.get('transaction_code', ''),
                    'current_period_end': record.current_period_end,
                },
                tier=tier,
                billing_period=billing_period,
                amount=get_price(tier, billing_period),
            )

        cls._audit_log(user_id, "activated", {"tier": tier, "billing_period": billing_period})
        return record

    @classmethod
    def record_pending_selection(cls, user_id, tier: str, billing_period: str):
        """Remember the plan chosen before the user leaves for the payment page."""
        if not is_valid_tier(tier):
            raise InvalidTierError(f"Invalid tier: {tier}")
        if not is_valid_billing_period(billing_period):
            raise InvalidBillingPeriodError(f"Invalid billing period: {billing_period}")

        with transaction.atomic():
            record = cls._lock_or_create(user_id)
            record.pending_tier = tier
            record.pending_billing_period = billing_period
            record.save(update_fields=['pending_tier', 'pending_billing_period', 'updated_at'])

        return record

    # =========================================================================
    # RENEWAL
    # =========================================================================

    @classmethod
    def renew_subscription(cls, user_id, transaction_code: str,
                           payment_data: Optional[dict] = None) -> dict:
        """
        Apply a renewal payment.

        A transaction code equal to the last one seen is ignored entirely.
        Otherwise the renewal always applies, but usage counters are only
        reset when the current period has not been reset yet or is within the
        grace window of its end.

        Scheduled tier/billing-period changes are applied here and cleared.
        The new period is anchored to now.

        Returns:
            {renewed, duplicate, usage_reset, tier, billing_period}
        """
        from subscriptions.models import SubscriptionEvent

        payment_data = payment_data or {}

        with transaction.atomic():
            record = cls._lock_existing(user_id)
            cls._require_tier(record)

            if transaction_code and transaction_code == record.grow_last_transaction_code:
                logger.info(f"Duplicate renewal ignored for user {user_id} (code {transaction_code})")
                return {
                    'renewed': False,
                    'duplicate': True,
                    'usage_reset': False,
                    'tier': record.tier,
                    'billing_period': record.billing_period,
                }

            now = timezone.now()
            reset_counters = cls._renewal_due(record, now)

            previous_tier = record.tier
            previous_period = record.billing_period
            applied_tier_change = record.scheduled_tier_change
            applied_period_change = record.scheduled_billing_period_change

            record.tier = applied_tier_change or record.tier
            record.billing_period = applied_period_change or record.billing_period
            record.scheduled_tier_change = None
            record.scheduled_billing_period_change = None
            record.status = record.STATUS_ACTIVE
            record.cancelled_at = None
            record.cancellation_effective_at = None
            record.current_period_start = now
            record.current_period_end = period_end(now, record.billing_period)
            if reset_counters:
                record.clear_usage()
                record.last_reset_at = now
            else:
                logger.warning(
                    f"Renewal for user {user_id} kept usage counters: period already reset "
                    f"(code {transaction_code})"
                )
            record.grow_last_transaction_code = transaction_code

            if payment_data.get('transaction_token'):
                record.grow_transaction_token = payment_data['transaction_token']
            if payment_data.get('recurring_id'):
                record.grow_recurring_id = payment_data['recurring_id']

            record.save()

            SubscriptionEvent.objects.log(
                user_id,
                SubscriptionEvent.EVENT_RENEWED,
                metadata={
                    'transaction_code': transaction_code,
                    'previous_tier': previous_tier,
                    'previous_billing_period': previous_period,
                    'scheduled_tier_applied': applied_tier_change,
                    'scheduled_period_applied': applied_period_change,
                    'counters_reset': reset_counters,
                },
                tier=record.tier,
                billing_period=record.billing_period,
                amount=get_price(record.tier, record.billing_period),
            )

        cls._audit_log(user_id, "renewed", {
            "tier": record.tier,
            "billing_period": record.billing_period,
            "transaction_code": transaction_code,
        })
        return {
            'renewed': True,
            'duplicate': False,
            'usage_reset': reset_counters,
            'tier': record.tier,
            'billing_period': record.billing_period,
        }

    @classmethod
    def _renewal_due(cls, record, now) -> bool:
        if record.last_reset_at is None or record.current_period_start is None:
            return True
        if record.last_reset_at < record.current_period_start:
            return True
        if record.current_period_end is None:
            return True
        return now >= record.current_period_end - timedelta(days=get_grace_period_days())

    # =========================================================================
    # PLAN CHANGES
    # =========================================================================

    @classmethod
    def upgrade_subscription(cls, user_id, target_tier: str) -> dict:
        """
        Move to a higher tier immediately and charge the prorated difference.

        Period dates, billing period and usage counters are unchanged. A
        pending downgrade is discarded.

        Returns:
            {tier, previous_tier, prorated_amount, charged, transaction_id}
        """
        from subscriptions.models import SubscriptionEvent
        from subscriptions.services.payment_service import PaymentService

        if not is_valid_tier(target_tier):
            raise InvalidTierError(f"Invalid tier: {target_tier}")

        with transaction.atomic():
            record = cls._lock_existing(user_id)
            cls._require_tier(record)

            if not is_upgrade(record.tier, target_tier):
                raise NotAnUpgradeError(
                    f"Cannot upgrade from {record.tier} to {target_tier}.",
                    current_tier=record.tier,
                    target_tier=target_tier,
                )

            amount = calculate_proration(
                record.tier, target_tier, record.billing_period,
                record.current_period_start, record.current_period_end,
            )

            charged = False
            transaction_id = ''
            if amount > 0:
                if not record.grow_transaction_token:
                    raise NoPaymentMethodError()
                description = (
                    f"Upgrade to {get_display_name(target_tier)} "
                    f"({billing_period_label(record.billing_period)}) - prorated"
                )
                result = PaymentService.charge_token(
                    record.grow_transaction_token, amount, description, user_id
                )
                if not result['ok']:
                    raise PaymentGatewayError(result['reason'])
                charged = True
                transaction_id = result['data'].get('transaction_id', '')
                cls._audit_log(user_id, "upgrade_charged", {
                    "target_tier": target_tier,
                    "amount": str(amount),
                    "transaction_id": transaction_id,
                })

            previous_tier = record.tier
            record.tier = target_tier
            record.scheduled_tier_change = None
            record.save(update_fields=['tier', 'scheduled_tier_change', 'updated_at'])

            SubscriptionEvent.objects.log(
                user_id,
                SubscriptionEvent.EVENT_UPGRADED,
                metadata={
                    'previous_tier': previous_tier,
                    'prorated_amount': amount,
                    'charged': charged,
                    'transaction_id': transaction_id,
                },
                tier=target_tier,
                billing_period=record.billing_period,
                amount=amount,
            )

        cls._audit_log(user_id, "upgraded", {
            "from": previous_tier,
            "to": target_tier,
            "prorated_amount": str(amount),
        })
        return {
            'tier': target_tier,
            'previous_tier': previous_tier,
            'prorated_amount': amount,
            'charged': charged,
            'transaction_id': transaction_id,
        }

    @classmethod
    def schedule_downgrade(cls, user_id, target_tier: str):
        """
        Schedule a lower tier for the next renewal.

        Returns:
            The effective date (current period end).
        """
        from subscriptions.models import SubscriptionEvent

        if not is_valid_tier(target_tier):
            raise InvalidTierError(f"Invalid tier: {target_tier}")

        with transaction.atomic():
            record = cls._lock_existing(user_id)
            cls._require_tier(record)

            if not is_downgrade(record.tier, target_tier):
                raise NotADowngradeError(
                    f"Cannot downgrade from {record.tier} to {target_tier}.",
                    current_tier=record.tier,
                    target_tier=target_tier,
                )

            record.scheduled_tier_change = target_tier
            record.save(update_fields=['scheduled_tier_change', 'updated_at'])

            SubscriptionEvent.objects.log(
                user_id,
                SubscriptionEvent.EVENT_DOWNGRADE_SCHEDULED,
                metadata={
                    'current_tier': record.tier,
                    'effective_date': record.current_period_end,
                },
                tier=target_tier,
                billing_period=record.billing_period,
            )

        cls._audit_log(user_id, "downgrade_scheduled", {"from": record.tier, "to": target_tier})
        return record.current_period_end

    @classmethod
    def schedule_billing_period_change(cls, user_id, billing_period: str):
        """Schedule a different billing period for the next renewal."""
        from subscriptions.models import SubscriptionEvent

        if not is_valid_billing_period(billing_period):
            raise InvalidBillingPeriodError(f"Invalid billing period: {billing_period}")

        with transaction.atomic():
            record = cls._lock_existing(user_id)
            cls._require_tier(record)

            record.scheduled_billing_period_change = billing_period
            record.save(update_fields=['scheduled_billing_period_change', 'updated_at'])

            SubscriptionEvent.objects.log(
                user_id,
                SubscriptionEvent.EVENT_BILLING_PERIOD_CHANGE_SCHEDULED,
                metadata={
                    'current_billing_period': record.billing_period,
                    'effective_date': record.current_period_end,
                },
                tier=record.tier,
                billing_period=billing_period,
            )

        cls._audit_log(user_id, "billing_period_change_scheduled", {
            "from": record.billing_period,
            "to": billing_period,
        })
        return record.current_period_end

    @classmethod
    def cancel_scheduled_change(cls, user_id):
        """Drop any pending tier or billing-period change."""
        from subscriptions.models import SubscriptionEvent

        with transaction.atomic():
            record = cls._lock_existing(user_id)

            cleared = {
                'scheduled_tier_change': record.scheduled_tier_change,
                'scheduled_billing_period_change': record.scheduled_billing_period_change,
            }
            record.scheduled_tier_change = None
            record.scheduled_billing_period_change = None
            record.save(update_fields=[
                'scheduled_tier_change', 'scheduled_billing_period_change', 'updated_at'
            ])

            SubscriptionEvent.objects.log(
                user_id,
                SubscriptionEvent.EVENT_SCHEDULED_CHANGE_CANCELLED,
                metadata=cleared,
                tier=record.tier,
                billing_period=record.billing_period,
            )

        cls._audit_log(user_id, "scheduled_change_cancelled", cleared)
        return record

    # =========================================================================
    # CANCELLATION & PAYMENT FAILURE
    # =========================================================================

    @classmethod
    def cancel_subscription(cls, user_id) -> dict:
        """
        Cancel at period end. Tier and counters stay as they are, so the
        user keeps full access until the effective date.

        Returns:
            {cancellation_effective_at, tier}
        """
        from subscriptions.models import SubscriptionEvent

        with transaction.atomic():
            record = cls._lock_existing(user_id)
            if not record.tier:
                raise NoTierError("No active subscription to cancel.")
            if record.is_cancelled():
                raise AlreadyCancelledError()
            if not record.current_period_end:
                raise MissingPeriodEndError()

            record.status = record.STATUS_CANCELLED
            record.cancelled_at = timezone.now()
            record.cancellation_effective_at = record.current_period_end
            record.save(update_fields=[
                'status', 'cancelled_at', 'cancellation_effective_at', 'updated_at'
            ])

            SubscriptionEvent.objects.log(
                user_id,
                SubscriptionEvent.EVENT_CANCELLED,
                metadata={'cancellation_effective_at': record.cancellation_effective_at},
                tier=record.tier,
                billing_period=record.billing_period,
            )

        cls._audit_log(user_id, "cancelled", {
            "effective_at": record.cancellation_effective_at.isoformat(),
        })
        return {
            'cancellation_effective_at': record.cancellation_effective_at,
            'tier': record.tier,
        }

    @classmethod
    def handle_payment_failure(cls, user_id):
        """Mark the subscription past_due. Tier and counters are untouched."""
        from subscriptions.models import SubscriptionEvent

        with transaction.atomic():
            record = cls._lock_existing(user_id)
            cls._require_tier(record)
            record.status = record.STATUS_PAST_DUE
            record.save(update_fields=['status', 'updated_at'])

            SubscriptionEvent.objects.log(
                user_id,
                SubscriptionEvent.EVENT_PAYMENT_FAILED,
                tier=record.tier,
                billing_period=record.billing_period,
            )

        cls._audit_log(user_id, "payment_failed", {"tier": record.tier})
        return record

    # =========================================================================
    # EXPIRATION (CRON)
    # =========================================================================

    @classmethod
    def process_expirations(cls) -> int:
        """
        Expire cancelled subscriptions past their effective date and past_due
        subscriptions that have not been updated within the grace period.

        Safe to run repeatedly: only cancelled/past_due rows with a tier are
        candidates. Tracking-only records are never touched.

        Returns:
            Number of records moved to expired.
        """
        from subscriptions.models import UserSubscription, SubscriptionEvent

        now = timezone.now()
        grace_cutoff = now - timedelta(days=get_grace_period_days())

        cancelled_ids = list(
            UserSubscription.objects.with_tier().filter(
                status=UserSubscription.STATUS_CANCELLED,
                cancellation_effective_at__isnull=False,
                cancellation_effective_at__lte=now,
            ).values_list('user_id', flat=True)
        )
        past_due_ids = list(
            UserSubscription.objects.with_tier().filter(
                status=UserSubscription.STATUS_PAST_DUE,
                updated_at__lt=grace_cutoff,
            ).values_list('user_id', flat=True)
        )

        expired = 0
        for user_id, reason in ([(u, 'cancellation_effective') for u in cancelled_ids] +
                                [(u, 'grace_period_exceeded') for u in past_due_ids]):
            with transaction.atomic():
                record = UserSubscription.objects.locked_for_user(user_id)
                if record is None or not cls._still_expirable(record, now, grace_cutoff):
                    continue

                previous_status = record.status
                record.status = UserSubscription.STATUS_EXPIRED
                record.save(update_fields=['status', 'updated_at'])

                SubscriptionEvent.objects.log(
                    user_id,
                    SubscriptionEvent.EVENT_EXPIRED,
                    metadata={'reason': reason, 'previous_status': previous_status},
                    tier=record.tier,
                    billing_period=record.billing_period,
                )
            expired += 1
            cls._audit_log(user_id, "expired", {"reason": reason})

        logger.info(f"Processed expirations: {expired} subscription(s) expired")
        return expired

    @classmethod
    def _still_expirable(cls, record, now, grace_cutoff) -> bool:
        """Re-check the candidate under lock; another writer may have renewed it."""
        if not record.has_tier():
            return False
        if record.is_cancelled():
            return bool(record.cancellation_effective_at and record.cancellation_effective_at <= now)
        if record.is_past_due():
            return record.updated_at < grace_cutoff
        return False

    # =========================================================================
    # AUDIT
    # =========================================================================

    @classmethod
    def _audit_log(cls, user_id, action: str, metadata: dict):
        """Log subscription transitions."""
        logger.info(f"[SUBSCRIPTION_AUDIT] {action} | user={user_id} | {metadata}")
