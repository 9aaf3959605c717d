# subscriptions/services/reconciliation_service.py
"""
Snapshot integrity check run by the daily cron.

Reports problems only; snapshots are never corrected here.
"""

import logging

from dateutil.relativedelta import relativedelta

from subscriptions.tiers import RESOURCE_FIELDS

logger = logging.getLogger(__name__)


class ReconciliationService:

    @classmethod
    def reconcile_snapshots(cls, month=None) -> dict:
        """
        Check last month's snapshots for negative counters.

        Args:
            month: first day of the month to check (default: previous calendar month)

        Returns:
            {reconciled: int, mismatches: [{user_id, snapshot_month, field, snapshot_value, actual_value}]}
        """
        from subscriptions.models import UserSubscription, UsageMonthlySnapshot, month_start

        month = month or (month_start() - relativedelta(months=1))
        snapshots = UsageMonthlySnapshot.objects.filter(month=month).order_by('user_id')

        reconciled = 0
        mismatches = []
        for snapshot in snapshots:
            record = UserSubscription.objects.get_for_user(snapshot.user_id)
            if record is None:
                continue

            if snapshot.tier_at_snapshot and snapshot.tier_at_snapshot != record.tier:
                logger.debug(
                    f"[CRON] Tier changed for user {snapshot.user_id}: "
                    f"snapshot={snapshot.tier_at_snapshot}, current={record.tier}"
                )

            for field in RESOURCE_FIELDS.values():
                value = getattr(snapshot, field)
                if value < 0:
                    mismatches.append({
                        'user_id': snapshot.user_id,
                        'snapshot_month': month.strftime('%Y-%m'),
                        'field': field,
                        'snapshot_value': value,
                        'actual_value': 0,
                    })
                    logger.warning(
                        f"[CRON] Data integrity issue: {field} is negative ({value}) "
                        f"for user {snapshot.user_id}"
                    )

            reconciled += 1

        return {'reconciled': reconciled, 'mismatches': mismatches}
