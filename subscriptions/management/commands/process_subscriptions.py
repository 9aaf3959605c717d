"""
Management command to run the daily subscription maintenance.
Run: python manage.py process_subscriptions [--month 2026-09] [--force]
"""
from datetime import datetime

from django.conf import settings
from django.core.management.base import BaseCommand, CommandError

from subscriptions.services.reconciliation_service import ReconciliationService
from subscriptions.services.subscription_service import SubscriptionManager


class Command(BaseCommand):
    help = 'Expire cancelled/past-due subscriptions and check usage snapshots'

    def add_arguments(self, parser):
        parser.add_argument('--month', help='Snapshot month to check (YYYY-MM), default: last month')
        parser.add_argument('--force', action='store_true',
                            help='Run even when SUBSCRIPTION_ENABLED is off')

    def handle(self, *args, **options):
        if not options['force'] and not getattr(settings, 'SUBSCRIPTION_ENABLED', False):
            self.stdout.write(self.style.WARNING('Subscription enforcement disabled, skipping.'))
            return

        month = None
        if options['month']:
            try:
                month = datetime.strptime(options['month'], '%Y-%m').date()
            except ValueError:
                raise CommandError('--month must look like YYYY-MM')

        expired = SubscriptionManager.process_expirations()
        self.stdout.write(f'Expired subscriptions: {expired}')

        result = ReconciliationService.reconcile_snapshots(month=month)
        self.stdout.write(f"Snapshots checked: {result['reconciled']}")

        for mismatch in result['mismatches']:
            self.stdout.write(self.style.ERROR(
                f"  user {mismatch['user_id']} {mismatch['snapshot_month']}: "
                f"{mismatch['field']}={mismatch['snapshot_value']}"
            ))

        self.stdout.write(self.style.SUCCESS('Subscription processing complete.'))
