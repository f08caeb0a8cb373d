"""
Management command to re-verify payments left pending by a provider outage
"""
from datetime import timedelta

from django.core.management.base import BaseCommand, CommandError
from django.utils import timezone
from royalties.payment_service import payment_service


class Command(BaseCommand):
    help = 'Re-verify pending payments with their provider and apply the outcome'

    def add_arguments(self, parser):
        parser.add_argument(
            '--older-than-minutes',
            type=int,
            default=5,
            help='Only payments pending for at least this many minutes (default: 5)'
        )

    def handle(self, *args, **options):
        minutes = options['older_than_minutes']
        if minutes < 0:
            raise CommandError('--older-than-minutes cannot be negative')

        results = payment_service.reconcile_all_pending(
            older_than=timezone.now() - timedelta(minutes=minutes)
        )

        self.stdout.write(
            f"Checked {results['checked']} pending payments: "
            f"{results['successful']} successful, {results['failed']} failed, "
            f"{results['still_pending']} still pending"
        )
        if results['inconsistent']:
            self.stdout.write(self.style.ERROR(
                f"{results['inconsistent']} payments succeeded but could not activate their subscription. "
                f"See the audit log."
            ))
        else:
            self.stdout.write(self.style.SUCCESS('Reconciliation complete.'))
