"""
Management command to expire subscriptions whose end date has passed.
Safe to run from cron at any frequency; overlapping runs never double-expire.
"""
from django.core.management.base import BaseCommand
from royalties.subscription_service import subscription_service


class Command(BaseCommand):
    help = 'Expire active and past-due subscriptions past their end date and downgrade their users'

    def handle(self, *args, **options):
        expired = subscription_service.sweep_expired()

        if expired:
            self.stdout.write(self.style.SUCCESS(f'Expired {expired} subscriptions.'))
        else:
            self.stdout.write(self.style.SUCCESS('No subscriptions to expire.'))
