"""
Management command to close a royalty period.

Every unsettled view started before the period end is stamped as settled, and
the per-creator royalty summary is printed and written to the audit log.
Settled qualified views keep their royalty even if later progress updates
would have disqualified them.
"""
from datetime import datetime

from django.core.management.base import BaseCommand, CommandError
from django.utils import timezone
from royalties.revenue_service import revenue_service


class Command(BaseCommand):
    help = 'Settle creator royalties for all views before the end of a month'

    def add_arguments(self, parser):
        parser.add_argument(
            '--year',
            type=int,
            help='Year of the month to settle (defaults to the previous month)'
        )
        parser.add_argument(
            '--month',
            type=int,
            help='Month to settle (1-12)'
        )
        parser.add_argument(
            '--dry-run',
            action='store_true',
            help='Show what would be settled without stamping any views'
        )

    def _period_end(self, year, month):
        now = timezone.localtime()
        if year is None and month is None:
            return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        if year is None or month is None:
            raise CommandError('--year and --month must be given together')
        if month < 1 or month > 12:
            raise CommandError('Month must be between 1 and 12')

        if month == 12:
            year, month = year + 1, 1
        else:
            month += 1
        return timezone.make_aware(datetime(year, month, 1))

    def handle(self, *args, **options):
        period_end = self._period_end(options.get('year'), options.get('month'))
        dry_run = options['dry_run']

        if period_end > timezone.now():
            raise CommandError(f'Period ending {period_end.date()} has not closed yet')

        if dry_run:
            self.stdout.write(self.style.WARNING('DRY RUN MODE - No views will be settled'))

        self.stdout.write(f'Settling views started before {period_end.isoformat()}')
        result = revenue_service.settle_views(period_end=period_end, dry_run=dry_run)

        for summary in result['creators']:
            self.stdout.write(
                f"  Creator {summary['creatorId']}: {summary['qualifiedViews']} qualified views, "
                f"gross ${summary['grossRevenue']}, creator share ${summary['creatorShare']}"
            )

        verb = 'Would settle' if dry_run else 'Settled'
        self.stdout.write(self.style.SUCCESS(
            f"{verb} {result['settled_views']} views for {len(result['creators'])} creators."
        ))
