"""
Management command to sync the cached video view_count with the number of recorded views
"""
from django.core.management.base import BaseCommand
from django.db.models import Count
from royalties.models import Video


class Command(BaseCommand):
    help = 'Sync cached view_count with the actual number of view records for all videos'

    def add_arguments(self, parser):
        parser.add_argument(
            '--dry-run',
            action='store_true',
            help='Show what would be updated without making changes',
        )

    def handle(self, *args, **options):
        dry_run = options['dry_run']

        if dry_run:
            self.stdout.write(self.style.WARNING('DRY RUN MODE - No changes will be made'))

        videos = Video.objects.annotate(actual_view_count=Count('view_records'))
        updated_count = 0

        for video in videos:
            if video.view_count != video.actual_view_count:
                self.stdout.write(
                    f"Video ID {video.id} ({video.title}): "
                    f"View count: {video.view_count} -> {video.actual_view_count}"
                )

                if not dry_run:
                    Video.objects.filter(id=video.id).update(view_count=video.actual_view_count)

                updated_count += 1

        if updated_count == 0:
            self.stdout.write(self.style.SUCCESS('All cached view counts are already in sync!'))
        else:
            if dry_run:
                self.stdout.write(
                    self.style.WARNING(f'Would update {updated_count} videos. Run without --dry-run to apply changes.')
                )
            else:
                self.stdout.write(
                    self.style.SUCCESS(f'Successfully synced view counts for {updated_count} videos.')
                )
