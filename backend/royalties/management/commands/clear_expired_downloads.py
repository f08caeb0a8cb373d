from django.core.management.base import BaseCommand
from royalties.downloads import clear_expired_downloads


class Command(BaseCommand):
    help = 'Mark offline downloads past their validity window as expired'

    def handle(self, *args, **options):
        cleared = clear_expired_downloads()
        self.stdout.write(self.style.SUCCESS(f'Marked {cleared} downloads as expired.'))
