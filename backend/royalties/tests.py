from decimal import Decimal
from datetime import timedelta
import uuid

from django.contrib.auth.models import User
from django.db import DatabaseError
from django.test import TestCase, override_settings
from django.utils import timezone
from unittest.mock import patch

from .exceptions import InvalidInput, NotFound
from .models import ContentCreator, Video, ViewRecord, WatchHistory
from .view_ledger import classify_view, view_ledger


def make_video(title="Clip", duration=600, creator=None, category=''):
    if creator is None:
        creator = ContentCreator.objects.create(name="Ada", email="ada@example.com")
    return Video.objects.create(title=title, creator=creator, duration=duration, category=category)


class ClassifyViewTests(TestCase):
    """
    Qualification rule: half the video or five minutes, whichever comes first.
    """

    def test_half_watched_qualifies(self):
        result = classify_view(305, 600)
        self.assertTrue(result.qualified)
        self.assertAlmostEqual(result.watch_percentage, 50.8333, places=3)
        self.assertEqual(result.revenue_earned, Decimal('0.02'))

    def test_short_watch_of_long_video_does_not_qualify(self):
        result = classify_view(100, 1200)
        self.assertFalse(result.qualified)
        self.assertAlmostEqual(result.watch_percentage, 8.3333, places=3)
        self.assertEqual(result.revenue_earned, Decimal('0'))

    def test_five_minutes_qualifies_regardless_of_percentage(self):
        result = classify_view(300, 3600)
        self.assertTrue(result.qualified)

    def test_unknown_length_uses_seconds_only(self):
        self.assertEqual(classify_view(120, 0).watch_percentage, 0.0)
        self.assertFalse(classify_view(120, 0).qualified)
        self.assertTrue(classify_view(301, 0).qualified)

    def test_percentage_is_clamped(self):
        self.assertEqual(classify_view(900, 600).watch_percentage, 100.0)

    @override_settings(ROYALTY_RATE_PER_VIEW=Decimal('0.05'))
    def test_rate_comes_from_settings(self):
        self.assertEqual(classify_view(600, 600).revenue_earned, Decimal('0.05'))


class RecordViewTests(TestCase):

    def setUp(self):
        self.video = make_video()
        self.viewer = User.objects.create_user(username="viewer", password="pw")

    def test_record_creates_classified_view_and_bumps_counter(self):
        record = view_ledger.record_or_update_view(self.video.id, 305, 600, viewer=self.viewer)

        self.assertTrue(record.qualified)
        self.assertEqual(record.revenue_earned, Decimal('0.02'))
        self.assertEqual(record.owner, self.video.creator)
        self.assertEqual(record.viewer, self.viewer)
        self.video.refresh_from_db()
        self.assertEqual(self.video.view_count, 1)

    def test_total_duration_falls_back_to_catalog(self):
        record = view_ledger.record_or_update_view(self.video.id, 150)
        self.assertEqual(record.total_duration, 600)
        self.assertEqual(record.watch_percentage, 25.0)
        self.assertIsNone(record.viewer)

    def test_counter_failure_does_not_fail_the_view(self):
        with patch.object(Video.objects, 'filter', side_effect=DatabaseError("locked")):
            record = view_ledger.record_or_update_view(self.video.id, 10, 600)
        self.assertTrue(ViewRecord.objects.filter(id=record.id).exists())

    def test_update_reclassifies_from_latest_durations(self):
        record = view_ledger.record_or_update_view(self.video.id, 60, 600)
        self.assertFalse(record.qualified)

        updated = view_ledger.record_or_update_view(self.video.id, 320, 600, view_id=record.id)
        self.assertEqual(updated.id, record.id)
        self.assertTrue(updated.qualified)
        self.assertEqual(ViewRecord.objects.count(), 1)

        # Unsettled views may still regress
        regressed = view_ledger.record_or_update_view(self.video.id, 30, 600, view_id=record.id)
        self.assertFalse(regressed.qualified)
        self.assertEqual(regressed.revenue_earned, Decimal('0'))

    def test_settled_view_keeps_its_royalty(self):
        record = view_ledger.record_or_update_view(self.video.id, 400, 600)
        ViewRecord.objects.filter(id=record.id).update(settled_at=timezone.now())

        updated = view_ledger.record_or_update_view(self.video.id, 20, 600, view_id=record.id)
        self.assertTrue(updated.qualified)
        self.assertEqual(updated.revenue_earned, Decimal('0.02'))
        self.assertEqual(updated.watch_duration, 20)

    def test_update_of_other_video_rejected(self):
        record = view_ledger.record_or_update_view(self.video.id, 60, 600)
        other = make_video(title="Other", creator=self.video.creator)
        with self.assertRaises(InvalidInput):
            view_ledger.record_or_update_view(other.id, 60, 600, view_id=record.id)

    def test_unknown_view_id(self):
        with self.assertRaises(NotFound):
            view_ledger.record_or_update_view(self.video.id, 60, 600, view_id=uuid.uuid4())

    def test_invalid_input(self):
        with self.assertRaises(InvalidInput):
            view_ledger.record_or_update_view(self.video.id, -5, 600)
        with self.assertRaises(InvalidInput):
            view_ledger.record_or_update_view(self.video.id, "abc", 600)

    def test_unknown_or_inactive_video(self):
        with self.assertRaises(NotFound):
            view_ledger.record_or_update_view(uuid.uuid4(), 60, 600)

        self.video.is_active = False
        self.video.save()
        with self.assertRaises(NotFound):
            view_ledger.record_or_update_view(self.video.id, 60, 600)


class ViewStatsTests(TestCase):

    def setUp(self):
        self.video = make_video()
        self.alice = User.objects.create_user(username="alice", password="pw")
        self.bob = User.objects.create_user(username="bob", password="pw")

    def test_stats_for_all_time(self):
        view_ledger.record_or_update_view(self.video.id, 305, 600, viewer=self.alice)
        view_ledger.record_or_update_view(self.video.id, 60, 600, viewer=self.alice)
        view_ledger.record_or_update_view(self.video.id, 600, 600, viewer=self.bob)
        view_ledger.record_or_update_view(self.video.id, 10, 600)

        stats = view_ledger.get_view_stats(self.video.id)

        self.assertEqual(stats['totalViews'], 4)
        self.assertEqual(stats['qualifiedViews'], 2)
        self.assertEqual(stats['uniqueViewers'], 2)
        self.assertEqual(stats['qualificationRate'], 50.0)
        self.assertEqual(stats['estimatedRevenue'], Decimal('0.04'))
        self.assertEqual(stats['period']['type'], 'all')

    def test_period_excludes_old_views(self):
        record = view_ledger.record_or_update_view(self.video.id, 305, 600)
        ViewRecord.objects.filter(id=record.id).update(started_at=timezone.now() - timedelta(days=10))
        view_ledger.record_or_update_view(self.video.id, 305, 600)

        self.assertEqual(view_ledger.get_view_stats(self.video.id, 'week')['totalViews'], 1)
        self.assertEqual(view_ledger.get_view_stats(self.video.id, 'month')['totalViews'], 2)

    def test_empty_stats(self):
        stats = view_ledger.get_view_stats(self.video.id, 'day')
        self.assertEqual(stats['totalViews'], 0)
        self.assertEqual(stats['qualificationRate'], 0)
        self.assertEqual(stats['estimatedRevenue'], Decimal('0.00'))

    def test_bad_period(self):
        with self.assertRaises(InvalidInput):
            view_ledger.get_view_stats(self.video.id, 'fortnight')


class WatchProgressTests(TestCase):

    def setUp(self):
        self.video = make_video(duration=200)
        self.user = User.objects.create_user(username="watcher", password="pw")

    def test_progress_is_upserted(self):
        view_ledger.update_watch_progress(self.user, self.video.id, 50)
        history = view_ledger.update_watch_progress(self.user, self.video.id, 190)

        self.assertEqual(WatchHistory.objects.count(), 1)
        self.assertEqual(history.progress_seconds, 190)
        self.assertEqual(history.watch_percentage, 95.0)
        self.assertTrue(history.completed)

    def test_last_write_wins(self):
        view_ledger.update_watch_progress(self.user, self.video.id, 190)
        history = view_ledger.update_watch_progress(self.user, self.video.id, 20)
        self.assertEqual(history.progress_seconds, 20)
        self.assertFalse(history.completed)

    def test_watch_history_is_paginated_newest_first(self):
        for seconds in (10, 20, 30):
            view_ledger.record_or_update_view(self.video.id, seconds, 200, viewer=self.user)

        page = view_ledger.get_user_watch_history(self.user, page=1, limit=2)

        self.assertEqual(len(page['results']), 2)
        self.assertEqual(page['pagination']['totalViews'], 3)
        self.assertEqual(page['pagination']['totalPages'], 2)
        self.assertTrue(page['pagination']['hasNext'])
        self.assertFalse(page['pagination']['hasPrev'])

        second = view_ledger.get_user_watch_history(self.user, page=2, limit=2)
        self.assertEqual(len(second['results']), 1)
        self.assertFalse(second['pagination']['hasNext'])

    def test_bad_page(self):
        with self.assertRaises(InvalidInput):
            view_ledger.get_user_watch_history(self.user, page=0)


class PopularVideosTests(TestCase):

    def test_ranked_by_views_in_period(self):
        creator = ContentCreator.objects.create(name="Ada", email="ada@example.com")
        quiet = make_video(title="Quiet", creator=creator, category='music')
        busy = make_video(title="Busy", creator=creator, category='music')
        other = make_video(title="Other", creator=creator, category='sports')

        view_ledger.record_or_update_view(quiet.id, 305, 600)
        for _ in range(3):
            view_ledger.record_or_update_view(busy.id, 305, 600)
        view_ledger.record_or_update_view(other.id, 305, 600)

        result = view_ledger.get_popular_videos(period='week', category='music')

        self.assertEqual([row['video']['title'] for row in result['results']], ["Busy", "Quiet"])
        self.assertEqual(result['results'][0]['rank'], 1)
        self.assertEqual(result['results'][0]['stats']['viewCount'], 3)
        self.assertEqual(result['results'][0]['stats']['totalRevenue'], Decimal('0.06'))

    def test_limit(self):
        creator = ContentCreator.objects.create(name="Ada", email="ada@example.com")
        for i in range(3):
            video = make_video(title=f"V{i}", creator=creator)
            view_ledger.record_or_update_view(video.id, 10, 600)

        self.assertEqual(len(view_ledger.get_popular_videos(limit=2)['results']), 2)
