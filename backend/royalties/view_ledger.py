"""
View Ledger

Records playback sessions and classifies each one as qualified or not for
creator royalties:
1. A view qualifies when at least 50% of the video or 300 seconds were watched
2. Qualification is recomputed from the latest durations on every update
3. A qualified view earns the per-view rate configured at write time
4. Once settled into a closed royalty period a view never loses its royalty
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Optional

from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import DatabaseError, transaction
from django.db.models import Avg, Count, F, Q, Sum
from django.utils import timezone

from .exceptions import InvalidInput, NotFound
from .models import Video, ViewRecord, WatchHistory
from .periods import Period, parse_period, resolve_range
from .utils.pagination import MAX_PAGE_SIZE, coerce_positive_int, paginate

logger = logging.getLogger(__name__)

COMPLETED_WATCH_PERCENTAGE = 90


@dataclass(frozen=True)
class Classification:
    watch_percentage: float
    qualified: bool
    revenue_earned: Decimal


def rate_per_view() -> Decimal:
    return Decimal(str(settings.ROYALTY_RATE_PER_VIEW))


def classify_view(watch_duration: float, total_duration: float) -> Classification:
    """Pure qualification rule for a single session."""
    watch_duration = float(watch_duration or 0)
    total_duration = float(total_duration or 0)

    if total_duration > 0:
        watch_percentage = min(max((watch_duration / total_duration) * 100, 0.0), 100.0)
    else:
        watch_percentage = 0.0

    qualified = (
        watch_percentage >= float(settings.QUALIFIED_VIEW_MIN_PERCENTAGE)
        or watch_duration >= settings.QUALIFIED_VIEW_MIN_SECONDS
    )
    revenue = rate_per_view() if qualified else Decimal('0')
    return Classification(watch_percentage=watch_percentage, qualified=qualified, revenue_earned=revenue)


def _coerce_seconds(value, field: str) -> float:
    try:
        seconds = float(value or 0)
    except (TypeError, ValueError):
        raise InvalidInput(f"{field} must be a number of seconds")
    if seconds < 0:
        raise InvalidInput(f"{field} cannot be negative")
    return seconds


def get_active_video(video_id) -> Video:
    try:
        return Video.objects.select_related('creator').get(id=video_id, is_active=True)
    except (Video.DoesNotExist, ValidationError, ValueError):
        raise NotFound(f"Video {video_id} not found")


class ViewLedgerService:
    """Service for recording views and reading per-video view statistics"""

    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self._cent = Decimal('0.01')

    def _quantize_money(self, amount: Decimal) -> Decimal:
        """Round to 2 decimals using HALF_UP (money)."""
        if not isinstance(amount, Decimal):
            amount = Decimal(str(amount))
        return amount.quantize(self._cent, rounding=ROUND_HALF_UP)

    def _increment_view_count(self, video_id) -> None:
        """Best-effort bump of the denormalized counter; never fails the view write."""
        try:
            with transaction.atomic():
                Video.objects.filter(id=video_id).update(view_count=F('view_count') + 1)
        except DatabaseError as e:
            self.logger.warning(f"Could not increment view count for video {video_id}: {e}")

    def record_or_update_view(self, video_id, watch_duration, total_duration=0, viewer=None,
                              quality: str = 'auto', device_info: Optional[Dict] = None,
                              ip_address: Optional[str] = None, view_id=None) -> ViewRecord:
        """
        Create a view record, or update an existing one's progress when ``view_id`` is given.

        Args:
            video_id: Video being watched
            watch_duration: Seconds watched so far in this session
            total_duration: Video length in seconds; 0 falls back to the catalog duration
            viewer: Authenticated user, or None for anonymous playback
            view_id: Existing record to update instead of creating a new one

        Returns:
            The persisted ViewRecord with its current classification
        """
        watch_duration = _coerce_seconds(watch_duration, 'watch_duration')
        total_duration = _coerce_seconds(total_duration, 'total_duration')
        video = get_active_video(video_id)

        if total_duration <= 0:
            total_duration = float(video.duration or 0)

        classification = classify_view(watch_duration, total_duration)
        now = timezone.now()

        if view_id is not None:
            return self._update_view(video, view_id, watch_duration, total_duration, classification, now)

        record = ViewRecord.objects.create(
            viewer=viewer if viewer is not None and viewer.is_authenticated else None,
            video=video,
            owner=video.creator,
            watch_duration=watch_duration,
            total_duration=total_duration,
            watch_percentage=classification.watch_percentage,
            qualified=classification.qualified,
            revenue_earned=classification.revenue_earned,
            quality=quality or 'auto',
            device_info=device_info or {},
            ip_address=ip_address,
            started_at=now,
            ended_at=now,
        )
        self._increment_view_count(video.id)

        self.logger.info(
            f"View {record.id} recorded on video {video.id}: "
            f"{classification.watch_percentage:.2f}% qualified={classification.qualified}"
        )
        return record

    def _update_view(self, video, view_id, watch_duration, total_duration, classification, now) -> ViewRecord:
        with transaction.atomic():
            try:
                record = ViewRecord.objects.select_for_update().get(id=view_id)
            except (ViewRecord.DoesNotExist, ValidationError, ValueError):
                raise NotFound(f"View record {view_id} not found")

            if record.video_id != video.id:
                raise InvalidInput(f"View record {view_id} belongs to a different video")

            record.watch_duration = watch_duration
            record.total_duration = total_duration
            record.watch_percentage = classification.watch_percentage
            record.ended_at = now

            # A settled qualified view keeps the royalty it was paid out with
            if not (record.is_settled and record.qualified):
                record.qualified = classification.qualified
                record.revenue_earned = classification.revenue_earned
            elif not classification.qualified:
                self.logger.info(f"View {record.id} is settled; keeping its qualified royalty")

            record.save(update_fields=[
                'watch_duration', 'total_duration', 'watch_percentage',
                'qualified', 'revenue_earned', 'ended_at',
            ])
        return record

    def get_view_stats(self, video_id, period=Period.ALL) -> Dict:
        period = parse_period(period, default=Period.ALL)
        video = get_active_video(video_id)
        date_range = resolve_range(period)

        stats = ViewRecord.objects.filter(
            video=video, **date_range.filter_kwargs('started_at')
        ).aggregate(
            total_views=Count('id'),
            qualified_views=Count('id', filter=Q(qualified=True)),
            unique_viewers=Count('viewer', distinct=True),
            avg_watch_time=Avg('watch_duration'),
            avg_watch_percentage=Avg('watch_percentage'),
        )

        total_views = stats['total_views'] or 0
        qualified_views = stats['qualified_views'] or 0
        rate = rate_per_view()

        return {
            'video': {
                'id': str(video.id),
                'title': video.title,
                'duration': video.duration,
            },
            'period': {
                'type': period.value,
                'startDate': date_range.start,
                'endDate': date_range.end,
            },
            'totalViews': total_views,
            'qualifiedViews': qualified_views,
            'uniqueViewers': stats['unique_viewers'] or 0,
            'qualificationRate': round(qualified_views / total_views * 100, 2) if total_views else 0,
            'avgWatchTime': round(stats['avg_watch_time'] or 0, 2),
            'avgWatchPercentage': round(stats['avg_watch_percentage'] or 0, 2),
            'estimatedRevenue': self._quantize_money(rate * qualified_views),
            'ratePerView': rate,
        }

    def update_watch_progress(self, user, video_id, progress_seconds) -> WatchHistory:
        """Find-or-create the user's watch history entry for a video; last write wins."""
        progress_seconds = _coerce_seconds(progress_seconds, 'progress_seconds')
        video = get_active_video(video_id)

        total_seconds = float(video.duration or 0)
        if total_seconds > 0:
            watch_percentage = min(progress_seconds / total_seconds * 100, 100.0)
        else:
            watch_percentage = 0.0

        history, created = WatchHistory.objects.update_or_create(
            user=user,
            video=video,
            defaults={
                'progress_seconds': progress_seconds,
                'total_seconds': total_seconds,
                'watch_percentage': watch_percentage,
                'completed': watch_percentage >= COMPLETED_WATCH_PERCENTAGE,
                'watched_at': timezone.now(),
            },
        )
        return history

    def get_user_watch_history(self, user, page=1, limit=20) -> Dict:
        views = (
            ViewRecord.objects
            .filter(viewer=user)
            .select_related('video', 'owner')
            .order_by('-started_at', 'id')
        )
        page_items, pagination = paginate(views, page, limit, total_key='totalViews')

        history = []
        for view in page_items:
            history.append({
                'id': str(view.id),
                'videoId': str(view.video_id),
                'videoTitle': view.video.title,
                'creator': {'id': view.owner_id, 'name': view.owner.name},
                'watchDuration': view.watch_duration,
                'totalDuration': view.total_duration,
                'watchPercentage': round(view.watch_percentage, 1),
                'qualified': view.qualified,
                'viewedAt': view.started_at,
            })

        return {'results': history, 'pagination': pagination}

    def get_popular_videos(self, period=Period.MONTH, limit=20, category: Optional[str] = None) -> Dict:
        period = parse_period(period, default=Period.MONTH)
        limit = min(coerce_positive_int(limit, 'limit', 20), MAX_PAGE_SIZE)
        date_range = resolve_range(period)

        views = ViewRecord.objects.filter(**date_range.filter_kwargs('started_at'))
        if category:
            views = views.filter(video__category=category)

        ranked = list(
            views.values('video')
            .annotate(
                view_count=Count('id'),
                total_revenue=Sum('revenue_earned'),
                avg_engagement=Avg('watch_percentage'),
            )
            .order_by('-view_count', 'video')[:limit]
        )

        videos = Video.objects.select_related('creator').in_bulk([row['video'] for row in ranked])
        results = []
        for rank, row in enumerate(ranked, start=1):
            video = videos[row['video']]
            results.append({
                'rank': rank,
                'video': {
                    'id': str(video.id),
                    'title': video.title,
                    'category': video.category,
                    'duration': video.duration,
                    'creator': {'id': video.creator_id, 'name': video.creator.name},
                },
                'stats': {
                    'viewCount': row['view_count'],
                    'totalRevenue': self._quantize_money(row['total_revenue'] or Decimal('0')),
                    'avgEngagement': round(row['avg_engagement'] or 0, 2),
                },
            })

        return {
            'results': results,
            'period': {
                'type': period.value,
                'startDate': date_range.start,
                'endDate': date_range.end,
            },
        }


# Global service instance
view_ledger = ViewLedgerService()

record_or_update_view = view_ledger.record_or_update_view
get_view_stats = view_ledger.get_view_stats
update_watch_progress = view_ledger.update_watch_progress
get_user_watch_history = view_ledger.get_user_watch_history
get_popular_videos = view_ledger.get_popular_videos
