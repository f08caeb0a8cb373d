"""
Revenue Aggregator

Rolls qualified view records up into creator and platform revenue:
1. Creator summaries: qualified views, gross revenue and the creator's royalty share
2. Growth: each period is compared to the window of equal length before it
3. Revenue reports use each record's stored revenue, never a recomputed rate
4. Settlement freezes the royalty of every view in a closed period
"""

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Optional, Tuple

from django.contrib.auth.models import User
from django.db import transaction
from django.db.models import Avg, Count, Sum
from django.db.models.functions import TruncDate
from django.utils import timezone
from django.utils.dateparse import parse_date, parse_datetime

from .exceptions import InvalidInput, NotFound
from .models import ContentCreator, Download, Payment, Subscription, Video, VideoLike, ViewRecord
from .periods import DateRange, Period, comparison_ranges, parse_period
from .signals import views_settled
from .view_ledger import rate_per_view

logger = logging.getLogger(__name__)

TOP_LIMIT = 10
_CENT = Decimal('0.01')
DATE_ONLY_RE = re.compile(r'^\d{4}-\d{2}-\d{2}$')


def _quantize_money(amount) -> Decimal:
    """Round to 2 decimals using HALF_UP (money)."""
    if not isinstance(amount, Decimal):
        amount = Decimal(str(amount))
    return amount.quantize(_CENT, rounding=ROUND_HALF_UP)


def calculate_growth(current, previous) -> Decimal:
    """
    Percentage change from ``previous`` to ``current``.

    Growth from nothing is reported as 100 rather than infinity.
    """
    current = Decimal(str(current or 0))
    previous = Decimal(str(previous or 0))
    if previous > 0:
        return _quantize_money((current - previous) / previous * 100)
    return Decimal('100')


@dataclass(frozen=True)
class CreatorRevenueSummary:
    creator_id: int
    period_start: Optional[datetime]
    period_end: Optional[datetime]
    qualified_view_count: int
    gross_revenue: Decimal
    creator_share: Decimal

    def as_dict(self) -> Dict:
        return {
            'creatorId': self.creator_id,
            'periodStart': self.period_start,
            'periodEnd': self.period_end,
            'qualifiedViews': self.qualified_view_count,
            'grossRevenue': self.gross_revenue,
            'creatorShare': self.creator_share,
        }


def _summarize(creator: ContentCreator, views, start=None, end=None) -> CreatorRevenueSummary:
    totals = views.filter(qualified=True).aggregate(count=Count('id'), gross=Sum('revenue_earned'))
    gross = _quantize_money(totals['gross'] or Decimal('0'))
    share = _quantize_money((totals['gross'] or Decimal('0')) * creator.royalty_percentage)
    return CreatorRevenueSummary(
        creator_id=creator.id,
        period_start=start,
        period_end=end,
        qualified_view_count=totals['count'] or 0,
        gross_revenue=gross,
        creator_share=min(share, gross),
    )


def _in_range(queryset, date_range: DateRange, field: str):
    if date_range.empty:
        return queryset.none()
    return queryset.filter(**date_range.filter_kwargs(field))


def _parse_bound(value, field: str) -> Tuple[Optional[datetime], bool]:
    """
    Accept a datetime, a date, or an ISO string; naive values use the current time zone.

    Returns the moment and whether the input was a bare date.
    """
    if value in (None, ''):
        return None, False
    date_only = False
    if isinstance(value, datetime):
        moment = value
    elif isinstance(value, date):
        moment = datetime.combine(value, time.min)
        date_only = True
    else:
        value = str(value).strip()
        try:
            if DATE_ONLY_RE.match(value):
                moment = datetime.combine(parse_date(value), time.min)
                date_only = True
            else:
                moment = parse_datetime(value)
        except ValueError:
            raise InvalidInput(f"{field} is not a valid calendar date: '{value}'")
        if moment is None:
            raise InvalidInput(f"{field} must be an ISO date or datetime, got '{value}'")
    if timezone.is_naive(moment):
        moment = timezone.make_aware(moment)
    return moment, date_only


class RevenueAggregatorService:
    """Service for creator, platform and report-level revenue analytics"""

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def _get_creator(self, creator_id) -> ContentCreator:
        try:
            return ContentCreator.objects.get(id=creator_id)
        except (ContentCreator.DoesNotExist, ValueError, TypeError):
            raise NotFound(f"Content creator {creator_id} not found")

    def creator_revenue_summary(self, creator, start: Optional[datetime] = None,
                                end: Optional[datetime] = None) -> CreatorRevenueSummary:
        if not isinstance(creator, ContentCreator):
            creator = self._get_creator(creator)
        views = ViewRecord.objects.filter(owner=creator)
        views = _in_range(views, DateRange(start=start, end=end), 'started_at')
        return _summarize(creator, views, start, end)

    def get_creator_analytics(self, creator_id, period=Period.MONTH) -> Dict:
        """
        Creator dashboard numbers for a period.

        Returns:
            Dict with creator, period, overview, revenue, topVideos, growth and dailyTrend
        """
        period = parse_period(period)
        creator = self._get_creator(creator_id)
        current, previous = comparison_ranges(period)

        views = _in_range(ViewRecord.objects.filter(owner=creator), current, 'started_at')
        total_videos = creator.videos.count()
        total_views = views.count()
        total_likes = _in_range(VideoLike.objects.filter(video__creator=creator), current, 'liked_at').count()
        total_downloads = _in_range(
            Download.objects.filter(video__creator=creator), current, 'downloaded_at'
        ).count()

        summary = _summarize(creator, views, current.start, current.end)
        estimated = _quantize_money(summary.qualified_view_count * rate_per_view() * creator.royalty_percentage)

        previous_views = _in_range(ViewRecord.objects.filter(owner=creator), previous, 'started_at').count()

        return {
            'creator': {
                'id': creator.id,
                'name': creator.name,
                'email': creator.email,
            },
            'period': {
                'type': period.value,
                'startDate': current.start,
                'endDate': current.end,
            },
            'overview': {
                'totalVideos': total_videos,
                'totalViews': total_views,
                'totalLikes': total_likes,
                'totalDownloads': total_downloads,
                'averageViewsPerVideo': round(total_views / total_videos, 2) if total_videos else 0,
                'engagementRate': round(total_likes / total_views * 100, 2) if total_views else 0,
            },
            'revenue': {
                'qualifiedViews': summary.qualified_view_count,
                'estimatedRevenue': estimated,
                'royaltyRate': creator.royalty_percentage,
                'grossRevenue': summary.gross_revenue,
                'creatorShare': summary.creator_share,
            },
            'topVideos': self._top_videos(creator, current),
            'growth': {
                'viewsGrowth': calculate_growth(total_views, previous_views),
                'currentPeriodViews': total_views,
                'previousPeriodViews': previous_views,
            },
            'dailyTrend': self._daily_trend(views),
        }

    def _top_videos(self, creator: ContentCreator, date_range: DateRange) -> List[Dict]:
        view_counts = dict(
            _in_range(ViewRecord.objects.filter(owner=creator), date_range, 'started_at')
            .values_list('video')
            .annotate(total=Count('id'))
            .order_by()
        )
        like_counts = dict(
            VideoLike.objects.filter(video__creator=creator)
            .values_list('video')
            .annotate(total=Count('id'))
            .order_by()
        )
        download_counts = dict(
            Download.objects.filter(video__creator=creator)
            .values_list('video')
            .annotate(total=Count('id'))
            .order_by()
        )

        videos = list(creator.videos.all())
        videos.sort(key=lambda v: (-view_counts.get(v.id, 0), str(v.id)))

        return [
            {
                'id': str(video.id),
                'title': video.title,
                'views': view_counts.get(video.id, 0),
                'likes': like_counts.get(video.id, 0),
                'downloads': download_counts.get(video.id, 0),
            }
            for video in videos[:TOP_LIMIT]
        ]

    def _daily_trend(self, views) -> List[Dict]:
        rows = (
            views.annotate(day=TruncDate('started_at'))
            .values('day')
            .annotate(views=Count('id'))
            .order_by('day')
        )
        return [{'date': row['day'], 'views': row['views']} for row in rows]

    def _creator_view_total(self, creator: ContentCreator, date_range: DateRange) -> int:
        return _in_range(ViewRecord.objects.filter(owner=creator), date_range, 'started_at').count()

    def get_admin_analytics(self, period=Period.MONTH) -> Dict:
        """
        Platform-wide roll-up. A creator whose numbers cannot be computed is
        reported with zero views and listed under ``dataQualityIssues``.
        """
        period = parse_period(period)
        current, previous = comparison_ranges(period)
        now = timezone.now()

        views = _in_range(ViewRecord.objects.all(), current, 'started_at')
        engagement = views.aggregate(total=Count('id'), avg_watch=Avg('watch_duration'))

        payments = Payment.objects.filter(status=Payment.Status.SUCCESSFUL)
        current_revenue = _in_range(payments, current, 'created_at').aggregate(total=Sum('amount'))['total']
        previous_revenue = _in_range(payments, previous, 'created_at').aggregate(total=Sum('amount'))['total']
        current_revenue = _quantize_money(current_revenue or Decimal('0'))

        top_creators = []
        data_quality_issues = []
        for creator in ContentCreator.objects.all():
            try:
                with transaction.atomic():
                    creator_views = self._creator_view_total(creator, current)
                    video_count = creator.videos.count()
            except Exception as e:
                self.logger.warning(f"Admin roll-up degraded for creator {creator.id}: {e}")
                data_quality_issues.append({
                    'creatorId': creator.id,
                    'issue': f"Could not aggregate views: {e}",
                })
                creator_views = 0
                video_count = 0

            top_creators.append({
                'id': creator.id,
                'name': creator.name,
                'email': creator.email,
                'videoCount': video_count,
                'totalViews': creator_views,
            })

        top_creators.sort(key=lambda c: (-c['totalViews'], c['id']))

        return {
            'period': {
                'type': period.value,
                'startDate': current.start,
                'endDate': current.end,
            },
            'platformOverview': {
                'totalUsers': User.objects.count(),
                'totalCreators': ContentCreator.objects.count(),
                'totalVideos': Video.objects.count(),
                'activeSubscriptions': Subscription.objects.filter(
                    status=Subscription.Status.ACTIVE, end_date__gt=now
                ).count(),
                'newUsers': _in_range(User.objects.all(), current, 'date_joined').count(),
            },
            'engagement': {
                'totalViews': engagement['total'] or 0,
                'totalLikes': _in_range(VideoLike.objects.all(), current, 'liked_at').count(),
                'totalDownloads': _in_range(Download.objects.all(), current, 'downloaded_at').count(),
                'averageWatchTime': round(engagement['avg_watch'] or 0, 2),
                'popularCategories': self._popular_categories(views),
            },
            'revenue': {
                'subscriptionRevenue': current_revenue,
                'totalRevenue': current_revenue,
                'revenueGrowth': calculate_growth(current_revenue, previous_revenue),
            },
            'topCreators': top_creators[:TOP_LIMIT],
            'dataQualityIssues': data_quality_issues,
        }

    def _popular_categories(self, views) -> List[Dict]:
        rows = (
            views.exclude(video__category='')
            .values('video__category')
            .annotate(views=Count('id'), videos=Count('video', distinct=True))
            .order_by('-views', 'video__category')[:5]
        )
        return [
            {'category': row['video__category'], 'views': row['views'], 'videoCount': row['videos']}
            for row in rows
        ]

    def get_revenue_reports(self, creator_id=None, start_date=None, end_date=None) -> Dict:
        """
        Per-creator and per-video revenue from stored per-view revenue.

        Either bound may be omitted, leaving that side open. A date-only
        ``end_date`` includes the whole day.
        """
        start, _ = _parse_bound(start_date, 'start_date')
        end, end_is_date = _parse_bound(end_date, 'end_date')
        if start and end and start > end:
            raise InvalidInput("start_date must not be after end_date")

        views = ViewRecord.objects.filter(qualified=True)
        if creator_id not in (None, ''):
            views = views.filter(owner=self._get_creator(creator_id))
        if start is not None:
            views = views.filter(started_at__gte=start)
        if end is not None:
            if end_is_date:
                views = views.filter(started_at__lt=end + timedelta(days=1))
            else:
                views = views.filter(started_at__lte=end)

        rows = (
            views.values('owner', 'video')
            .annotate(views=Count('id'), revenue=Sum('revenue_earned'))
            .order_by('owner', 'video')
        )

        creators = ContentCreator.objects.in_bulk({row['owner'] for row in rows})
        videos = Video.objects.in_bulk({row['video'] for row in rows})

        breakdown = {}
        for row in rows:
            creator = creators[row['owner']]
            entry = breakdown.setdefault(creator.id, {
                'creatorId': creator.id,
                'creatorName': creator.name,
                'royaltyRate': creator.royalty_percentage,
                'totalViews': 0,
                'totalRevenue': Decimal('0'),
                'videos': [],
            })
            revenue = row['revenue'] or Decimal('0')
            entry['totalViews'] += row['views']
            entry['totalRevenue'] += revenue
            entry['videos'].append({
                'videoId': str(row['video']),
                'videoTitle': videos[row['video']].title,
                'views': row['views'],
                'revenue': _quantize_money(revenue),
            })

        total_views = 0
        total_revenue = Decimal('0')
        for entry in breakdown.values():
            total_views += entry['totalViews']
            total_revenue += entry['totalRevenue']
            share = entry['totalRevenue'] * entry['royaltyRate']
            entry['totalRevenue'] = _quantize_money(entry['totalRevenue'])
            entry['creatorShare'] = min(_quantize_money(share), entry['totalRevenue'])
            entry['videos'].sort(key=lambda v: (-v['revenue'], v['videoId']))

        creator_breakdown = sorted(breakdown.values(), key=lambda c: (-c['totalRevenue'], c['creatorId']))

        return {
            'reportPeriod': {
                'startDate': start,
                'endDate': end,
            },
            'summary': {
                'totalCreators': len(creator_breakdown),
                'totalQualifiedViews': total_views,
                'totalRevenue': _quantize_money(total_revenue),
                'averagePerView': (
                    (total_revenue / total_views).quantize(Decimal('0.0001'), rounding=ROUND_HALF_UP)
                    if total_views else Decimal('0')
                ),
            },
            'creatorBreakdown': creator_breakdown,
            'generatedAt': timezone.now(),
        }

    def settle_views(self, period_end: Optional[datetime] = None, dry_run: bool = False) -> Dict:
        """
        Close a royalty period: every unsettled view started before ``period_end``
        is marked settled, freezing its royalty.

        Args:
            period_end: Exclusive end of the period being closed (defaults to now)
            dry_run: Compute the summaries without marking anything settled

        Returns:
            Dict with the number of views settled and per-creator summaries
        """
        period_end = period_end or timezone.now()

        with transaction.atomic():
            pending = ViewRecord.objects.select_for_update().filter(
                settled_at__isnull=True, started_at__lt=period_end
            )
            view_ids = list(pending.values_list('id', flat=True))
            batch = ViewRecord.objects.filter(id__in=view_ids)

            summaries = []
            for creator in ContentCreator.objects.filter(id__in=batch.values('owner')).order_by('id'):
                summaries.append(_summarize(creator, batch.filter(owner=creator), None, period_end))

            settled = 0
            if not dry_run and view_ids:
                settled = ViewRecord.objects.filter(
                    id__in=view_ids, settled_at__isnull=True
                ).update(settled_at=timezone.now())

                views_settled.send(
                    sender=self.__class__,
                    period_end=period_end,
                    settled_count=settled,
                    summaries=[s.as_dict() for s in summaries],
                )

        self.logger.info(
            f"{'Dry run: would settle' if dry_run else 'Settled'} "
            f"{len(view_ids) if dry_run else settled} views before {period_end.isoformat()}"
        )

        return {
            'success': True,
            'dry_run': dry_run,
            'period_end': period_end,
            'settled_views': len(view_ids) if dry_run else settled,
            'creators': [s.as_dict() for s in summaries],
        }


# Global service instance
revenue_service = RevenueAggregatorService()

creator_revenue_summary = revenue_service.creator_revenue_summary
get_creator_analytics = revenue_service.get_creator_analytics
get_admin_analytics = revenue_service.get_admin_analytics
get_revenue_reports = revenue_service.get_revenue_reports
settle_views = revenue_service.settle_views
