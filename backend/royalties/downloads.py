"""
Offline downloads gated by the user's subscription plan.
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, Optional

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from .exceptions import Conflict, Forbidden
from .models import Download, Entitlement
from .subscription_service import PLANS, subscription_service
from .view_ledger import get_active_video

logger = logging.getLogger(__name__)


def _month_start(now: datetime) -> datetime:
    local_now = timezone.localtime(now)
    return local_now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def record_download(user_id: int, video_id, now: Optional[datetime] = None) -> Dict:
    """
    Record an offline download for a subscriber.

    The plan must allow downloads and the user must be under the plan's
    monthly download limit. A download stays valid for DOWNLOAD_VALIDITY_DAYS.
    """
    now = now or timezone.now()
    video = get_active_video(video_id)

    with transaction.atomic():
        # One download decision per user at a time
        Entitlement.objects.select_for_update().get_or_create(user_id=user_id)

        subscription = subscription_service.get_active_subscription(user_id)
        if subscription is None or not subscription_service.check_feature_access(user_id, 'download'):
            raise Forbidden("An active subscription with downloads is required")

        plan = PLANS[subscription.plan_type]
        used = Download.objects.filter(user_id=user_id, downloaded_at__gte=_month_start(now)).count()
        if plan.download_limit > 0 and used >= plan.download_limit:
            raise Forbidden(
                f"Download limit reached. You have used {used}/{plan.download_limit} downloads this month."
            )

        if Download.objects.filter(user_id=user_id, video=video, status='completed').exists():
            raise Conflict("You have already downloaded this video")

        download = Download.objects.create(
            user_id=user_id,
            video=video,
            status='completed',
            expires_at=now + timedelta(days=settings.DOWNLOAD_VALIDITY_DAYS),
        )

    logger.info(f"User {user_id} downloaded video {video.id} ({used + 1}/{plan.download_limit} this month)")
    return {
        'download': download,
        'remainingDownloads': plan.download_limit - used - 1 if plan.download_limit > 0 else None,
    }


def clear_expired_downloads(now: Optional[datetime] = None) -> int:
    """Mark completed downloads past their expiry as expired. Idempotent."""
    now = now or timezone.now()
    cleared = Download.objects.filter(status='completed', expires_at__lt=now).update(status='expired')
    logger.info(f"Cleared {cleared} expired downloads")
    return cleared
