from rest_framework import status
from rest_framework.decorators import api_view, authentication_classes, permission_classes
from rest_framework.response import Response
from rest_framework.permissions import IsAuthenticated, AllowAny, IsAdminUser
from .exceptions import Forbidden
from .models import AuditLog, ContentCreator
from .serializers import (
    AuditLogSerializer, ViewRecordSerializer, WatchHistorySerializer, DownloadSerializer, SubscriptionSerializer,
    PaymentSerializer, RecordViewSerializer, WatchProgressSerializer, CreateSubscriptionSerializer,
    CreatePaymentSerializer, PaymentStatusSerializer
)
from .view_ledger import view_ledger
from .revenue_service import revenue_service
from .subscription_service import subscription_service
from .payment_service import payment_service
from .downloads import record_download
import logging

logger = logging.getLogger(__name__)


def _client_ip(request):
    x_forwarded_for = request.META.get('HTTP_X_FORWARDED_FOR')
    if x_forwarded_for:
        return x_forwarded_for.split(',')[0].strip()
    return request.META.get('REMOTE_ADDR')


def _target_user_id(request, user_id=None):
    """Non-admin users may only act on themselves; admins may name any user."""
    if user_id is None or user_id == '':
        return request.user.id
    try:
        user_id = int(user_id)
    except (TypeError, ValueError):
        raise Forbidden("Invalid user_id")
    if user_id != request.user.id and not request.user.is_staff:
        raise Forbidden("You can only act on your own account")
    return user_id


def _ok(data, http_status=status.HTTP_200_OK):
    return Response({'success': True, 'data': data}, status=http_status)


# ---------------------------------------------------------------------------
# View ledger
# ---------------------------------------------------------------------------

@api_view(['POST'])
@permission_classes([AllowAny])
def record_view(request, video_id):
    """Record a playback session, or update one when view_id is sent"""
    serializer = RecordViewSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)
    data = serializer.validated_data

    record = view_ledger.record_or_update_view(
        video_id,
        data['watch_duration'],
        total_duration=data.get('total_duration', 0),
        viewer=request.user,
        quality=data.get('quality', 'auto'),
        device_info=data.get('device_info'),
        ip_address=_client_ip(request),
        view_id=data.get('view_id'),
    )
    http_status = status.HTTP_200_OK if data.get('view_id') else status.HTTP_201_CREATED
    return _ok(ViewRecordSerializer(record).data, http_status)


@api_view(['GET'])
@permission_classes([AllowAny])
def video_view_stats(request, video_id):
    return _ok(view_ledger.get_view_stats(video_id, request.query_params.get('period')))


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def track_watch_progress(request, video_id):
    serializer = WatchProgressSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)

    history = view_ledger.update_watch_progress(
        request.user, video_id, serializer.validated_data['progress_seconds']
    )
    return _ok(WatchHistorySerializer(history).data)


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def watch_history(request):
    """Get the user's view records, newest first"""
    result = view_ledger.get_user_watch_history(
        request.user,
        page=request.query_params.get('page', 1),
        limit=request.query_params.get('limit', 20),
    )
    return _ok(result)


@api_view(['GET'])
@permission_classes([AllowAny])
def popular_videos(request):
    result = view_ledger.get_popular_videos(
        period=request.query_params.get('period'),
        limit=request.query_params.get('limit', 20),
        category=request.query_params.get('category'),
    )
    return _ok(result)


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def download_video(request, video_id):
    """Record an offline download; needs a plan with downloads left this month"""
    result = record_download(request.user.id, video_id)
    return _ok({
        'download': DownloadSerializer(result['download']).data,
        'remainingDownloads': result['remainingDownloads'],
    }, status.HTTP_201_CREATED)


# ---------------------------------------------------------------------------
# Revenue analytics
# ---------------------------------------------------------------------------

@api_view(['GET'])
@permission_classes([IsAuthenticated])
def creator_analytics(request, creator_id):
    """Creator dashboard; creators see their own, admins see anyone's"""
    if not request.user.is_staff and not ContentCreator.objects.filter(
        id=creator_id, user=request.user
    ).exists():
        raise Forbidden("You can only view your own analytics")

    return _ok(revenue_service.get_creator_analytics(creator_id, request.query_params.get('period')))


@api_view(['GET'])
@permission_classes([IsAdminUser])
def admin_analytics(request):
    return _ok(revenue_service.get_admin_analytics(request.query_params.get('period')))


@api_view(['GET'])
@permission_classes([IsAdminUser])
def revenue_reports(request):
    """Per-creator royalty report for a date range (YYYY-MM-DD or ISO datetimes)"""
    result = revenue_service.get_revenue_reports(
        creator_id=request.query_params.get('creator_id'),
        start_date=request.query_params.get('start_date'),
        end_date=request.query_params.get('end_date'),
    )
    return _ok(result)


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------

@api_view(['GET'])
@permission_classes([AllowAny])
def subscription_plans(request):
    return _ok(subscription_service.list_plans())


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def create_subscription(request):
    serializer = CreateSubscriptionSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)
    data = serializer.validated_data

    subscription = subscription_service.create_subscription(
        _target_user_id(request, data.get('user_id')),
        data['plan_type'],
        data['billing_cycle'],
        payment_method=data.get('payment_method', ''),
    )
    return _ok(SubscriptionSerializer(subscription).data, status.HTTP_201_CREATED)


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def cancel_subscription(request):
    subscription = subscription_service.cancel_subscription(
        _target_user_id(request, request.data.get('user_id')),
        reason=request.data.get('reason') or 'user_request',
    )
    return _ok(SubscriptionSerializer(subscription).data)


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def subscription_status(request):
    result = subscription_service.get_subscription_status(
        _target_user_id(request, request.query_params.get('user_id'))
    )
    if result['subscription'] is not None:
        result['subscription'] = SubscriptionSerializer(result['subscription']).data
    return _ok(result)


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def feature_access(request, feature):
    user_id = _target_user_id(request, request.query_params.get('user_id'))
    return _ok({
        'feature': feature,
        'hasAccess': subscription_service.check_feature_access(user_id, feature),
    })


@api_view(['POST'])
@permission_classes([IsAdminUser])
def sweep_expired_subscriptions(request):
    expired = subscription_service.sweep_expired()
    logger.info(f"Admin {request.user.username} ran the expiry sweep: {expired} expired")
    return _ok({'expired': expired})


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------

@api_view(['POST'])
@permission_classes([IsAuthenticated])
def create_payment(request):
    serializer = CreatePaymentSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)
    data = serializer.validated_data

    payment = payment_service.create_payment(
        _target_user_id(request, data.get('user_id')),
        data['amount'],
        data['provider'],
        data['provider_ref'],
        subscription_id=data.get('subscription_id'),
        description=data.get('description', ''),
        currency=data.get('currency') or None,
    )
    return _ok(PaymentSerializer(payment).data, status.HTTP_201_CREATED)


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def my_payments(request):
    result = payment_service.get_user_payments(
        _target_user_id(request, request.query_params.get('user_id')),
        status=request.query_params.get('status'),
        page=request.query_params.get('page', 1),
        limit=request.query_params.get('limit', 20),
    )
    result['results'] = PaymentSerializer(result['results'], many=True).data
    return _ok(result)


@api_view(['POST'])
@permission_classes([IsAdminUser])
def update_payment_status(request, payment_id):
    serializer = PaymentStatusSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)

    payment = payment_service.update_payment_status(
        payment_id,
        serializer.validated_data['status'],
        reason=serializer.validated_data.get('reason', ''),
    )
    return _ok(PaymentSerializer(payment).data)


@api_view(['POST'])
@permission_classes([IsAdminUser])
def refund_payment(request, payment_id):
    payment = payment_service.process_refund(payment_id, reason=request.data.get('reason', ''))
    return _ok(PaymentSerializer(payment).data)


@api_view(['GET'])
@permission_classes([IsAdminUser])
def payment_statistics(request):
    return _ok(payment_service.get_payment_statistics(request.query_params.get('period')))


@api_view(['POST'])
@authentication_classes([])
@permission_classes([AllowAny])
def payment_webhook(request, provider):
    """Provider callback; authenticated by its signature header, not a user token"""
    result = payment_service.handle_webhook(provider, request.body, request.headers)
    return _ok(result)


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def audit_log(request):
    """Latest audit entries for the user's subscriptions and payments, with integrity check"""
    logs = AuditLog.objects.filter(
        user_id=_target_user_id(request, request.query_params.get('user_id'))
    )[:100]
    return _ok(AuditLogSerializer(logs, many=True).data)
