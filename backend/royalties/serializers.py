from rest_framework import serializers
from .models import AuditLog, Download, Payment, Subscription, ViewRecord, WatchHistory


class ViewRecordSerializer(serializers.ModelSerializer):
    video_id = serializers.UUIDField(read_only=True)
    is_settled = serializers.ReadOnlyField()

    class Meta:
        model = ViewRecord
        fields = [
            "id", "video_id", "watch_duration", "total_duration", "watch_percentage",
            "qualified", "revenue_earned", "quality", "started_at", "ended_at", "is_settled"
        ]


class WatchHistorySerializer(serializers.ModelSerializer):
    video_id = serializers.UUIDField(read_only=True)

    class Meta:
        model = WatchHistory
        fields = ["video_id", "progress_seconds", "total_seconds", "watch_percentage", "completed", "watched_at"]


class DownloadSerializer(serializers.ModelSerializer):
    video_id = serializers.UUIDField(read_only=True)
    video_title = serializers.CharField(source='video.title', read_only=True)

    class Meta:
        model = Download
        fields = ["id", "video_id", "video_title", "status", "downloaded_at", "expires_at"]


class SubscriptionSerializer(serializers.ModelSerializer):
    class Meta:
        model = Subscription
        fields = [
            "id", "plan_type", "billing_cycle", "amount", "start_date", "end_date",
            "status", "payment_method", "created_at", "updated_at"
        ]


class PaymentSerializer(serializers.ModelSerializer):
    subscription_id = serializers.IntegerField(read_only=True)

    class Meta:
        model = Payment
        fields = [
            "id", "amount", "currency", "provider", "provider_ref", "subscription_id",
            "status", "description", "paid_at", "created_at"
        ]


class AuditLogSerializer(serializers.ModelSerializer):
    integrity_verified = serializers.SerializerMethodField()

    class Meta:
        model = AuditLog
        fields = ["id", "action_type", "description", "metadata", "log_hash",
                  "previous_log_hash", "created_at", "integrity_verified"]

    def get_integrity_verified(self, obj):
        return obj.verify_integrity()


class RecordViewSerializer(serializers.Serializer):
    """Input for a playback event; view_id turns it into a progress update"""
    view_id = serializers.UUIDField(required=False, allow_null=True)
    watch_duration = serializers.FloatField(min_value=0)
    total_duration = serializers.FloatField(min_value=0, required=False, default=0)
    quality = serializers.CharField(max_length=20, required=False, default='auto')
    device_info = serializers.DictField(required=False, default=dict)


class WatchProgressSerializer(serializers.Serializer):
    progress_seconds = serializers.FloatField(min_value=0)


class CreateSubscriptionSerializer(serializers.Serializer):
    plan_type = serializers.ChoiceField(choices=Subscription.PlanType.choices)
    billing_cycle = serializers.ChoiceField(choices=Subscription.BillingCycle.choices,
                                            default=Subscription.BillingCycle.MONTHLY)
    payment_method = serializers.CharField(max_length=30, required=False, allow_blank=True, default='')
    user_id = serializers.IntegerField(required=False)


class CreatePaymentSerializer(serializers.Serializer):
    amount = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0)
    provider = serializers.ChoiceField(choices=Payment.Provider.choices)
    provider_ref = serializers.CharField(max_length=120)
    subscription_id = serializers.IntegerField(required=False, allow_null=True)
    description = serializers.CharField(max_length=255, required=False, allow_blank=True, default='')
    currency = serializers.CharField(max_length=3, required=False, allow_blank=True)
    user_id = serializers.IntegerField(required=False)


class PaymentStatusSerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=Payment.Status.choices)
    reason = serializers.CharField(max_length=200, required=False, allow_blank=True, default='')
