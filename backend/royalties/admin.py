from django.contrib import admin
from django.contrib import messages
from django.db import transaction
from django.utils.html import format_html
from .exceptions import LedgerError
from .models import (
    ContentCreator, Video, VideoLike, Download, Entitlement, ViewRecord, WatchHistory,
    Subscription, Payment, AuditLog
)
from .payment_service import payment_service
from .subscription_service import subscription_service
import logging

logger = logging.getLogger(__name__)


@admin.register(ContentCreator)
class ContentCreatorAdmin(admin.ModelAdmin):
    list_display = ('name', 'email', 'user', 'royalty_percentage', 'is_active', 'created_at')
    list_filter = ('is_active',)
    search_fields = ('name', 'email', 'user__username')


@admin.register(Video)
class VideoAdmin(admin.ModelAdmin):
    list_display = ('title', 'creator', 'category', 'duration', 'view_count', 'is_active', 'created_at')
    list_filter = ('is_active', 'category', 'created_at')
    search_fields = ('title', 'creator__name')
    readonly_fields = ('id', 'created_at')
    actions = ['sync_view_counts_for_selected']

    def sync_view_counts_for_selected(self, request, queryset):
        """Recompute the cached view_count from view records"""
        updated_count = 0
        for video in queryset:
            actual = video.view_records.count()
            if actual != video.view_count:
                Video.objects.filter(id=video.id).update(view_count=actual)
                updated_count += 1

        self.message_user(
            request,
            f"Synced view counts: {updated_count} of {queryset.count()} videos changed.",
            messages.SUCCESS
        )

    sync_view_counts_for_selected.short_description = "Sync cached view counts"


@admin.register(VideoLike)
class VideoLikeAdmin(admin.ModelAdmin):
    list_display = ('user', 'video', 'liked_at')
    search_fields = ('user__username', 'video__title')


@admin.register(Download)
class DownloadAdmin(admin.ModelAdmin):
    list_display = ('user', 'video', 'status', 'downloaded_at', 'expires_at')
    list_filter = ('status', 'downloaded_at')
    search_fields = ('user__username', 'video__title')


@admin.register(Entitlement)
class EntitlementAdmin(admin.ModelAdmin):
    list_display = ('user', 'tier', 'updated_at')
    list_filter = ('tier',)
    search_fields = ('user__username',)


@admin.register(ViewRecord)
class ViewRecordAdmin(admin.ModelAdmin):
    list_display = ('id', 'video', 'viewer', 'get_watch_display', 'qualified', 'revenue_earned', 'started_at', 'settled_at')
    list_filter = ('qualified', 'started_at', 'settled_at')
    search_fields = ('video__title', 'viewer__username', 'owner__name')
    readonly_fields = ('id', 'qualified', 'revenue_earned', 'settled_at')

    def get_watch_display(self, obj):
        color = 'green' if obj.qualified else 'gray'
        return format_html(
            '<span style="color: {};">{}s / {}s ({}%)</span>',
            color, round(obj.watch_duration), round(obj.total_duration), round(obj.watch_percentage, 1)
        )

    get_watch_display.short_description = 'Watched'

    def get_queryset(self, request):
        return super().get_queryset(request).select_related('video', 'viewer', 'owner')


@admin.register(WatchHistory)
class WatchHistoryAdmin(admin.ModelAdmin):
    list_display = ('user', 'video', 'progress_seconds', 'watch_percentage', 'completed', 'watched_at')
    list_filter = ('completed',)
    search_fields = ('user__username', 'video__title')


@admin.register(Subscription)
class SubscriptionAdmin(admin.ModelAdmin):
    list_display = ('id', 'user', 'plan_type', 'billing_cycle', 'amount', 'status', 'start_date', 'end_date')
    list_filter = ('status', 'plan_type', 'billing_cycle')
    search_fields = ('user__username',)
    # Status only changes through the state machine
    readonly_fields = ('status', 'created_at', 'updated_at')
    actions = ['expire_selected']

    def has_add_permission(self, request):
        # New subscriptions go through subscription_service.create_subscription
        return False

    def expire_selected(self, request, queryset):
        """Expire subscriptions through the state machine so entitlements follow"""
        expired_count = 0
        for subscription_id in queryset.values_list('id', flat=True):
            try:
                with transaction.atomic():
                    subscription = Subscription.objects.select_for_update().get(id=subscription_id)
                    subscription_service.transition(
                        subscription, Subscription.Status.EXPIRED, reason=f"admin:{request.user.username}"
                    )
                expired_count += 1
            except LedgerError as e:
                logger.warning(f"Could not expire subscription {subscription_id}: {e.detail}")

        self.message_user(
            request,
            f"Expired {expired_count} of {queryset.count()} subscriptions.",
            messages.SUCCESS if expired_count else messages.WARNING
        )

    expire_selected.short_description = "Expire selected (via state machine)"


@admin.register(Payment)
class PaymentAdmin(admin.ModelAdmin):
    list_display = ('provider_ref', 'user', 'provider', 'amount', 'currency', 'status', 'subscription', 'created_at')
    list_filter = ('status', 'provider', 'created_at')
    search_fields = ('provider_ref', 'user__username')
    readonly_fields = ('provider_ref', 'status', 'paid_at', 'created_at', 'updated_at')
    actions = ['reverify_selected']

    def reverify_selected(self, request, queryset):
        """Ask the provider again about pending payments"""
        resolved = 0
        for payment in queryset.filter(status=Payment.Status.PENDING):
            try:
                result = payment_service.reconcile_pending(payment.id)
            except LedgerError as e:
                self.message_user(request, f"{payment.provider_ref}: {e.detail}", messages.ERROR)
                continue
            if result.status != Payment.Status.PENDING:
                resolved += 1

        self.message_user(request, f"Resolved {resolved} pending payments.", messages.INFO)

    reverify_selected.short_description = "Re-verify pending payments with provider"


@admin.register(AuditLog)
class AuditLogAdmin(admin.ModelAdmin):
    list_display = ('action_type', 'user', 'description', 'created_at')
    list_filter = ('action_type', 'created_at')
    search_fields = ('user__username', 'description')
    readonly_fields = ('id', 'log_hash', 'previous_log_hash', 'created_at')
