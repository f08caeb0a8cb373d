from django.urls import path
from . import views

urlpatterns = [
    # View ledger
    path("videos/popular/", views.popular_videos, name="popular-videos"),
    path("videos/<uuid:video_id>/views/", views.record_view, name="record-view"),
    path("videos/<uuid:video_id>/view-stats/", views.video_view_stats, name="video-view-stats"),
    path("videos/<uuid:video_id>/watch-progress/", views.track_watch_progress, name="watch-progress"),
    path("videos/<uuid:video_id>/download/", views.download_video, name="download-video"),
    path("watch-history/", views.watch_history, name="watch-history"),

    # Revenue analytics
    path("analytics/creators/<int:creator_id>/", views.creator_analytics, name="creator-analytics"),
    path("analytics/admin/", views.admin_analytics, name="admin-analytics"),
    path("analytics/revenue-reports/", views.revenue_reports, name="revenue-reports"),

    # Subscriptions
    path("subscriptions/", views.create_subscription, name="subscription-create"),
    path("subscriptions/plans/", views.subscription_plans, name="subscription-plans"),
    path("subscriptions/cancel/", views.cancel_subscription, name="subscription-cancel"),
    path("subscriptions/status/", views.subscription_status, name="subscription-status"),
    path("subscriptions/features/<str:feature>/", views.feature_access, name="feature-access"),
    path("admin/subscriptions/sweep-expired/", views.sweep_expired_subscriptions, name="sweep-expired"),

    # Payments
    path("payments/", views.create_payment, name="payment-create"),
    path("payments/mine/", views.my_payments, name="my-payments"),
    path("payments/webhook/<str:provider>/", views.payment_webhook, name="payment-webhook"),
    path("admin/payments/statistics/", views.payment_statistics, name="payment-statistics"),
    path("admin/payments/<int:payment_id>/status/", views.update_payment_status, name="payment-status"),
    path("admin/payments/<int:payment_id>/refund/", views.refund_payment, name="payment-refund"),

    # Audit
    path("audit-log/", views.audit_log, name="audit-log"),
]
