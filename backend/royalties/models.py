from django.db import models
from django.db.models import Q
from django.contrib.auth.models import User
from django.core.validators import MinValueValidator, MaxValueValidator
from decimal import Decimal
import uuid
import hashlib
import json
from datetime import datetime


class ContentCreator(models.Model):
    name = models.CharField(max_length=150)
    email = models.EmailField()
    user = models.OneToOneField(User, on_delete=models.SET_NULL, null=True, blank=True, related_name='creator_profile')
    royalty_percentage = models.DecimalField(
        max_digits=5, decimal_places=4, default=Decimal('0.6000'),
        validators=[MinValueValidator(Decimal('0')), MaxValueValidator(Decimal('1'))],
        help_text="Fraction (0-1) of gross per-view revenue paid to the creator"
    )
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['id']

    def __str__(self):
        return self.name


class Video(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    title = models.CharField(max_length=200)
    category = models.CharField(max_length=50, blank=True)
    creator = models.ForeignKey(ContentCreator, on_delete=models.CASCADE, related_name='videos')
    duration = models.FloatField(help_text="Duration in seconds", blank=True, null=True)
    view_count = models.PositiveIntegerField(default=0, help_text="Denormalized count of tracked views")
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['creator'], name='video_creator_idx'),
            models.Index(fields=['view_count'], name='video_view_count_idx'),
        ]

    def __str__(self):
        return f"{self.title} by {self.creator.name}"


class VideoLike(models.Model):
    user = models.ForeignKey(User, on_delete=models.CASCADE, related_name='video_likes')
    video = models.ForeignKey(Video, on_delete=models.CASCADE, related_name='likes')
    liked_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        unique_together = ('user', 'video')
        indexes = [
            models.Index(fields=['video', 'liked_at'], name='like_video_time_idx'),
        ]

    def __str__(self):
        return f"{self.user.username} liked {self.video.title}"


class Download(models.Model):
    STATUS_CHOICES = [
        ('completed', 'Completed'),
        ('expired', 'Expired'),
        ('failed', 'Failed'),
    ]

    user = models.ForeignKey(User, on_delete=models.CASCADE, related_name='downloads')
    video = models.ForeignKey(Video, on_delete=models.CASCADE, related_name='downloads')
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='completed')
    downloaded_at = models.DateTimeField(auto_now_add=True)
    expires_at = models.DateTimeField(null=True, blank=True, help_text="When the offline copy stops being valid")

    class Meta:
        indexes = [
            models.Index(fields=['user', 'downloaded_at'], name='download_user_time_idx'),
            models.Index(fields=['status', 'expires_at'], name='download_status_exp_idx'),
        ]

    def __str__(self):
        return f"{self.user.username} downloaded {self.video.title} ({self.status})"


class Entitlement(models.Model):
    """The user's service tier. Written only by subscription transitions."""

    class Tier(models.TextChoices):
        CLIENT = 'client', 'Client'
        PREMIUM = 'premium', 'Premium'
        ADMIN = 'admin', 'Admin'

    user = models.OneToOneField(User, on_delete=models.CASCADE, related_name='entitlement')
    tier = models.CharField(max_length=10, choices=Tier.choices, default=Tier.CLIENT)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return f"{self.user.username}: {self.tier}"

    @classmethod
    def tier_for(cls, user_id):
        tier = cls.objects.filter(user_id=user_id).values_list('tier', flat=True).first()
        return tier or cls.Tier.CLIENT


class ViewRecord(models.Model):
    """One playback session's progress and its royalty classification."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    viewer = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, blank=True, related_name='view_records')
    video = models.ForeignKey(Video, on_delete=models.CASCADE, related_name='view_records')
    owner = models.ForeignKey(ContentCreator, on_delete=models.CASCADE, related_name='view_records',
                              help_text="Creator of the video, denormalized for revenue grouping")
    watch_duration = models.FloatField(default=0.0, help_text="Seconds watched")
    total_duration = models.FloatField(default=0.0, help_text="Video length in seconds at view time")
    watch_percentage = models.FloatField(default=0.0, help_text="Percentage of video watched (0-100)")
    qualified = models.BooleanField(default=False, help_text="Counts toward creator royalties")
    revenue_earned = models.DecimalField(max_digits=10, decimal_places=4, default=Decimal('0'))
    quality = models.CharField(max_length=20, default='auto')
    device_info = models.JSONField(default=dict, blank=True)
    ip_address = models.GenericIPAddressField(null=True, blank=True)
    started_at = models.DateTimeField()
    ended_at = models.DateTimeField()
    settled_at = models.DateTimeField(null=True, blank=True,
                                      help_text="Set once the view is included in a closed royalty period")

    class Meta:
        ordering = ['-started_at']
        indexes = [
            models.Index(fields=['video', 'started_at'], name='view_video_time_idx'),
            models.Index(fields=['owner', 'started_at'], name='view_owner_time_idx'),
            models.Index(fields=['viewer', 'started_at'], name='view_viewer_time_idx'),
            models.Index(fields=['qualified', 'started_at'], name='view_qualified_time_idx'),
        ]

    def __str__(self):
        username = self.viewer.username if self.viewer else "Anonymous"
        return f"View by {username} on {self.video.title} ({self.watch_percentage:.1f}%)"

    @property
    def is_settled(self):
        return self.settled_at is not None


class WatchHistory(models.Model):
    user = models.ForeignKey(User, on_delete=models.CASCADE, related_name='watch_history')
    video = models.ForeignKey(Video, on_delete=models.CASCADE, related_name='watch_history')
    progress_seconds = models.FloatField(default=0.0)
    total_seconds = models.FloatField(default=0.0)
    watch_percentage = models.FloatField(default=0.0)
    completed = models.BooleanField(default=False, help_text="True if watched >= 90%")
    watched_at = models.DateTimeField()

    class Meta:
        unique_together = ('user', 'video')
        ordering = ['-watched_at']

    def __str__(self):
        return f"{self.user.username} at {self.progress_seconds:.0f}s of {self.video.title}"


class Subscription(models.Model):
    class PlanType(models.TextChoices):
        BASIC = 'basic', 'Basic'
        PREMIUM = 'premium', 'Premium'
        FAMILY = 'family', 'Family'

    class BillingCycle(models.TextChoices):
        MONTHLY = 'monthly', 'Monthly'
        YEARLY = 'yearly', 'Yearly'

    class Status(models.TextChoices):
        ACTIVE = 'active', 'Active'
        EXPIRED = 'expired', 'Expired'
        CANCELLED = 'cancelled', 'Cancelled'
        PAST_DUE = 'past_due', 'Past Due'

    user = models.ForeignKey(User, on_delete=models.CASCADE, related_name='subscriptions')
    plan_type = models.CharField(max_length=10, choices=PlanType.choices)
    billing_cycle = models.CharField(max_length=10, choices=BillingCycle.choices)
    amount = models.DecimalField(max_digits=10, decimal_places=2)
    start_date = models.DateTimeField()
    end_date = models.DateTimeField()
    status = models.CharField(max_length=10, choices=Status.choices, default=Status.ACTIVE)
    payment_method = models.CharField(max_length=30, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-created_at']
        constraints = [
            models.UniqueConstraint(
                fields=['user'],
                condition=Q(status='active'),
                name='one_active_subscription_per_user',
            ),
        ]
        indexes = [
            models.Index(fields=['status', 'end_date'], name='sub_status_end_idx'),
            models.Index(fields=['user', 'status'], name='sub_user_status_idx'),
        ]

    def __str__(self):
        return f"{self.user.username} - {self.plan_type}/{self.billing_cycle} ({self.status})"

    @property
    def is_terminal(self):
        return self.status in (self.Status.EXPIRED, self.Status.CANCELLED)


class Payment(models.Model):
    class Provider(models.TextChoices):
        PAYSTACK = 'paystack', 'Paystack'
        FLUTTERWAVE = 'flutterwave', 'Flutterwave'

    class Status(models.TextChoices):
        PENDING = 'pending', 'Pending'
        SUCCESSFUL = 'successful', 'Successful'
        FAILED = 'failed', 'Failed'
        REFUNDED = 'refunded', 'Refunded'

    user = models.ForeignKey(User, on_delete=models.CASCADE, related_name='payments')
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    currency = models.CharField(max_length=3, default='NGN')
    provider = models.CharField(max_length=20, choices=Provider.choices)
    provider_ref = models.CharField(max_length=120, unique=True, help_text="External transaction reference")
    subscription = models.ForeignKey(Subscription, on_delete=models.SET_NULL, null=True, blank=True,
                                     related_name='payments')
    status = models.CharField(max_length=12, choices=Status.choices, default=Status.PENDING)
    description = models.CharField(max_length=255, blank=True)
    paid_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['user', '-created_at'], name='payment_user_time_idx'),
            models.Index(fields=['status', 'created_at'], name='payment_status_time_idx'),
        ]

    def __str__(self):
        return f"{self.provider}:{self.provider_ref} {self.amount} {self.currency} ({self.status})"


class AuditLog(models.Model):
    """Append-only, hash-chained log of ledger state changes"""

    ACTION_TYPES = [
        ('subscription_transition', 'Subscription Transition'),
        ('payment_transition', 'Payment Transition'),
        ('inconsistent_state', 'Inconsistent State'),
        ('view_settlement', 'View Settlement'),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    action_type = models.CharField(max_length=30, choices=ACTION_TYPES)
    user = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, blank=True, related_name='audit_logs')
    description = models.TextField()
    metadata = models.JSONField(default=dict)

    log_hash = models.CharField(max_length=64, unique=True, editable=False, null=True, blank=True)
    previous_log_hash = models.CharField(max_length=64, blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['action_type', '-created_at'], name='audit_action_time_idx'),
        ]

    def calculate_hash(self):
        log_data = {
            'id': str(self.id),
            'action_type': self.action_type,
            'user_id': self.user_id,
            'description': self.description,
            'metadata': self.metadata,
            'previous_log_hash': self.previous_log_hash,
            'timestamp': self.created_at.isoformat() if self.created_at else datetime.now().isoformat()
        }

        log_string = json.dumps(log_data, sort_keys=True, default=str)
        return hashlib.sha256(log_string.encode()).hexdigest()

    def verify_integrity(self):
        return self.calculate_hash() == self.log_hash

    def save(self, *args, **kwargs):
        if not self.log_hash:
            previous_log = AuditLog.objects.exclude(log_hash__isnull=True).order_by('-created_at').first()
            if previous_log:
                self.previous_log_hash = previous_log.log_hash

            super().save(*args, **kwargs)
            self.log_hash = self.calculate_hash()
            super().save(update_fields=['log_hash'])
        else:
            super().save(*args, **kwargs)

    def __str__(self):
        return f"Audit: {self.action_type} - {self.description[:40]}"
