"""
Subscription State Machine

Subscription lifecycle and its coupling to the user's entitlement tier:
1. States: active, past_due, expired, cancelled (expired and cancelled are terminal)
2. Entering active grants the premium tier; leaving it reverts the user to client
3. Every status write goes through ``transition`` in one atomic block with the tier write
4. The expiry sweep uses conditional updates so overlapping sweeps never double-process a row
"""

import calendar
import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from django.contrib.auth.models import User
from django.db import IntegrityError, transaction
from django.utils import timezone

from .exceptions import Conflict, InvalidInput, NotFound
from .models import Entitlement, Subscription
from .signals import subscription_status_changed

logger = logging.getLogger(__name__)

Status = Subscription.Status


@dataclass(frozen=True)
class Plan:
    name: str
    price_monthly: Decimal
    price_yearly: Decimal
    max_video_quality: str
    allows_downloads: bool
    max_concurrent_streams: int
    ad_free: bool
    download_limit: int

    def price_for(self, billing_cycle: str) -> Decimal:
        if billing_cycle == Subscription.BillingCycle.YEARLY:
            return self.price_yearly
        return self.price_monthly

    @property
    def features(self) -> Dict:
        data = asdict(self)
        for key in ('name', 'price_monthly', 'price_yearly'):
            data.pop(key)
        return data


PLANS = {
    Subscription.PlanType.BASIC: Plan(
        name='Basic',
        price_monthly=Decimal('4.99'),
        price_yearly=Decimal('49.99'),
        max_video_quality='720p',
        allows_downloads=False,
        max_concurrent_streams=1,
        ad_free=False,
        download_limit=0,
    ),
    Subscription.PlanType.PREMIUM: Plan(
        name='Premium',
        price_monthly=Decimal('9.99'),
        price_yearly=Decimal('99.99'),
        max_video_quality='1080p',
        allows_downloads=True,
        max_concurrent_streams=3,
        ad_free=True,
        download_limit=10,
    ),
    Subscription.PlanType.FAMILY: Plan(
        name='Family',
        price_monthly=Decimal('14.99'),
        price_yearly=Decimal('149.99'),
        max_video_quality='4k',
        allows_downloads=True,
        max_concurrent_streams=5,
        ad_free=True,
        download_limit=30,
    ),
}

FEATURE_CHECKS = {
    'download': lambda plan_type, plan: plan.allows_downloads,
    'hd_quality': lambda plan_type, plan: plan.max_video_quality in ('1080p', '4k'),
    '4k_quality': lambda plan_type, plan: plan.max_video_quality == '4k',
    'ad_free': lambda plan_type, plan: plan.ad_free,
    'premium_content': lambda plan_type, plan: plan_type in (
        Subscription.PlanType.PREMIUM, Subscription.PlanType.FAMILY
    ),
    'concurrent_streams': lambda plan_type, plan: plan.max_concurrent_streams > 1,
}

ALLOWED_TRANSITIONS = {
    None: {Status.ACTIVE},
    Status.ACTIVE: {Status.EXPIRED, Status.CANCELLED, Status.PAST_DUE},
    Status.PAST_DUE: {Status.ACTIVE, Status.EXPIRED, Status.CANCELLED},
    Status.EXPIRED: set(),
    Status.CANCELLED: set(),
}

OPEN_STATUSES = (Status.ACTIVE, Status.PAST_DUE)


def add_months(moment: datetime, months: int) -> datetime:
    """Calendar month arithmetic, clamping to the last day of shorter months."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def _validate_plan(plan_type: str, billing_cycle: str) -> Plan:
    if plan_type not in PLANS:
        raise InvalidInput(f"Invalid plan type '{plan_type}'. Choose from: basic, premium, family")
    if billing_cycle not in Subscription.BillingCycle.values:
        raise InvalidInput(f"Invalid billing cycle '{billing_cycle}'. Choose from: monthly, yearly")
    return PLANS[plan_type]


def _end_date_for(start: datetime, billing_cycle: str) -> datetime:
    return add_months(start, 12 if billing_cycle == Subscription.BillingCycle.YEARLY else 1)


class SubscriptionService:
    """Service owning every subscription status write"""

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def _set_entitlement(self, user_id: int, tier: str) -> None:
        """Must run inside the transaction that writes the subscription status."""
        entitlement, _ = Entitlement.objects.select_for_update().get_or_create(user_id=user_id)
        if entitlement.tier == Entitlement.Tier.ADMIN or entitlement.tier == tier:
            return

        if tier == Entitlement.Tier.CLIENT and Subscription.objects.filter(
            user_id=user_id, status=Status.ACTIVE
        ).exists():
            # Another subscription still grants access
            return

        entitlement.tier = tier
        entitlement.save(update_fields=['tier', 'updated_at'])
        self.logger.info(f"Entitlement for user {user_id} set to {tier}")

    def transition(self, subscription: Subscription, new_status: str, reason: str = '',
                   now: Optional[datetime] = None) -> Subscription:
        """
        Move a subscription to ``new_status`` and apply the entitlement side effect.

        Raises:
            Conflict: the transition is not allowed from the current state
        """
        now = now or timezone.now()
        previous_status = subscription.status if subscription.pk else None

        if new_status not in ALLOWED_TRANSITIONS.get(previous_status, set()):
            raise Conflict(
                f"Subscription {subscription.pk} cannot move from {previous_status or 'none'} to {new_status}"
            )

        with transaction.atomic():
            subscription.status = new_status
            if new_status == Status.CANCELLED:
                subscription.end_date = now
            subscription.save()

            if new_status == Status.ACTIVE:
                self._set_entitlement(subscription.user_id, Entitlement.Tier.PREMIUM)
            elif new_status in (Status.EXPIRED, Status.CANCELLED):
                self._set_entitlement(subscription.user_id, Entitlement.Tier.CLIENT)

            subscription_status_changed.send(
                sender=self.__class__,
                subscription=subscription,
                previous_status=previous_status,
                new_status=new_status,
                reason=reason,
            )
        return subscription

    def _lock(self, subscription_id) -> Subscription:
        try:
            return Subscription.objects.select_for_update().get(id=subscription_id)
        except (Subscription.DoesNotExist, ValueError, TypeError):
            raise NotFound(f"Subscription {subscription_id} not found")

    def create_subscription(self, user_id: int, plan_type: str, billing_cycle: str,
                            payment_method: str = '') -> Subscription:
        plan = _validate_plan(plan_type, billing_cycle)
        if not User.objects.filter(id=user_id).exists():
            raise NotFound(f"User {user_id} not found")

        start = timezone.now()
        try:
            with transaction.atomic():
                # Serialize creates for the same user on the entitlement row
                Entitlement.objects.select_for_update().get_or_create(user_id=user_id)
                if Subscription.objects.filter(user_id=user_id, status__in=OPEN_STATUSES).exists():
                    raise Conflict("User already has an active subscription")

                subscription = Subscription(
                    user_id=user_id,
                    plan_type=plan_type,
                    billing_cycle=billing_cycle,
                    amount=plan.price_for(billing_cycle),
                    start_date=start,
                    end_date=_end_date_for(start, billing_cycle),
                    payment_method=payment_method or '',
                )
                self.transition(subscription, Status.ACTIVE, reason='created', now=start)
        except IntegrityError:
            raise Conflict("User already has an active subscription")

        self.logger.info(
            f"Subscription {subscription.id} created for user {user_id}: "
            f"{plan_type}/{billing_cycle} ${subscription.amount}"
        )
        return subscription

    def cancel_subscription(self, user_id: int, reason: str = 'user_request') -> Subscription:
        with transaction.atomic():
            subscription = (
                Subscription.objects.select_for_update()
                .filter(user_id=user_id, status__in=OPEN_STATUSES)
                .order_by('-created_at')
                .first()
            )
            if subscription is None:
                raise NotFound("No active subscription found to cancel")
            return self.transition(subscription, Status.CANCELLED, reason=reason)

    def cancel_subscription_by_id(self, subscription_id, reason: str = '') -> Subscription:
        """Cancel a specific subscription; already-terminal ones are left as they are."""
        with transaction.atomic():
            subscription = self._lock(subscription_id)
            if subscription.is_terminal:
                self.logger.info(f"Subscription {subscription.id} already {subscription.status}; nothing to cancel")
                return subscription
            return self.transition(subscription, Status.CANCELLED, reason=reason)

    def mark_past_due(self, subscription_id, reason: str = 'renewal_failed') -> Subscription:
        with transaction.atomic():
            subscription = self._lock(subscription_id)
            return self.transition(subscription, Status.PAST_DUE, reason=reason)

    def activate_subscription(self, subscription_id, reason: str = 'payment_successful') -> Subscription:
        """
        Bring a subscription into ``active`` after a successful payment.

        An already active subscription only has its premium tier re-asserted.
        A past_due one recovers. Terminal subscriptions raise ``Conflict``.
        """
        try:
            with transaction.atomic():
                subscription = self._lock(subscription_id)
                if subscription.status == Status.ACTIVE:
                    self._set_entitlement(subscription.user_id, Entitlement.Tier.PREMIUM)
                    return subscription
                return self.transition(subscription, Status.ACTIVE, reason=reason)
        except IntegrityError:
            raise Conflict(f"Subscription {subscription_id} cannot be activated: user already has an active subscription")

    def sweep_expired(self, now: Optional[datetime] = None) -> int:
        """
        Expire every open subscription whose end date has passed.

        Safe to run repeatedly and concurrently: each row is claimed with a
        conditional update, so a row another sweep already moved is skipped.

        Returns:
            Number of subscriptions this call expired
        """
        now = now or timezone.now()
        candidates = list(
            Subscription.objects.filter(status__in=OPEN_STATUSES, end_date__lt=now)
            .values_list('id', 'status')
        )

        expired = 0
        for subscription_id, previous_status in candidates:
            with transaction.atomic():
                claimed = Subscription.objects.filter(
                    id=subscription_id, status=previous_status, end_date__lt=now
                ).update(status=Status.EXPIRED, updated_at=now)
                if not claimed:
                    continue

                subscription = Subscription.objects.get(id=subscription_id)
                self._set_entitlement(subscription.user_id, Entitlement.Tier.CLIENT)
                subscription_status_changed.send(
                    sender=self.__class__,
                    subscription=subscription,
                    previous_status=previous_status,
                    new_status=Status.EXPIRED,
                    reason='sweep',
                )
                expired += 1

        self.logger.info(f"Expiry sweep: {expired} of {len(candidates)} candidate subscriptions expired")
        return expired

    def get_active_subscription(self, user_id: int) -> Optional[Subscription]:
        return (
            Subscription.objects
            .filter(user_id=user_id, status=Status.ACTIVE, end_date__gt=timezone.now())
            .order_by('-created_at')
            .first()
        )

    def check_feature_access(self, user_id: int, feature: str) -> bool:
        if feature not in FEATURE_CHECKS:
            raise InvalidInput(f"Unknown feature '{feature}'. Choose from: {', '.join(FEATURE_CHECKS)}")

        subscription = self.get_active_subscription(user_id)
        if subscription is None:
            return False
        return bool(FEATURE_CHECKS[feature](subscription.plan_type, PLANS[subscription.plan_type]))

    def get_subscription_status(self, user_id: int) -> Dict:
        subscription = self.get_active_subscription(user_id)
        plan = PLANS[subscription.plan_type] if subscription else None
        return {
            'hasActiveSubscription': subscription is not None,
            'subscription': subscription,
            'planDetails': {'name': plan.name, 'price': subscription.amount} if plan else None,
            'features': plan.features if plan else None,
            'entitlement': Entitlement.tier_for(user_id),
        }

    def list_plans(self) -> List[Dict]:
        plans = []
        for plan_type, plan in PLANS.items():
            yearly_at_monthly_price = plan.price_monthly * 12
            savings = (yearly_at_monthly_price - plan.price_yearly) / yearly_at_monthly_price * 100
            plans.append({
                'id': plan_type.value,
                'name': plan.name,
                'priceMonthly': plan.price_monthly,
                'priceYearly': plan.price_yearly,
                'features': plan.features,
                'yearlySavings': int(savings.to_integral_value()),
            })
        return plans

    def change_plan(self, user_id: int, plan_type: str, billing_cycle: Optional[str] = None) -> Subscription:
        """Upgrade or downgrade the active subscription, recomputing its amount and end date."""
        with transaction.atomic():
            subscription = (
                Subscription.objects.select_for_update()
                .filter(user_id=user_id, status=Status.ACTIVE)
                .first()
            )
            if subscription is None:
                raise NotFound("No active subscription found")

            billing_cycle = billing_cycle or subscription.billing_cycle
            plan = _validate_plan(plan_type, billing_cycle)

            subscription.plan_type = plan_type
            subscription.billing_cycle = billing_cycle
            subscription.amount = plan.price_for(billing_cycle)
            subscription.end_date = _end_date_for(subscription.start_date, billing_cycle)
            subscription.save(update_fields=['plan_type', 'billing_cycle', 'amount', 'end_date', 'updated_at'])

        self.logger.info(f"Subscription {subscription.id} changed to {plan_type}/{billing_cycle}")
        return subscription


# Global service instance
subscription_service = SubscriptionService()

transition = subscription_service.transition
create_subscription = subscription_service.create_subscription
cancel_subscription = subscription_service.cancel_subscription
sweep_expired = subscription_service.sweep_expired
check_feature_access = subscription_service.check_feature_access
get_active_subscription = subscription_service.get_active_subscription
get_subscription_status = subscription_service.get_subscription_status
list_plans = subscription_service.list_plans
change_plan = subscription_service.change_plan
mark_past_due = subscription_service.mark_past_due
activate_subscription = subscription_service.activate_subscription
