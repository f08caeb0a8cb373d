"""
Django signals for ledger state changes.

Every subscription and payment transition is written to the hash-chained
AuditLog from here, inside the caller's transaction.
"""
from django.dispatch import Signal, receiver
from .models import AuditLog
import logging

logger = logging.getLogger(__name__)


subscription_status_changed = Signal()
payment_status_changed = Signal()
payment_activation_failed = Signal()
views_settled = Signal()


@receiver(subscription_status_changed)
def audit_subscription_transition(sender, subscription, previous_status, new_status, **kwargs):
    """
    Record a subscription moving between states, including its creation
    """
    AuditLog.objects.create(
        action_type='subscription_transition',
        user_id=subscription.user_id,
        description=f"Subscription {subscription.id}: {previous_status or 'none'} -> {new_status}",
        metadata={
            'subscription_id': subscription.id,
            'plan_type': subscription.plan_type,
            'billing_cycle': subscription.billing_cycle,
            'from': previous_status,
            'to': new_status,
            'reason': kwargs.get('reason', ''),
        },
    )
    logger.info(f"Subscription {subscription.id} for user {subscription.user_id}: "
                f"{previous_status or 'none'} -> {new_status}")


@receiver(payment_status_changed)
def audit_payment_transition(sender, payment, previous_status, new_status, **kwargs):
    AuditLog.objects.create(
        action_type='payment_transition',
        user_id=payment.user_id,
        description=f"Payment {payment.provider_ref}: {previous_status or 'none'} -> {new_status}",
        metadata={
            'payment_id': payment.id,
            'provider': payment.provider,
            'provider_ref': payment.provider_ref,
            'amount': str(payment.amount),
            'currency': payment.currency,
            'from': previous_status,
            'to': new_status,
            'reason': kwargs.get('reason', ''),
        },
    )
    logger.info(f"Payment {payment.provider_ref}: {previous_status or 'none'} -> {new_status}")


@receiver(payment_activation_failed)
def audit_inconsistent_state(sender, payment, error, **kwargs):
    """
    A payment was recorded successful but its subscription could not be
    activated. Operators follow these up from the admin.
    """
    AuditLog.objects.create(
        action_type='inconsistent_state',
        user_id=payment.user_id,
        description=f"Payment {payment.provider_ref} succeeded but subscription "
                    f"{payment.subscription_id} was not activated",
        metadata={
            'payment_id': payment.id,
            'provider_ref': payment.provider_ref,
            'subscription_id': payment.subscription_id,
            'error': str(error),
        },
    )
    logger.error(f"Inconsistent state for payment {payment.provider_ref}: {error}")


@receiver(views_settled)
def audit_view_settlement(sender, period_end, settled_count, summaries, **kwargs):
    AuditLog.objects.create(
        action_type='view_settlement',
        description=f"Settled {settled_count} views before {period_end.isoformat()}",
        metadata={
            'period_end': period_end.isoformat(),
            'settled_count': settled_count,
            'creators': [
                {
                    'creator_id': summary['creatorId'],
                    'qualified_views': summary['qualifiedViews'],
                    'gross_revenue': str(summary['grossRevenue']),
                    'creator_share': str(summary['creatorShare']),
                }
                for summary in summaries
            ],
        },
    )
