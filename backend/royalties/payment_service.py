"""
Payment Reconciliation

Bridges external payment confirmation into the subscription state machine:
1. The provider reference is the idempotency key; a reused reference is a Conflict
2. Provider-verified amount, currency and paid-at values override caller input
3. Unknown outcomes (provider unreachable) leave the payment pending, never successful
4. A successful payment activates its subscription; a refund cancels it
5. Webhook replays of an already-applied status are no-ops
"""

import logging
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Dict, Mapping, Optional

from django.contrib.auth.models import User
from django.db import IntegrityError, transaction
from django.db.models import Count, Sum
from django.utils import timezone

from .exceptions import (
    Conflict, ExternalServiceError, InconsistentState, InvalidInput, NotFound, PaymentRejected,
)
from .models import Payment, Subscription
from .payment_gateway import PaymentGateway, VerificationResult
from .periods import Period, comparison_ranges, parse_period
from .revenue_service import calculate_growth
from .signals import payment_activation_failed, payment_status_changed
from .subscription_service import subscription_service
from .utils.pagination import paginate

logger = logging.getLogger(__name__)

Status = Payment.Status

ALLOWED_TRANSITIONS = {
    None: {Status.PENDING},
    Status.PENDING: {Status.SUCCESSFUL, Status.FAILED},
    Status.SUCCESSFUL: {Status.REFUNDED},
    Status.FAILED: set(),
    Status.REFUNDED: set(),
}


class PaymentService:
    """Service for recording, verifying and reconciling payments"""

    def __init__(self, gateway: Optional[PaymentGateway] = None):
        self.logger = logging.getLogger(__name__)
        self.gateway = gateway or PaymentGateway()
        self._cent = Decimal('0.01')

    def _quantize_money(self, amount: Decimal) -> Decimal:
        """Round to 2 decimals using HALF_UP (money)."""
        if not isinstance(amount, Decimal):
            amount = Decimal(str(amount))
        return amount.quantize(self._cent, rounding=ROUND_HALF_UP)

    def _lock(self, payment_id) -> Payment:
        try:
            return Payment.objects.select_for_update().get(id=payment_id)
        except (Payment.DoesNotExist, ValueError, TypeError):
            raise NotFound(f"Payment {payment_id} not found")

    def _transition(self, payment: Payment, new_status: str, reason: str = '') -> Payment:
        """Must run inside a transaction holding the payment row lock."""
        previous_status = payment.status if payment.pk else None
        if new_status not in ALLOWED_TRANSITIONS.get(previous_status, set()):
            raise Conflict(
                f"Payment {payment.provider_ref} cannot move from {previous_status or 'none'} to {new_status}"
            )

        payment.status = new_status
        if new_status == Status.SUCCESSFUL and payment.paid_at is None:
            payment.paid_at = timezone.now()
        payment.save()

        payment_status_changed.send(
            sender=self.__class__,
            payment=payment,
            previous_status=previous_status,
            new_status=new_status,
            reason=reason,
        )
        return payment

    def _activate_after_payment(self, payment: Payment) -> None:
        """
        Activation runs after the successful payment is committed. If it fails the
        payment stays successful and the inconsistency is audited and raised.
        """
        if not payment.subscription_id:
            return
        try:
            subscription_service.activate_subscription(
                payment.subscription_id, reason=f"payment {payment.provider_ref}"
            )
        except (Conflict, NotFound) as e:
            payment_activation_failed.send(sender=self.__class__, payment=payment, error=e.detail)
            raise InconsistentState(
                f"Payment {payment.provider_ref} succeeded but subscription "
                f"{payment.subscription_id} could not be activated: {e.detail}"
            )

    def _apply_verification(self, payment_id, result: VerificationResult) -> Payment:
        """Apply a provider verdict to a pending payment; non-pending payments are left alone."""
        with transaction.atomic():
            payment = self._lock(payment_id)
            if payment.status != Status.PENDING:
                self.logger.info(f"Payment {payment.provider_ref} already {payment.status}; verification ignored")
                return payment

            if result.amount is not None:
                payment.amount = self._quantize_money(result.amount)
            if result.currency:
                payment.currency = result.currency.upper()[:3]
            if result.paid_at is not None:
                payment.paid_at = result.paid_at

            if result.success:
                return self._transition(payment, Status.SUCCESSFUL, reason='verified')
            return self._transition(payment, Status.FAILED, reason=result.message or result.status or 'rejected')

    def create_payment(self, user_id: int, amount, provider: str, provider_ref: str,
                       subscription_id=None, description: str = '', currency: Optional[str] = None) -> Payment:
        """
        Record a payment and verify it with the provider.

        The reference is claimed with a pending row before the provider is
        called, so concurrent attempts with the same reference get Conflict.

        Raises:
            Conflict: the provider reference was already recorded
            PaymentRejected: the provider reported the payment as not successful
            ExternalServiceError: the provider could not be reached (payment stays pending)
            InconsistentState: the payment succeeded but its subscription was not activated
        """
        if provider not in Payment.Provider.values:
            raise InvalidInput(f"Unsupported payment provider '{provider}'")
        provider_ref = (provider_ref or '').strip()
        if not provider_ref:
            raise InvalidInput("provider_ref is required")
        try:
            amount = self._quantize_money(Decimal(str(amount)))
        except (InvalidOperation, ValueError):
            raise InvalidInput("amount must be a decimal number")
        if amount <= 0:
            raise InvalidInput("amount must be positive")

        if not User.objects.filter(id=user_id).exists():
            raise NotFound(f"User {user_id} not found")
        if subscription_id is not None and not Subscription.objects.filter(
            id=subscription_id, user_id=user_id
        ).exists():
            raise NotFound(f"Subscription {subscription_id} not found for user {user_id}")

        if Payment.objects.filter(provider_ref=provider_ref).exists():
            raise Conflict("Payment reference already exists")

        default_currency = self.gateway.providers.get(provider, {}).get('default_currency', 'NGN')
        try:
            with transaction.atomic():
                payment = Payment(
                    user_id=user_id,
                    amount=amount,
                    currency=(currency or default_currency).upper()[:3],
                    provider=provider,
                    provider_ref=provider_ref,
                    subscription_id=subscription_id,
                    description=description or '',
                )
                self._transition(payment, Status.PENDING, reason='created')
        except IntegrityError:
            raise Conflict("Payment reference already exists")

        try:
            result = self.gateway.verify(provider, provider_ref)
        except ExternalServiceError as e:
            self.logger.warning(f"Payment {provider_ref} left pending: {e.detail}")
            raise

        payment = self._apply_verification(payment.id, result)
        if payment.status == Status.FAILED:
            raise PaymentRejected(
                f"Payment {provider_ref} was not successful: {result.message or result.status or 'rejected'}"
            )

        if payment.status == Status.SUCCESSFUL:
            self._activate_after_payment(payment)
        return payment

    def update_payment_status(self, payment_id, new_status: str, reason: str = '') -> Payment:
        """Admin status change through the payment transition table."""
        if new_status not in Status.values:
            raise InvalidInput(f"Invalid payment status '{new_status}'")
        if new_status == Status.REFUNDED:
            return self.process_refund(payment_id, reason=reason)

        with transaction.atomic():
            payment = self._lock(payment_id)
            if payment.status == new_status:
                return payment
            self._transition(payment, new_status, reason=reason or 'admin_update')

        if payment.status == Status.SUCCESSFUL:
            self._activate_after_payment(payment)
        return payment

    def process_refund(self, payment_id, reason: str = '') -> Payment:
        """
        Refund a successful payment. The linked subscription is cancelled and
        the user downgraded in the same transaction.
        """
        with transaction.atomic():
            payment = self._lock(payment_id)
            if payment.status != Status.SUCCESSFUL:
                raise Conflict(f"Only successful payments can be refunded; payment is {payment.status}")

            if reason:
                payment.description = f"{payment.description} | Refund: {reason}".strip(' |')[:255]
            self._transition(payment, Status.REFUNDED, reason=reason or 'refund')

            if payment.subscription_id:
                subscription_service.cancel_subscription_by_id(payment.subscription_id, reason='refund')

        self.logger.info(f"Payment {payment.provider_ref} refunded")
        return payment

    def handle_webhook(self, provider: str, raw_body: bytes, headers: Mapping) -> Dict:
        """
        Apply a provider webhook. Unknown references are logged and ignored;
        a replay of an already-applied status changes nothing.
        """
        event = self.gateway.parse_webhook(provider, raw_body, headers)

        with transaction.atomic():
            payment = Payment.objects.select_for_update().filter(provider_ref=event.provider_ref).first()
            if payment is None:
                self.logger.warning(f"{provider} webhook for unknown reference {event.provider_ref}")
                return {'processed': False, 'reason': 'unknown_reference', 'providerRef': event.provider_ref}

            if payment.provider != provider:
                self.logger.warning(
                    f"{provider} webhook for {event.provider_ref} but payment belongs to {payment.provider}"
                )
                return {'processed': False, 'reason': 'provider_mismatch', 'providerRef': event.provider_ref}

            if event.status == payment.status:
                self.logger.info(f"Duplicate {provider} webhook for {event.provider_ref}; nothing to do")
                return {'processed': False, 'reason': 'duplicate', 'providerRef': event.provider_ref,
                        'status': payment.status}

            if event.status == Status.PENDING or payment.status != Status.PENDING:
                self.logger.info(
                    f"{provider} webhook status {event.status} ignored for {event.provider_ref} ({payment.status})"
                )
                return {'processed': False, 'reason': 'not_applicable', 'providerRef': event.provider_ref,
                        'status': payment.status}

            if event.amount is not None:
                payment.amount = self._quantize_money(event.amount)
            if event.currency:
                payment.currency = event.currency.upper()[:3]
            self._transition(payment, event.status, reason=f"{provider} webhook")

        if payment.status == Status.SUCCESSFUL:
            self._activate_after_payment(payment)

        return {'processed': True, 'providerRef': event.provider_ref, 'status': payment.status}

    def reconcile_pending(self, payment_id) -> Payment:
        """Re-verify a payment left pending by a provider outage."""
        payment = Payment.objects.filter(id=payment_id).first()
        if payment is None:
            raise NotFound(f"Payment {payment_id} not found")
        if payment.status != Status.PENDING:
            raise Conflict(f"Payment {payment.provider_ref} is {payment.status}, not pending")

        result = self.gateway.verify(payment.provider, payment.provider_ref)
        payment = self._apply_verification(payment.id, result)
        if payment.status == Status.SUCCESSFUL:
            self._activate_after_payment(payment)
        return payment

    def reconcile_all_pending(self, older_than=None) -> Dict:
        """
        Re-verify every pending payment.

        Args:
            older_than: Only payments created before this moment

        Returns:
            Dict of counts per outcome
        """
        pending = Payment.objects.filter(status=Status.PENDING).order_by('created_at')
        if older_than is not None:
            pending = pending.filter(created_at__lt=older_than)

        results = {'checked': 0, 'successful': 0, 'failed': 0, 'still_pending': 0, 'inconsistent': 0}
        for payment_id in list(pending.values_list('id', flat=True)):
            results['checked'] += 1
            try:
                payment = self.reconcile_pending(payment_id)
            except ExternalServiceError as e:
                self.logger.warning(f"Payment {payment_id} still pending: {e.detail}")
                results['still_pending'] += 1
                continue
            except InconsistentState:
                results['inconsistent'] += 1
                continue
            except Conflict:
                # Settled concurrently by a webhook
                continue

            if payment.status == Status.SUCCESSFUL:
                results['successful'] += 1
            elif payment.status == Status.FAILED:
                results['failed'] += 1
            else:
                results['still_pending'] += 1

        self.logger.info(f"Pending payment reconciliation: {results}")
        return results

    def get_payment_statistics(self, period=Period.MONTH) -> Dict:
        period = parse_period(period)
        current, previous = comparison_ranges(period)

        payments = Payment.objects.filter(**current.filter_kwargs('created_at'))
        by_status = {row['status']: row for row in payments.values('status').annotate(
            count=Count('id'), total=Sum('amount')
        ).order_by()}

        def _total(status):
            return self._quantize_money((by_status.get(status) or {}).get('total') or Decimal('0'))

        revenue = _total(Status.SUCCESSFUL)
        if previous.empty:
            previous_revenue = Decimal('0')
        else:
            previous_revenue = Payment.objects.filter(
                status=Status.SUCCESSFUL, **previous.filter_kwargs('created_at')
            ).aggregate(total=Sum('amount'))['total'] or Decimal('0')

        by_provider = [
            {
                'provider': row['provider'],
                'count': row['count'],
                'revenue': self._quantize_money(row['revenue'] or Decimal('0')),
            }
            for row in payments.filter(status=Status.SUCCESSFUL)
            .values('provider')
            .annotate(count=Count('id'), revenue=Sum('amount'))
            .order_by('provider')
        ]

        return {
            'period': {
                'type': period.value,
                'startDate': current.start,
                'endDate': current.end,
            },
            'counts': {status: (by_status.get(status) or {}).get('count', 0) for status in Status.values},
            'totalPayments': sum(row['count'] for row in by_status.values()),
            'totalRevenue': revenue,
            'refundedAmount': _total(Status.REFUNDED),
            'revenueGrowth': calculate_growth(revenue, previous_revenue),
            'byProvider': by_provider,
        }

    def get_user_payments(self, user_id: int, status: Optional[str] = None, page=1, limit=20) -> Dict:
        payments = Payment.objects.filter(user_id=user_id).select_related('subscription').order_by('-created_at', '-id')
        if status:
            if status not in Status.values:
                raise InvalidInput(f"Invalid payment status '{status}'")
            payments = payments.filter(status=status)

        page_items, pagination = paginate(payments, page, limit, total_key='totalPayments')
        return {'results': page_items, 'pagination': pagination}


# Global service instance
payment_service = PaymentService()

create_payment = payment_service.create_payment
update_payment_status = payment_service.update_payment_status
process_refund = payment_service.process_refund
handle_webhook = payment_service.handle_webhook
reconcile_pending = payment_service.reconcile_pending
reconcile_all_pending = payment_service.reconcile_all_pending
get_payment_statistics = payment_service.get_payment_statistics
get_user_payments = payment_service.get_user_payments
