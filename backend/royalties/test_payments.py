import hashlib
import hmac
import json
from decimal import Decimal
from io import StringIO

import requests
from django.contrib.auth.models import User
from django.core.management import call_command
from django.test import TestCase
from unittest.mock import MagicMock, patch

from .exceptions import (
    Conflict, ExternalServiceError, InconsistentState, InvalidInput, InvalidSignature, NotFound,
    PaymentRejected,
)
from .models import AuditLog, Entitlement, Payment, Subscription
from .payment_gateway import PaymentGateway, VerificationResult
from .payment_service import PaymentService, payment_service
from .subscription_service import subscription_service

PROVIDERS = {
    'paystack': {
        'verify_url': 'https://paystack.test/transaction/verify/',
        'secret_key': 'sk_test_paystack',
        'default_currency': 'NGN',
    },
    'flutterwave': {
        'verify_url': 'https://flutterwave.test/v3/transactions/verify_by_reference',
        'secret_key': 'sk_test_flutterwave',
        'webhook_hash': 'flw-hash',
        'default_currency': 'NGN',
    },
}

SUCCESS = VerificationResult(success=True, amount=Decimal('9.99'), currency='USD', status='success')
DECLINED = VerificationResult(success=False, amount=Decimal('9.99'), currency='USD', status='failed',
                              message='Declined')


def json_response(payload, status_code=200):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = payload
    return response


def paystack_webhook(reference, status='success', amount=999, secret='sk_test_paystack'):
    body = json.dumps({
        'event': 'charge.success',
        'data': {'reference': reference, 'status': status, 'amount': amount, 'currency': 'USD'},
    }).encode('utf-8')
    signature = hmac.new(secret.encode('utf-8'), body, hashlib.sha512).hexdigest()
    return body, {'X-Paystack-Signature': signature}


class PaymentGatewayTests(TestCase):
    """
    Provider client tests. The requests session is mocked; no network calls are made.
    """

    def setUp(self):
        self.session = MagicMock()
        self.gateway = PaymentGateway(providers=PROVIDERS, timeout=2, session=self.session)

    def test_paystack_success(self):
        self.session.get.return_value = json_response({
            'status': True,
            'message': 'Verification successful',
            'data': {'status': 'success', 'amount': 999, 'currency': 'NGN',
                     'paid_at': '2026-03-10T15:00:00Z'},
        })

        result = self.gateway.verify('paystack', 'ref/1')

        self.assertTrue(result.success)
        self.assertEqual(result.amount, Decimal('9.99'))
        self.assertEqual(result.currency, 'NGN')
        self.assertIsNotNone(result.paid_at)
        url = self.session.get.call_args[0][0]
        self.assertEqual(url, 'https://paystack.test/transaction/verify/ref%2F1')
        self.assertEqual(self.session.get.call_args[1]['timeout'], 2)
        self.assertEqual(
            self.session.get.call_args[1]['headers']['Authorization'], 'Bearer sk_test_paystack'
        )

    def test_paystack_declined(self):
        self.session.get.return_value = json_response({
            'status': True,
            'message': 'Verification successful',
            'data': {'status': 'failed', 'amount': 999, 'currency': 'NGN'},
        })
        self.assertFalse(self.gateway.verify('paystack', 'ref-2').success)

    def test_flutterwave_success(self):
        self.session.get.return_value = json_response({
            'status': 'success',
            'data': {'status': 'successful', 'amount': 14.99, 'currency': 'USD'},
        })

        result = self.gateway.verify('flutterwave', 'tx-9')

        self.assertTrue(result.success)
        self.assertEqual(result.amount, Decimal('14.99'))
        self.assertEqual(self.session.get.call_args[1]['params'], {'tx_ref': 'tx-9'})

    def test_network_failures_are_unknown_outcomes(self):
        self.session.get.side_effect = requests.Timeout()
        with self.assertRaises(ExternalServiceError):
            self.gateway.verify('paystack', 'ref-3')

        self.session.get.side_effect = requests.ConnectionError("refused")
        with self.assertRaises(ExternalServiceError):
            self.gateway.verify('paystack', 'ref-3')

    def test_server_error_and_malformed_body(self):
        self.session.get.return_value = json_response({}, status_code=502)
        with self.assertRaises(ExternalServiceError):
            self.gateway.verify('paystack', 'ref-4')

        broken = MagicMock(status_code=200)
        broken.json.side_effect = ValueError("not json")
        self.session.get.return_value = broken
        with self.assertRaises(ExternalServiceError):
            self.gateway.verify('paystack', 'ref-4')

        self.session.get.return_value = json_response(['unexpected'])
        with self.assertRaises(ExternalServiceError):
            self.gateway.verify('paystack', 'ref-4')

    def test_success_without_amount_is_malformed(self):
        self.session.get.return_value = json_response({'status': True, 'data': {'status': 'success'}})
        with self.assertRaises(ExternalServiceError):
            self.gateway.verify('paystack', 'ref-5')

    def test_unknown_provider(self):
        with self.assertRaises(InvalidInput):
            self.gateway.verify('stripe', 'ref-6')

    def test_paystack_signature(self):
        body, headers = paystack_webhook('ref-7')
        event = self.gateway.parse_webhook('paystack', body, headers)

        self.assertEqual(event.provider_ref, 'ref-7')
        self.assertEqual(event.status, 'successful')
        self.assertEqual(event.amount, Decimal('9.99'))

        with self.assertRaises(InvalidSignature):
            self.gateway.parse_webhook('paystack', body, {'X-Paystack-Signature': 'forged'})
        with self.assertRaises(InvalidSignature):
            self.gateway.parse_webhook('paystack', body, {})

    def test_flutterwave_signature(self):
        body = json.dumps({'data': {'tx_ref': 'tx-8', 'status': 'failed', 'amount': 5}}).encode('utf-8')

        event = self.gateway.parse_webhook('flutterwave', body, {'verif-hash': 'flw-hash'})
        self.assertEqual(event.status, 'failed')

        with self.assertRaises(InvalidSignature):
            self.gateway.parse_webhook('flutterwave', body, {'verif-hash': 'nope'})

    def test_missing_secret_rejects_everything(self):
        gateway = PaymentGateway(providers={'paystack': {'verify_url': 'x', 'secret_key': ''}},
                                 session=self.session, timeout=1)
        body, headers = paystack_webhook('ref-9', secret='')
        with self.assertRaises(InvalidSignature):
            gateway.parse_webhook('paystack', body, headers)

    def test_webhook_without_reference(self):
        body = json.dumps({'data': {'status': 'success'}}).encode('utf-8')
        signature = hmac.new(b'sk_test_paystack', body, hashlib.sha512).hexdigest()
        with self.assertRaises(InvalidInput):
            self.gateway.parse_webhook('paystack', body, {'x-paystack-signature': signature})


class PaymentServiceTestCase(TestCase):

    def setUp(self):
        self.user = User.objects.create_user(username="payer", password="pw")
        self.service = PaymentService(gateway=PaymentGateway(providers=PROVIDERS, timeout=1, session=MagicMock()))

    def verified(self, result=SUCCESS):
        return patch.object(self.service.gateway, 'verify', return_value=result)

    def past_due_subscription(self):
        subscription = subscription_service.create_subscription(self.user.id, 'premium', 'monthly')
        return subscription_service.mark_past_due(subscription.id)


class CreatePaymentTests(PaymentServiceTestCase):

    def test_successful_payment_activates_subscription(self):
        subscription = self.past_due_subscription()

        with self.verified():
            payment = self.service.create_payment(
                self.user.id, Decimal('1.00'), 'paystack', 'ref-100', subscription_id=subscription.id
            )

        self.assertEqual(payment.status, Payment.Status.SUCCESSFUL)
        # Provider values win over what the caller sent
        self.assertEqual(payment.amount, Decimal('9.99'))
        self.assertEqual(payment.currency, 'USD')
        self.assertIsNotNone(payment.paid_at)
        subscription.refresh_from_db()
        self.assertEqual(subscription.status, Subscription.Status.ACTIVE)

    def test_declined_payment_is_stored_failed(self):
        with self.verified(DECLINED), self.assertRaises(PaymentRejected):
            self.service.create_payment(self.user.id, '9.99', 'paystack', 'ref-101')

        self.assertEqual(Payment.objects.get(provider_ref='ref-101').status, Payment.Status.FAILED)

    def test_provider_outage_leaves_payment_pending(self):
        with patch.object(self.service.gateway, 'verify', side_effect=ExternalServiceError("down")):
            with self.assertRaises(ExternalServiceError):
                self.service.create_payment(self.user.id, '9.99', 'paystack', 'ref-102')

        payment = Payment.objects.get(provider_ref='ref-102')
        self.assertEqual(payment.status, Payment.Status.PENDING)

        with self.verified():
            reconciled = self.service.reconcile_pending(payment.id)
        self.assertEqual(reconciled.status, Payment.Status.SUCCESSFUL)

        with self.assertRaises(Conflict):
            self.service.reconcile_pending(payment.id)

    def test_duplicate_reference_conflicts(self):
        with self.verified():
            self.service.create_payment(self.user.id, '9.99', 'paystack', 'ref-103')
            with self.assertRaises(Conflict):
                self.service.create_payment(self.user.id, '9.99', 'paystack', 'ref-103')

        self.assertEqual(Payment.objects.filter(provider_ref='ref-103').count(), 1)

    def test_unique_reference_holds_when_precheck_misses(self):
        # A concurrent request inserted the same reference after our existence check
        Payment.objects.create(user=self.user, amount=Decimal('9.99'), provider='paystack', provider_ref='ref-106')
        real_filter = Payment.objects.filter

        def hide_reference(*args, **kwargs):
            queryset = real_filter(*args, **kwargs)
            return queryset.none() if 'provider_ref' in kwargs else queryset

        with self.verified() as verify, patch.object(Payment.objects, 'filter', side_effect=hide_reference):
            with self.assertRaises(Conflict):
                self.service.create_payment(self.user.id, '9.99', 'paystack', 'ref-106')

        verify.assert_not_called()
        self.assertEqual(Payment.objects.filter(provider_ref='ref-106').count(), 1)

    def test_activation_failure_is_inconsistent_state(self):
        subscription = subscription_service.create_subscription(self.user.id, 'premium', 'monthly')
        subscription_service.cancel_subscription(self.user.id)

        with self.verified(), self.assertRaises(InconsistentState):
            self.service.create_payment(
                self.user.id, '9.99', 'paystack', 'ref-104', subscription_id=subscription.id
            )

        self.assertEqual(Payment.objects.get(provider_ref='ref-104').status, Payment.Status.SUCCESSFUL)
        self.assertTrue(AuditLog.objects.filter(action_type='inconsistent_state').exists())

    def test_input_validation(self):
        with self.assertRaises(InvalidInput):
            self.service.create_payment(self.user.id, '0', 'paystack', 'ref-105')
        with self.assertRaises(InvalidInput):
            self.service.create_payment(self.user.id, 'ten', 'paystack', 'ref-105')
        with self.assertRaises(InvalidInput):
            self.service.create_payment(self.user.id, '5', 'stripe', 'ref-105')
        with self.assertRaises(InvalidInput):
            self.service.create_payment(self.user.id, '5', 'paystack', '  ')
        with self.assertRaises(NotFound):
            self.service.create_payment(self.user.id, '5', 'paystack', 'ref-105', subscription_id=99999)
        self.assertFalse(Payment.objects.exists())


class PaymentStatusTests(PaymentServiceTestCase):

    def setUp(self):
        super().setUp()
        self.subscription = subscription_service.create_subscription(self.user.id, 'premium', 'monthly')
        with self.verified():
            self.payment = self.service.create_payment(
                self.user.id, '9.99', 'paystack', 'ref-200', subscription_id=self.subscription.id
            )

    def test_refund_cancels_subscription_and_downgrades(self):
        refunded = self.service.process_refund(self.payment.id, reason='customer request')

        self.assertEqual(refunded.status, Payment.Status.REFUNDED)
        self.subscription.refresh_from_db()
        self.assertEqual(self.subscription.status, Subscription.Status.CANCELLED)
        self.assertEqual(Entitlement.tier_for(self.user.id), Entitlement.Tier.CLIENT)

        with self.assertRaises(Conflict):
            self.service.process_refund(self.payment.id)

    def test_status_update_via_refund(self):
        refunded = self.service.update_payment_status(self.payment.id, 'refunded')
        self.assertEqual(refunded.status, Payment.Status.REFUNDED)

    def test_same_status_is_a_no_op(self):
        before = AuditLog.objects.count()
        self.service.update_payment_status(self.payment.id, 'successful')
        self.assertEqual(AuditLog.objects.count(), before)

    def test_disallowed_transitions(self):
        with self.assertRaises(Conflict):
            self.service.update_payment_status(self.payment.id, 'pending')
        with self.assertRaises(InvalidInput):
            self.service.update_payment_status(self.payment.id, 'lost')
        with self.assertRaises(NotFound):
            self.service.update_payment_status(99999, 'failed')

    def test_pending_payment_marked_successful_activates(self):
        past_due = subscription_service.mark_past_due(self.subscription.id)
        pending = Payment.objects.create(
            user=self.user, amount=Decimal('9.99'), provider='paystack', provider_ref='ref-201',
            subscription=past_due,
        )

        self.service.update_payment_status(pending.id, 'successful')

        past_due.refresh_from_db()
        self.assertEqual(past_due.status, Subscription.Status.ACTIVE)

    def test_only_successful_payments_refund(self):
        pending = Payment.objects.create(
            user=self.user, amount=Decimal('9.99'), provider='paystack', provider_ref='ref-202',
        )
        with self.assertRaises(Conflict):
            self.service.process_refund(pending.id)


class WebhookTests(PaymentServiceTestCase):

    def setUp(self):
        super().setUp()
        self.subscription = self.past_due_subscription()
        self.payment = Payment.objects.create(
            user=self.user, amount=Decimal('9.99'), provider='paystack', provider_ref='ref-300',
            subscription=self.subscription,
        )

    def test_duplicate_webhook_activates_once(self):
        body, headers = paystack_webhook('ref-300')

        first = self.service.handle_webhook('paystack', body, headers)
        second = self.service.handle_webhook('paystack', body, headers)

        self.assertTrue(first['processed'])
        self.assertFalse(second['processed'])
        self.assertEqual(second['reason'], 'duplicate')

        self.payment.refresh_from_db()
        self.subscription.refresh_from_db()
        self.assertEqual(self.payment.status, Payment.Status.SUCCESSFUL)
        self.assertEqual(self.subscription.status, Subscription.Status.ACTIVE)
        self.assertEqual(AuditLog.objects.filter(description__endswith='past_due -> active').count(), 1)

    def test_failed_webhook(self):
        body, headers = paystack_webhook('ref-300', status='failed')
        self.service.handle_webhook('paystack', body, headers)

        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, Payment.Status.FAILED)

    def test_stale_webhook_is_ignored(self):
        success_body, success_headers = paystack_webhook('ref-300')
        self.service.handle_webhook('paystack', success_body, success_headers)

        failed_body, failed_headers = paystack_webhook('ref-300', status='failed')
        result = self.service.handle_webhook('paystack', failed_body, failed_headers)

        self.assertFalse(result['processed'])
        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, Payment.Status.SUCCESSFUL)

    def test_unknown_reference_is_ignored(self):
        body, headers = paystack_webhook('ref-unknown')
        result = self.service.handle_webhook('paystack', body, headers)
        self.assertFalse(result['processed'])
        self.assertEqual(result['reason'], 'unknown_reference')

    def test_forged_webhook(self):
        body, _ = paystack_webhook('ref-300')
        with self.assertRaises(InvalidSignature):
            self.service.handle_webhook('paystack', body, {'X-Paystack-Signature': 'forged'})

        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, Payment.Status.PENDING)


class PaymentReportingTests(PaymentServiceTestCase):

    def setUp(self):
        super().setUp()
        for ref, status, amount in (
            ('ref-400', Payment.Status.SUCCESSFUL, '10.00'),
            ('ref-401', Payment.Status.SUCCESSFUL, '5.00'),
            ('ref-402', Payment.Status.FAILED, '3.00'),
            ('ref-403', Payment.Status.PENDING, '7.00'),
        ):
            Payment.objects.create(
                user=self.user, amount=Decimal(amount), provider='paystack', provider_ref=ref, status=status
            )

    def test_statistics(self):
        stats = self.service.get_payment_statistics('month')

        self.assertEqual(stats['totalPayments'], 4)
        self.assertEqual(stats['totalRevenue'], Decimal('15.00'))
        self.assertEqual(stats['counts']['failed'], 1)
        self.assertEqual(stats['counts']['refunded'], 0)
        self.assertEqual(stats['revenueGrowth'], Decimal('100'))
        self.assertEqual(stats['byProvider'][0]['provider'], 'paystack')

    def test_user_payments(self):
        page = self.service.get_user_payments(self.user.id, page=1, limit=3)
        self.assertEqual(len(page['results']), 3)
        self.assertEqual(page['pagination']['totalPayments'], 4)

        successful = self.service.get_user_payments(self.user.id, status='successful')
        self.assertEqual(len(successful['results']), 2)

        with self.assertRaises(InvalidInput):
            self.service.get_user_payments(self.user.id, status='weird')

    def test_reconcile_all_pending(self):
        with self.verified():
            results = self.service.reconcile_all_pending()

        self.assertEqual(results['checked'], 1)
        self.assertEqual(results['successful'], 1)
        self.assertFalse(Payment.objects.filter(status=Payment.Status.PENDING).exists())

    def test_reconcile_command_reports_outage(self):
        with patch.object(payment_service.gateway, 'verify', side_effect=ExternalServiceError("down")):
            out = StringIO()
            call_command('reconcile_pending_payments', '--older-than-minutes', '0', stdout=out)

        self.assertIn('1 still pending', out.getvalue())
        self.assertTrue(Payment.objects.filter(status=Payment.Status.PENDING).exists())
