import hashlib
import hmac
import json
from decimal import Decimal

from django.contrib.auth.models import User
from rest_framework import status
from rest_framework.test import APITestCase
from unittest.mock import patch

from .models import ContentCreator, Payment, Subscription, Video
from .payment_gateway import VerificationResult
from .payment_service import payment_service


class ViewLedgerApiTests(APITestCase):

    def setUp(self):
        self.creator = ContentCreator.objects.create(name="Ada", email="ada@example.com")
        self.video = Video.objects.create(title="Clip", creator=self.creator, duration=600)

    def test_anonymous_view_is_recorded(self):
        response = self.client.post(
            f'/api/videos/{self.video.id}/views/',
            {'watch_duration': 305, 'total_duration': 600},
            format='json',
        )

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertTrue(response.data['success'])
        self.assertTrue(response.data['data']['qualified'])

        view_id = response.data['data']['id']
        update = self.client.post(
            f'/api/videos/{self.video.id}/views/',
            {'watch_duration': 100, 'total_duration': 1200, 'view_id': view_id},
            format='json',
        )
        self.assertEqual(update.status_code, status.HTTP_200_OK)
        self.assertFalse(update.data['data']['qualified'])

    def test_unknown_video_uses_error_envelope(self):
        response = self.client.post(
            '/api/videos/00000000-0000-0000-0000-000000000000/views/',
            {'watch_duration': 10},
            format='json',
        )
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        self.assertFalse(response.data['success'])
        self.assertEqual(response.data['error'], 'not_found')

    def test_invalid_body(self):
        response = self.client.post(
            f'/api/videos/{self.video.id}/views/', {'watch_duration': -1}, format='json'
        )
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertFalse(response.data['success'])

    def test_view_stats_and_popular(self):
        self.client.post(f'/api/videos/{self.video.id}/views/', {'watch_duration': 400}, format='json')

        stats = self.client.get(f'/api/videos/{self.video.id}/view-stats/', {'period': 'week'})
        self.assertEqual(stats.status_code, status.HTTP_200_OK)
        self.assertEqual(stats.data['data']['qualifiedViews'], 1)

        bad = self.client.get(f'/api/videos/{self.video.id}/view-stats/', {'period': 'decade'})
        self.assertEqual(bad.status_code, status.HTTP_400_BAD_REQUEST)

        popular = self.client.get('/api/videos/popular/')
        self.assertEqual(popular.data['data']['results'][0]['video']['title'], "Clip")

    def test_watch_progress_requires_login(self):
        url = f'/api/videos/{self.video.id}/watch-progress/'
        self.assertEqual(
            self.client.post(url, {'progress_seconds': 10}, format='json').status_code,
            status.HTTP_401_UNAUTHORIZED,
        )

        user = User.objects.create_user(username="watcher", password="pw")
        self.client.force_authenticate(user=user)
        response = self.client.post(url, {'progress_seconds': 570}, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertTrue(response.data['data']['completed'])

        history = self.client.get('/api/watch-history/')
        self.assertEqual(history.data['data']['pagination']['totalViews'], 0)


class AnalyticsApiTests(APITestCase):

    def setUp(self):
        self.owner = User.objects.create_user(username="ada", password="pw")
        self.stranger = User.objects.create_user(username="eve", password="pw")
        self.admin = User.objects.create_user(username="root", password="pw", is_staff=True)
        self.creator = ContentCreator.objects.create(name="Ada", email="ada@example.com", user=self.owner)

    def test_creator_sees_own_analytics_only(self):
        url = f'/api/analytics/creators/{self.creator.id}/'

        self.client.force_authenticate(user=self.owner)
        self.assertEqual(self.client.get(url).status_code, status.HTTP_200_OK)

        self.client.force_authenticate(user=self.stranger)
        self.assertEqual(self.client.get(url).status_code, status.HTTP_403_FORBIDDEN)

        self.client.force_authenticate(user=self.admin)
        self.assertEqual(self.client.get(url, {'period': 'all'}).status_code, status.HTTP_200_OK)

    def test_admin_endpoints(self):
        self.client.force_authenticate(user=self.stranger)
        self.assertEqual(self.client.get('/api/analytics/admin/').status_code, status.HTTP_403_FORBIDDEN)

        self.client.force_authenticate(user=self.admin)
        self.assertEqual(self.client.get('/api/analytics/admin/').status_code, status.HTTP_200_OK)

        report = self.client.get('/api/analytics/revenue-reports/', {'start_date': '2026-01-01'})
        self.assertEqual(report.status_code, status.HTTP_200_OK)
        self.assertEqual(report.data['data']['summary']['totalCreators'], 0)

        impossible = self.client.get('/api/analytics/revenue-reports/', {'end_date': '2024-02-30'})
        self.assertEqual(impossible.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(impossible.data['error'], 'invalid_input')


class SubscriptionApiTests(APITestCase):

    def setUp(self):
        self.user = User.objects.create_user(username="subscriber", password="pw")
        self.other = User.objects.create_user(username="other", password="pw")
        self.client.force_authenticate(user=self.user)

    def test_plans_are_public(self):
        self.client.force_authenticate(user=None)
        response = self.client.get('/api/subscriptions/plans/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(len(response.data['data']), 3)

    def test_subscribe_status_and_cancel(self):
        response = self.client.post(
            '/api/subscriptions/', {'plan_type': 'premium', 'billing_cycle': 'monthly'}, format='json'
        )
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data['data']['amount'], '9.99')

        duplicate = self.client.post('/api/subscriptions/', {'plan_type': 'basic'}, format='json')
        self.assertEqual(duplicate.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(duplicate.data['error'], 'conflict')

        current = self.client.get('/api/subscriptions/status/')
        self.assertTrue(current.data['data']['hasActiveSubscription'])
        self.assertEqual(current.data['data']['entitlement'], 'premium')

        feature = self.client.get('/api/subscriptions/features/download/')
        self.assertTrue(feature.data['data']['hasAccess'])

        cancelled = self.client.post('/api/subscriptions/cancel/', {}, format='json')
        self.assertEqual(cancelled.data['data']['status'], 'cancelled')

    def test_cannot_act_for_another_user(self):
        response = self.client.post(
            '/api/subscriptions/', {'plan_type': 'basic', 'user_id': self.other.id}, format='json'
        )
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
        self.assertFalse(Subscription.objects.exists())

    def test_admin_may_act_for_another_user(self):
        admin = User.objects.create_user(username="root", password="pw", is_staff=True)
        self.client.force_authenticate(user=admin)
        response = self.client.post(
            '/api/subscriptions/', {'plan_type': 'basic', 'user_id': self.other.id}, format='json'
        )
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(Subscription.objects.get().user, self.other)

    def test_sweep_is_admin_only(self):
        self.assertEqual(
            self.client.post('/api/admin/subscriptions/sweep-expired/').status_code,
            status.HTTP_403_FORBIDDEN,
        )


class PaymentApiTests(APITestCase):

    def setUp(self):
        self.user = User.objects.create_user(username="payer", password="pw")
        self.admin = User.objects.create_user(username="root", password="pw", is_staff=True)

    def test_create_payment(self):
        self.client.force_authenticate(user=self.user)
        result = VerificationResult(success=True, amount=Decimal('4.99'), currency='NGN', status='success')

        with patch.object(payment_service.gateway, 'verify', return_value=result):
            response = self.client.post(
                '/api/payments/',
                {'amount': '4.99', 'provider': 'paystack', 'provider_ref': 'api-ref-1'},
                format='json',
            )
            duplicate = self.client.post(
                '/api/payments/',
                {'amount': '4.99', 'provider': 'paystack', 'provider_ref': 'api-ref-1'},
                format='json',
            )

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data['data']['status'], 'successful')
        self.assertEqual(duplicate.status_code, status.HTTP_409_CONFLICT)

        mine = self.client.get('/api/payments/mine/')
        self.assertEqual(mine.data['data']['pagination']['totalPayments'], 1)

    def test_declined_payment_is_402(self):
        self.client.force_authenticate(user=self.user)
        result = VerificationResult(success=False, amount=Decimal('4.99'), status='failed')

        with patch.object(payment_service.gateway, 'verify', return_value=result):
            response = self.client.post(
                '/api/payments/',
                {'amount': '4.99', 'provider': 'paystack', 'provider_ref': 'api-ref-2'},
                format='json',
            )
        self.assertEqual(response.status_code, status.HTTP_402_PAYMENT_REQUIRED)
        self.assertEqual(response.data['error'], 'payment_rejected')

    def test_admin_refund_and_statistics(self):
        payment = Payment.objects.create(
            user=self.user, amount=Decimal('9.99'), provider='paystack', provider_ref='api-ref-3',
            status=Payment.Status.SUCCESSFUL,
        )

        self.client.force_authenticate(user=self.user)
        self.assertEqual(
            self.client.post(f'/api/admin/payments/{payment.id}/refund/').status_code,
            status.HTTP_403_FORBIDDEN,
        )

        self.client.force_authenticate(user=self.admin)
        refund = self.client.post(f'/api/admin/payments/{payment.id}/refund/', {'reason': 'dispute'}, format='json')
        self.assertEqual(refund.data['data']['status'], 'refunded')

        again = self.client.post(f'/api/admin/payments/{payment.id}/status/', {'status': 'successful'}, format='json')
        self.assertEqual(again.status_code, status.HTTP_409_CONFLICT)

        stats = self.client.get('/api/admin/payments/statistics/', {'period': 'week'})
        self.assertEqual(stats.data['data']['counts']['refunded'], 1)

    def test_webhook(self):
        Payment.objects.create(
            user=self.user, amount=Decimal('9.99'), provider='paystack', provider_ref='api-ref-4',
        )
        body = json.dumps({'data': {'reference': 'api-ref-4', 'status': 'success', 'amount': 999}}).encode('utf-8')
        providers = {'paystack': {'verify_url': 'x', 'secret_key': 'whsec'}}
        signature = hmac.new(b'whsec', body, hashlib.sha512).hexdigest()

        with patch.object(payment_service.gateway, 'providers', providers):
            forged = self.client.post(
                '/api/payments/webhook/paystack/', body, content_type='application/json',
                HTTP_X_PAYSTACK_SIGNATURE='forged',
            )
            signed = self.client.post(
                '/api/payments/webhook/paystack/', body, content_type='application/json',
                HTTP_X_PAYSTACK_SIGNATURE=signature,
            )

        self.assertEqual(forged.status_code, status.HTTP_401_UNAUTHORIZED)
        self.assertEqual(signed.status_code, status.HTTP_200_OK)
        self.assertTrue(signed.data['data']['processed'])
        self.assertEqual(Payment.objects.get(provider_ref='api-ref-4').status, 'successful')


class AuditLogApiTests(APITestCase):

    def setUp(self):
        self.user = User.objects.create_user(username="audited", password="pw")
        self.other = User.objects.create_user(username="other", password="pw")
        self.client.force_authenticate(user=self.user)

    def test_own_entries_with_integrity_flag(self):
        self.client.post('/api/subscriptions/', {'plan_type': 'basic'}, format='json')

        response = self.client.get('/api/audit-log/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        entries = response.data['data']
        self.assertEqual(len(entries), 1)
        self.assertEqual(entries[0]['action_type'], 'subscription_transition')
        self.assertTrue(entries[0]['integrity_verified'])

    def test_other_users_entries_are_forbidden(self):
        response = self.client.get('/api/audit-log/', {'user_id': self.other.id})
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
