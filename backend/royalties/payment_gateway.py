"""
Payment provider client: transaction verification and webhook authentication.

Supported providers are Paystack and Flutterwave. Network failures, timeouts
and malformed responses raise ``ExternalServiceError`` (outcome unknown); a
provider answering that the transaction did not succeed is a normal
``VerificationResult`` with ``success=False``.
"""

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Dict, Mapping, Optional
from urllib.parse import quote

import requests
from django.conf import settings
from django.utils.dateparse import parse_datetime

from .exceptions import ExternalServiceError, InvalidInput, InvalidSignature

logger = logging.getLogger(__name__)

PAYSTACK = 'paystack'
FLUTTERWAVE = 'flutterwave'

PAYSTACK_SIGNATURE_HEADER = 'x-paystack-signature'
FLUTTERWAVE_SIGNATURE_HEADER = 'verif-hash'

# Provider status strings mapped onto payment statuses
WEBHOOK_STATUSES = {
    PAYSTACK: {'success': 'successful', 'failed': 'failed', 'abandoned': 'failed', 'reversed': 'failed'},
    FLUTTERWAVE: {'successful': 'successful', 'failed': 'failed', 'cancelled': 'failed'},
}


@dataclass(frozen=True)
class VerificationResult:
    success: bool
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    status: str = ''
    paid_at: Optional[datetime] = None
    message: str = ''


@dataclass(frozen=True)
class WebhookEvent:
    provider: str
    provider_ref: str
    status: str
    amount: Optional[Decimal] = None
    currency: Optional[str] = None


def _to_decimal(value, scale: int = 1) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return Decimal(str(value)) / scale
    except (InvalidOperation, ValueError):
        return None


def _header(headers: Mapping, name: str) -> str:
    for key, value in headers.items():
        if key.lower() == name:
            return value or ''
    return ''


class PaymentGateway:
    """Thin requests-based client for provider verification endpoints"""

    def __init__(self, providers: Optional[Dict] = None, timeout: Optional[float] = None,
                 session: Optional[requests.Session] = None):
        self.providers = providers if providers is not None else settings.PAYMENT_PROVIDERS
        self.timeout = timeout if timeout is not None else settings.PAYMENT_VERIFICATION_TIMEOUT
        self.session = session or requests.Session()

    def _config(self, provider: str) -> Dict:
        if provider not in self.providers:
            raise InvalidInput(f"Unsupported payment provider '{provider}'")
        return self.providers[provider]

    def verify(self, provider: str, provider_ref: str) -> VerificationResult:
        config = self._config(provider)
        headers = {
            'Authorization': f"Bearer {config.get('secret_key', '')}",
            'Content-Type': 'application/json',
        }

        if provider == PAYSTACK:
            url = f"{config['verify_url']}{quote(str(provider_ref), safe='')}"
            params = None
        else:
            url = config['verify_url']
            params = {'tx_ref': provider_ref}

        try:
            logger.info(f"Verifying {provider} transaction {provider_ref}")
            response = self.session.get(url, headers=headers, params=params, timeout=self.timeout)
        except requests.Timeout:
            raise ExternalServiceError(f"{provider} verification timed out")
        except requests.RequestException as e:
            raise ExternalServiceError(f"{provider} verification failed: {e}")

        if response.status_code >= 500:
            raise ExternalServiceError(f"{provider} returned HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError:
            raise ExternalServiceError(f"{provider} returned a malformed response")
        if not isinstance(data, dict):
            raise ExternalServiceError(f"{provider} returned a malformed response")

        payload = data.get('data') or {}
        if not isinstance(payload, dict):
            raise ExternalServiceError(f"{provider} returned a malformed response")

        if provider == PAYSTACK:
            result = self._paystack_result(data, payload)
        else:
            result = self._flutterwave_result(data, payload)

        if result.success and result.amount is None:
            raise ExternalServiceError(f"{provider} reported success without a usable amount")

        logger.info(f"{provider} verification for {provider_ref}: success={result.success} status={result.status}")
        return result

    def _paystack_result(self, data: Dict, payload: Dict) -> VerificationResult:
        status = payload.get('status') or ''
        return VerificationResult(
            success=data.get('status') is True and status == 'success',
            amount=_to_decimal(payload.get('amount'), 100),
            currency=payload.get('currency'),
            status=status,
            paid_at=parse_datetime(payload['paid_at']) if payload.get('paid_at') else None,
            message=data.get('message', ''),
        )

    def _flutterwave_result(self, data: Dict, payload: Dict) -> VerificationResult:
        status = payload.get('status') or ''
        return VerificationResult(
            success=data.get('status') == 'success' and status == 'successful',
            amount=_to_decimal(payload.get('amount')),
            currency=payload.get('currency'),
            status=status,
            paid_at=parse_datetime(payload['created_at']) if payload.get('created_at') else None,
            message=data.get('message', ''),
        )

    def verify_signature(self, provider: str, raw_body: bytes, headers: Mapping) -> None:
        config = self._config(provider)

        if provider == PAYSTACK:
            secret = config.get('secret_key') or ''
            provided = _header(headers, PAYSTACK_SIGNATURE_HEADER)
            expected = hmac.new(secret.encode('utf-8'), raw_body, hashlib.sha512).hexdigest() if secret else ''
        else:
            expected = config.get('webhook_hash') or ''
            provided = _header(headers, FLUTTERWAVE_SIGNATURE_HEADER)

        if not expected or not provided or not hmac.compare_digest(expected, provided):
            logger.warning(f"Rejected {provider} webhook with an invalid signature")
            raise InvalidSignature()

    def parse_webhook(self, provider: str, raw_body: bytes, headers: Mapping) -> WebhookEvent:
        """Authenticate a webhook delivery and normalize it to a WebhookEvent."""
        self.verify_signature(provider, raw_body, headers)

        try:
            body = json.loads(raw_body)
        except (ValueError, TypeError):
            raise InvalidInput("Webhook body is not valid JSON")

        data = body.get('data') if isinstance(body, dict) else None
        if not isinstance(data, dict):
            raise InvalidInput("Webhook body has no data object")

        if provider == PAYSTACK:
            provider_ref = data.get('reference')
            amount = _to_decimal(data.get('amount'), 100)
        else:
            provider_ref = data.get('tx_ref')
            amount = _to_decimal(data.get('amount'))

        if not provider_ref:
            raise InvalidInput("Webhook has no transaction reference")

        raw_status = str(data.get('status') or '').lower()
        return WebhookEvent(
            provider=provider,
            provider_ref=str(provider_ref),
            status=WEBHOOK_STATUSES[provider].get(raw_status, 'pending'),
            amount=amount,
            currency=data.get('currency'),
        )
