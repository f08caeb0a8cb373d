"""
Typed errors raised by the ledger services.

Each error is a DRF ``APIException`` so views can let them propagate and the
framework renders them with the right status code.
"""

import logging

from rest_framework import status
from rest_framework.exceptions import APIException
from rest_framework.views import exception_handler

logger = logging.getLogger(__name__)


class LedgerError(APIException):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_detail = 'Ledger operation failed.'
    default_code = 'ledger_error'


class NotFound(LedgerError):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = 'Resource not found.'
    default_code = 'not_found'


class Forbidden(LedgerError):
    status_code = status.HTTP_403_FORBIDDEN
    default_detail = 'Not allowed for this user.'
    default_code = 'forbidden'


class Conflict(LedgerError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = 'Request conflicts with the current state.'
    default_code = 'conflict'


class InvalidInput(LedgerError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = 'Invalid input.'
    default_code = 'invalid_input'


class PaymentRejected(LedgerError):
    status_code = status.HTTP_402_PAYMENT_REQUIRED
    default_detail = 'Payment was rejected by the provider.'
    default_code = 'payment_rejected'


class InvalidSignature(LedgerError):
    status_code = status.HTTP_401_UNAUTHORIZED
    default_detail = 'Invalid webhook signature.'
    default_code = 'invalid_signature'


class ExternalServiceError(LedgerError):
    """The payment provider could not be reached; the outcome is unknown."""
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_detail = 'Payment provider unavailable.'
    default_code = 'external_service_error'


class InconsistentState(LedgerError):
    """A successful payment could not activate its subscription."""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_detail = 'Payment recorded but subscription activation failed.'
    default_code = 'inconsistent_state'


def ledger_exception_handler(exc, context):
    response = exception_handler(exc, context)
    if response is None:
        return None

    if isinstance(exc, LedgerError):
        if response.status_code >= 500:
            logger.error(f"{exc.default_code}: {exc.detail}")
        response.data = {
            'success': False,
            'error': exc.default_code,
            'message': str(exc.detail),
        }
    elif isinstance(response.data, dict) and 'detail' in response.data:
        response.data = {
            'success': False,
            'error': getattr(exc, 'default_code', 'error'),
            'message': str(response.data['detail']),
        }
    else:
        response.data = {
            'success': False,
            'error': 'invalid_input',
            'message': response.data,
        }
    return response
