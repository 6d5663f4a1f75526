import logging

from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import OperationalError
from django.db.models import ProtectedError
from rest_framework import status
from rest_framework import exceptions as drf_exceptions
from rest_framework.response import Response
from rest_framework.views import exception_handler

logger = logging.getLogger(__name__)


class LedgerError(Exception):
    """Base class for fee, payment, receipt and invoice failures"""
    status_code = status.HTTP_400_BAD_REQUEST
    retryable = False

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(LedgerError):
    pass


class NotFound(LedgerError):
    status_code = status.HTTP_404_NOT_FOUND


class DuplicateFeeError(LedgerError):
    pass


class ConflictError(LedgerError):
    pass


class OverpaymentError(LedgerError):
    pass


class PaymentExceedsBalanceError(OverpaymentError):
    pass


class TransientError(LedgerError):
    """Database timeout, lock wait or lost connection. Safe to retry."""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    retryable = True


def _first_message(detail):
    if isinstance(detail, dict):
        for key, value in detail.items():
            message = _first_message(value)
            if key in ('detail', 'non_field_errors'):
                return message
            return f"{key}: {message}"
        return 'Invalid input'
    if isinstance(detail, (list, tuple)):
        return _first_message(detail[0]) if detail else 'Invalid input'
    return str(detail)


def ledger_exception_handler(exc, context):
    """Render every API failure as {"error": message}"""
    if isinstance(exc, OperationalError):
        logger.warning(f"⚠️ Database unavailable: {exc}")
        exc = TransientError("The database is temporarily unavailable. Please retry.")

    if isinstance(exc, LedgerError):
        body = {'error': exc.message}
        if exc.retryable:
            body['retryable'] = True
        return Response(body, status=exc.status_code)

    if isinstance(exc, ProtectedError):
        return Response({'error': 'Record is in use and cannot be deleted'}, status=status.HTTP_400_BAD_REQUEST)

    if isinstance(exc, DjangoValidationError):
        exc = drf_exceptions.ValidationError(
            exc.message_dict if hasattr(exc, 'error_dict') else exc.messages
        )

    response = exception_handler(exc, context)
    if response is not None:
        if isinstance(exc, drf_exceptions.ValidationError):
            response.data = {'error': _first_message(response.data), 'fields': response.data}
        else:
            response.data = {'error': _first_message(response.data)}
        return response

    view = context.get('view')
    logger.error(f"💥 Unhandled error in {view.__class__.__name__ if view else 'view'}: {exc}", exc_info=exc)
    return Response({'error': 'Internal server error'}, status=status.HTTP_500_INTERNAL_SERVER_ERROR)
