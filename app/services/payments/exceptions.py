"""
Payment Service Domain Exceptions

All exceptions raised by the payment service layer.

Webhook rejections are split into final ones (the gateway should stop
re-delivering) and everything else (answered with an error so it retries).
"""

from app.core.exceptions import (
    NotFoundError,
    ServiceError,
    SignatureMismatch,
    UpstreamUnavailable,
    ValidationError,
)


class PaymentServiceError(ServiceError):
    """Base exception for payment service errors"""

    # Final rejections are answered with a 4xx the gateway should not retry forever
    final = False


class InvalidCheckoutRequestError(PaymentServiceError, ValidationError):
    """Raised when checkout amount or currency is invalid"""

    code = "invalid_request"


class GatewayError(PaymentServiceError, UpstreamUnavailable):
    """Could not create payment"""

    code = "gateway_error"


class MissingSignatureError(PaymentServiceError, ValidationError):
    """Invalid payload: Missing sign"""

    code = "missing_sign"


class InvalidWebhookPayloadError(PaymentServiceError, ValidationError):
    """Invalid payload"""

    code = "invalid_payload"


class SignatureMismatchError(PaymentServiceError, SignatureMismatch):
    """Invalid sign"""

    code = "invalid_sign"
    final = True


class UnknownOrderError(PaymentServiceError, NotFoundError):
    """Payment not found"""

    code = "payment_not_found"
    final = True


class SettlementError(PaymentServiceError):
    """Raised when settlement could not be applied; the gateway must retry"""

    code = "settlement_failed"
