"""
Payment Service Layer

This package provides crypto checkout and webhook settlement.
"""

from app.services.payments.service import (
    checkout,
    handle_webhook,
    is_settled_status,
    SettlementResult,
    PAYMENT_STATUS_PENDING,
)

from app.services.payments.exceptions import (
    PaymentServiceError,
    InvalidCheckoutRequestError,
    GatewayError,
    MissingSignatureError,
    InvalidWebhookPayloadError,
    SignatureMismatchError,
    UnknownOrderError,
    SettlementError,
)

__all__ = [
    "checkout",
    "handle_webhook",
    "is_settled_status",
    "SettlementResult",
    "PAYMENT_STATUS_PENDING",
    "PaymentServiceError",
    "InvalidCheckoutRequestError",
    "GatewayError",
    "MissingSignatureError",
    "InvalidWebhookPayloadError",
    "SignatureMismatchError",
    "UnknownOrderError",
    "SettlementError",
]
