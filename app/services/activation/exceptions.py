"""
Activation Service Domain Exceptions

All exceptions raised by the activation service layer.
"""

from app.core.exceptions import (
    MalformedUpstreamResponse,
    NotFoundError,
    ServiceError,
    UpstreamUnavailable,
    ValidationError,
)


class ActivationServiceError(ServiceError):
    """Base exception for activation service errors"""
    pass


class InvalidActivationRequestError(ActivationServiceError, ValidationError):
    """Raised when provider, service type or region is invalid"""

    code = "invalid_request"


class UnknownProviderError(ActivationServiceError, ValidationError):
    """Raised when no endpoint table exists for the provider"""

    code = "unknown_provider"


class SubscriptionNotFoundError(ActivationServiceError, NotFoundError):
    """No subscription for this service type"""

    code = "subscription_not_found"


class ActivationUpstreamError(ActivationServiceError, UpstreamUnavailable):
    """Could not read proxy credentials"""

    code = "activation_failed"


__all__ = [
    "ActivationServiceError",
    "InvalidActivationRequestError",
    "UnknownProviderError",
    "SubscriptionNotFoundError",
    "ActivationUpstreamError",
    "MalformedUpstreamResponse",
]
