"""
Activation Service Layer

This package turns an active plan into proxy access details.
"""

from app.services.activation.service import (
    ProxyActivator,
    ProxyActivationFormatter,
    ProxyAccessDescriptor,
    ProxyEndpoint,
    load_endpoint_table,
)

from app.services.activation.exceptions import (
    ActivationServiceError,
    InvalidActivationRequestError,
    UnknownProviderError,
    SubscriptionNotFoundError,
    ActivationUpstreamError,
    MalformedUpstreamResponse,
)

__all__ = [
    "ProxyActivator",
    "ProxyActivationFormatter",
    "ProxyAccessDescriptor",
    "ProxyEndpoint",
    "load_endpoint_table",
    "ActivationServiceError",
    "InvalidActivationRequestError",
    "UnknownProviderError",
    "SubscriptionNotFoundError",
    "ActivationUpstreamError",
    "MalformedUpstreamResponse",
]
