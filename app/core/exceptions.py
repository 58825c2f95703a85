"""
Core domain exceptions for provisioning and settlement.

Used to distinguish business failures from system failures. Every error carries a
stable `code` that is safe to return to API callers; `message` must never contain
upstream internals (URLs, response bodies, keys).
"""


class ServiceError(Exception):
    """Base exception for all service-layer failures."""

    code = "internal_error"

    def __init__(self, message: str = "", code: str = None):
        default = (self.__class__.__doc__ or self.code).strip().splitlines()[0]
        super().__init__(message or default)
        if code:
            self.code = code

    @property
    def message(self) -> str:
        return str(self)


class ValidationError(ServiceError):
    """Bad input shape or range. Rejected before any side effect."""

    code = "invalid_request"


class AuthError(ServiceError):
    """Missing or invalid caller identity."""

    code = "unauthorized"


class NotFoundError(ServiceError):
    """Unknown order, plan or subscription."""

    code = "not_found"


class UpstreamUnavailable(ServiceError):
    """Reseller or gateway could not be reached or refused the request."""

    code = "upstream_unavailable"


class ProviderError(UpstreamUnavailable):
    """Upstream answered with a non-success response."""

    code = "provider_error"


class MalformedUpstreamResponse(UpstreamUnavailable):
    """Upstream answered 2xx without the fields the operation needs."""

    code = "malformed_upstream_response"


class SignatureMismatch(ServiceError):
    """Webhook signature does not match the payload."""

    code = "invalid_sign"


class Inconsistency(ServiceError):
    """Upstream side effect succeeded but the local write did not.

    Never swallowed: the caller must record it for reconciliation.
    """

    code = "inconsistent_state"
