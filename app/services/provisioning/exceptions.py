"""
Provisioning Service Domain Exceptions

All exceptions raised by the provisioning service layer. Messages are safe to
show to API callers; operator context is logged, never attached here.
"""
from typing import Optional

from app.core.exceptions import Inconsistency, NotFoundError, ServiceError, UpstreamUnavailable, ValidationError


class ProvisioningServiceError(ServiceError):
    """Base exception for provisioning service errors"""
    pass


class InvalidPurchaseRequestError(ProvisioningServiceError, ValidationError):
    """Raised when traffic or service type is invalid"""

    code = "invalid_request"


class PurchaseInProgressError(ProvisioningServiceError):
    """Raised when another purchase for the same user and service type is running"""

    code = "purchase_in_progress"


class ProvisioningUpstreamError(ProvisioningServiceError, UpstreamUnavailable):
    """Could not complete purchase"""

    code = "purchase_failed"


class ProvisioningInconsistencyError(ProvisioningServiceError, Inconsistency):
    """Purchase was applied upstream but could not be saved; queued for reconciliation"""

    code = "purchase_inconsistent"

    def __init__(self, message: str = "", incident_id: Optional[int] = None):
        super().__init__(message)
        self.incident_id = incident_id


class PlanNotFoundError(ProvisioningServiceError, NotFoundError):
    """Plan not found"""

    code = "plan_not_found"


class SubscriptionConflictError(ProvisioningServiceError):
    """Raised when a subscription row appeared for a pair that was just provisioned"""

    code = "subscription_conflict"
