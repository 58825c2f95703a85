"""
Provisioning Service Layer

This package provides business logic for buying proxy traffic: create, extend or
replace the upstream plan and reconcile it into the subscription row.
"""

from app.services.provisioning.service import (
    SubscriptionProvisioner,
    PurchaseResult,
    get_bandwidth,
    gb_to_mb,
    MB_PER_GB,
    SERVICE_RESIDENTIAL,
    SERVICE_ISP,
)

from app.services.provisioning.exceptions import (
    ProvisioningServiceError,
    InvalidPurchaseRequestError,
    PurchaseInProgressError,
    ProvisioningUpstreamError,
    ProvisioningInconsistencyError,
    PlanNotFoundError,
    SubscriptionConflictError,
)

__all__ = [
    "SubscriptionProvisioner",
    "PurchaseResult",
    "get_bandwidth",
    "gb_to_mb",
    "MB_PER_GB",
    "SERVICE_RESIDENTIAL",
    "SERVICE_ISP",
    "ProvisioningServiceError",
    "InvalidPurchaseRequestError",
    "PurchaseInProgressError",
    "ProvisioningUpstreamError",
    "ProvisioningInconsistencyError",
    "PlanNotFoundError",
    "SubscriptionConflictError",
]
