"""
Security utilities for trust boundaries and input validation.

This module provides:
- Input validation (type, range, format) for API request bodies
- Secret masking for logs

Validators return (is_valid, error_message) and never raise; the API layer
converts a failed validation into a ValidationError.
"""

import logging
import math
import re
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Tuple

logger = logging.getLogger(__name__)

# ====================================================================================
# INPUT TRUST BOUNDARIES
# ====================================================================================

SUPPORTED_SERVICE_TYPES = ("residential", "isp")

MAX_TRAFFIC_GB = 10_000
MAX_CHECKOUT_AMOUNT = Decimal("100000")
MAX_REGION_LENGTH = 64
MAX_PLAN_ID_LENGTH = 128

CURRENCY_PATTERN = re.compile(r"^[A-Z]{3,5}$")
PLAN_ID_PATTERN = re.compile(r"^[A-Za-z0-9_\-]+$")
REGION_PATTERN = re.compile(r"^[A-Za-z0-9_\-]+$")
PROVIDER_PATTERN = re.compile(r"^[a-z0-9_\-]{1,32}$")


def validate_traffic_gb(traffic: Any) -> Tuple[bool, Optional[str]]:
    """
    Validate requested traffic in GB.

    Only whole gigabytes are sold: the reseller's bandwidth endpoints take integer
    GB. Booleans are rejected even though they are ints in Python.
    """
    if isinstance(traffic, bool) or not isinstance(traffic, (int, float)):
        return False, "traffic must be a number"
    if isinstance(traffic, float) and (not math.isfinite(traffic) or not traffic.is_integer()):
        return False, "traffic must be a whole number of GB"
    if traffic <= 0:
        return False, "traffic must be greater than 0"
    if traffic > MAX_TRAFFIC_GB:
        return False, f"traffic must not exceed {MAX_TRAFFIC_GB} GB"
    return True, None


def validate_service_type(service_type: Any) -> Tuple[bool, Optional[str]]:
    """Validate service type against the supported kinds."""
    if service_type not in SUPPORTED_SERVICE_TYPES:
        return False, f"serviceType must be one of: {', '.join(SUPPORTED_SERVICE_TYPES)}"
    return True, None


def validate_plan_id(plan_id: Any) -> Tuple[bool, Optional[str]]:
    """Validate an upstream plan identifier before it is placed in a URL path."""
    if not isinstance(plan_id, str) or not plan_id:
        return False, "planId is required"
    if len(plan_id) > MAX_PLAN_ID_LENGTH or not PLAN_ID_PATTERN.match(plan_id):
        return False, "planId has invalid format"
    return True, None


def validate_region(region: Any) -> Tuple[bool, Optional[str]]:
    """Region is optional; when present it must be a short slug."""
    if region is None:
        return True, None
    if not isinstance(region, str) or len(region) > MAX_REGION_LENGTH or not REGION_PATTERN.match(region):
        return False, "region has invalid format"
    return True, None


def validate_provider(provider: Any) -> Tuple[bool, Optional[str]]:
    if not isinstance(provider, str) or not PROVIDER_PATTERN.match(provider):
        return False, "provider has invalid format"
    return True, None


def parse_amount(amount: Any) -> Tuple[Optional[Decimal], Optional[str]]:
    """
    Parse a checkout amount into Decimal.

    Accepts int, float or numeric string. Returns (amount, None) or (None, error).
    """
    if isinstance(amount, bool) or amount is None:
        return None, "amount must be a number"
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        return None, "amount must be a number"
    if not value.is_finite() or value <= 0:
        return None, "amount must be greater than 0"
    if value > MAX_CHECKOUT_AMOUNT:
        return None, f"amount must not exceed {MAX_CHECKOUT_AMOUNT}"
    return value, None


def validate_currency(currency: Any) -> Tuple[bool, Optional[str]]:
    if not isinstance(currency, str) or not CURRENCY_PATTERN.match(currency):
        return False, "currency must be an upper-case currency code"
    return True, None


# ====================================================================================
# SECRET MASKING
# ====================================================================================

def mask_secret(value: Optional[str], visible: int = 4) -> str:
    """
    Mask a secret for logging: keep the last `visible` characters.

    Example:
        mask_secret("abcdef123456") -> "********3456"
    """
    if not value:
        return "<empty>"
    if len(value) <= visible:
        return "*" * len(value)
    return "*" * (len(value) - visible) + value[-visible:]
