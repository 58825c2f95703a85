"""
Provisioning Service Layer

Decides whether a "buy traffic" request creates, extends or replaces the user's
upstream proxy plan, and reconciles the result into service_users.

Sequencing rules:
- Every purchase for one (user_id, service_type) runs under provisioning_lock,
  so two requests can never both see "no subscription" and both create a plan.
- Upstream calls are never made inside a DB transaction.
- All local writes happen after the upstream call that produces their data.
  An upstream failure therefore leaves no local trace.
- Once an upstream side effect succeeded, a failing local write is retried once
  and then recorded in provisioning_incidents (ProvisioningInconsistencyError).

Retry policy:
- Read-only calls (plan info, bandwidth): one retry on any NetworkError.
- Side-effecting calls (create, extend): one retry only if the request was never
  sent (connect failure). A read timeout is not retried: the provider may
  already have applied it.
- Validation/business errors: never retried.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional

import config
import database
import lightning_api
from app.core.exceptions import UpstreamUnavailable
from app.core.redis_lock import LockAcquireTimeout, provisioning_lock
from app.core.structured_logger import elapsed_ms, log_event
from app.utils.retry import TRANSIENT_EXCEPTIONS, retry_async
from app.utils.security import validate_service_type, validate_traffic_gb
from geolocation import GeoLocationProvider
from app.services.provisioning.exceptions import (
    InvalidPurchaseRequestError,
    PlanNotFoundError,
    ProvisioningInconsistencyError,
    ProvisioningUpstreamError,
    PurchaseInProgressError,
    SubscriptionConflictError,
)

logger = logging.getLogger(__name__)

SERVICE_RESIDENTIAL = "residential"
SERVICE_ISP = "isp"

# Billing unit: decimal megabytes, not MiB
MB_PER_GB = 1000

ACTION_CREATED = "created"
ACTION_EXTENDED = "extended"
ACTION_REPLACED = "replaced"


# ====================================================================================
# Result Types
# ====================================================================================

@dataclass
class PurchaseResult:
    """Result of a successful purchase"""
    plan_id: str
    action: str  # "created", "extended" or "replaced"
    traffic_mb: int
    current_period_end: Optional[datetime]


def gb_to_mb(traffic_gb: int) -> int:
    return int(traffic_gb) * MB_PER_GB


def _not_sent(exc: BaseException) -> bool:
    return isinstance(exc, lightning_api.NetworkError) and not exc.request_sent


# ====================================================================================
# Provisioner
# ====================================================================================

class SubscriptionProvisioner:
    """
    Orchestrates lightning_api and the subscription repository for purchases.

    Args:
        geolocation: resolves IP/region for ISP plans
        provider_id: provider key stored on new subscriptions
        retry_base_delay: backoff base for the single retry (seconds)
    """

    def __init__(
        self,
        geolocation: GeoLocationProvider,
        provider_id: Optional[str] = None,
        retry_base_delay: float = 0.5,
    ):
        self.geolocation = geolocation
        self.provider_id = provider_id or config.DEFAULT_PROVIDER
        self.retry_base_delay = retry_base_delay

    async def purchase(
        self,
        user_id: int,
        traffic_gb: int,
        service_type: str,
        client_ip: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> PurchaseResult:
        """
        Buy `traffic_gb` of `service_type` proxy traffic for `user_id`.

        Returns:
            PurchaseResult with the active plan_id

        Raises:
            InvalidPurchaseRequestError: bad traffic or service type (no side effects)
            PurchaseInProgressError: another purchase for the pair holds the lock
            ProvisioningUpstreamError: provider unreachable or refused (no local write)
            ProvisioningInconsistencyError: provider applied the purchase, local write failed
        """
        for is_valid, error in (validate_traffic_gb(traffic_gb), validate_service_type(service_type)):
            if not is_valid:
                raise InvalidPurchaseRequestError(error)
        traffic_gb = int(traffic_gb)

        log_event(
            logger, component="provisioning", operation="purchase", outcome="started",
            correlation_id=correlation_id, user_id=user_id, service_type=service_type,
            message=f"Buying proxy: traffic={traffic_gb}GB user={user_id} service_type={service_type}",
        )

        with elapsed_ms() as elapsed:
            try:
                async with provisioning_lock(user_id, service_type):
                    subscription = await database.get_subscription(user_id, service_type)
                    if subscription is None:
                        result = await self._create(user_id, traffic_gb, service_type, client_ip, correlation_id)
                    elif service_type == SERVICE_RESIDENTIAL:
                        result = await self._extend(subscription, traffic_gb, correlation_id)
                    else:
                        result = await self._replace_isp(subscription, traffic_gb, client_ip, correlation_id)
            except LockAcquireTimeout as e:
                log_event(
                    logger, component="provisioning", operation="purchase", outcome="rejected",
                    reason="lock_timeout", correlation_id=correlation_id, level="warning",
                    user_id=user_id, service_type=service_type, duration_ms=elapsed(),
                )
                raise PurchaseInProgressError("A purchase for this service is already in progress") from e

            log_event(
                logger, component="provisioning", operation="purchase", outcome="success",
                reason=result.action, correlation_id=correlation_id, duration_ms=elapsed(),
                user_id=user_id, service_type=service_type, plan_id=result.plan_id,
            )
        return result

    # --------------------------------------------------------------------------------
    # Paths
    # --------------------------------------------------------------------------------

    async def _create(
        self,
        user_id: int,
        traffic_gb: int,
        service_type: str,
        client_ip: Optional[str],
        correlation_id: Optional[str],
    ) -> PurchaseResult:
        region = ip_number = None
        if service_type == SERVICE_RESIDENTIAL:
            created = await self._upstream_side_effect(
                "create_residential_plan", lambda: lightning_api.create_residential_plan(traffic_gb), correlation_id
            )
        else:
            location = await self._locate(client_ip, correlation_id)
            region, ip_number = location.region, location.ip
            created = await self._upstream_side_effect(
                "create_isp_plan", lambda: lightning_api.create_isp_plan(location.ip, location.region), correlation_id
            )

        plan_id = created.plan_id
        period_end = await self._read_period_end(plan_id, correlation_id)
        traffic_mb = gb_to_mb(traffic_gb)

        async def write():
            row = await database.create_subscription(
                user_id=user_id,
                service_type=service_type,
                provider_id=self.provider_id,
                plan_id=plan_id,
                traffic_mb=traffic_mb,
                current_period_end=period_end,
                region=region,
                ip_number=ip_number,
            )
            if row is None:
                raise SubscriptionConflictError(
                    f"Subscription already exists for user={user_id} service_type={service_type}"
                )
            return row

        row = await self._persist(
            ACTION_CREATED, write, user_id, service_type, plan_id, traffic_mb, period_end, correlation_id
        )
        return PurchaseResult(
            plan_id=plan_id,
            action=ACTION_CREATED,
            traffic_mb=row["traffic_mb"],
            current_period_end=row.get("current_period_end"),
        )

    async def _extend(
        self,
        subscription: Dict[str, Any],
        traffic_gb: int,
        correlation_id: Optional[str],
    ) -> PurchaseResult:
        plan_id = subscription["plan_id"]
        await self._upstream_side_effect(
            "extend_plan", lambda: lightning_api.extend_plan(plan_id, traffic_gb), correlation_id
        )
        period_end = await self._read_period_end(plan_id, correlation_id)
        traffic_mb = gb_to_mb(traffic_gb)

        row = await self._persist(
            ACTION_EXTENDED,
            lambda: database.add_subscription_traffic(subscription["id"], traffic_mb, period_end),
            subscription["user_id"], subscription["service_type"], plan_id, traffic_mb, period_end, correlation_id,
        )
        return PurchaseResult(
            plan_id=plan_id,
            action=ACTION_EXTENDED,
            traffic_mb=row["traffic_mb"],
            current_period_end=row.get("current_period_end"),
        )

    async def _replace_isp(
        self,
        subscription: Dict[str, Any],
        traffic_gb: int,
        client_ip: Optional[str],
        correlation_id: Optional[str],
    ) -> PurchaseResult:
        # ISP plans are bound to an egress IP; the provider has no in-place extension.
        # A new plan replaces the row's plan_id, traffic keeps accumulating.
        location = await self._locate(client_ip, correlation_id)
        created = await self._upstream_side_effect(
            "create_isp_plan", lambda: lightning_api.create_isp_plan(location.ip, location.region), correlation_id
        )
        plan_id = created.plan_id
        period_end = await self._read_period_end(plan_id, correlation_id)
        traffic_mb = gb_to_mb(traffic_gb)

        row = await self._persist(
            ACTION_REPLACED,
            lambda: database.replace_subscription_plan(
                subscription["id"], plan_id, traffic_mb, period_end,
                region=location.region, ip_number=location.ip,
            ),
            subscription["user_id"], subscription["service_type"], plan_id, traffic_mb, period_end, correlation_id,
        )
        logger.warning(
            f"ISP_PLAN_REPLACED [user_id={subscription['user_id']}, previous_plan_id={subscription['plan_id']}, "
            f"new_plan_id={plan_id}]"
        )
        return PurchaseResult(
            plan_id=plan_id,
            action=ACTION_REPLACED,
            traffic_mb=row["traffic_mb"],
            current_period_end=row.get("current_period_end"),
        )

    # --------------------------------------------------------------------------------
    # Upstream helpers
    # --------------------------------------------------------------------------------

    async def _locate(self, client_ip: Optional[str], correlation_id: Optional[str]):
        try:
            return await self.geolocation.lookup(client_ip)
        except UpstreamUnavailable as e:
            log_event(
                logger, component="provisioning", operation="geolocation", outcome="failed",
                reason=e.code, correlation_id=correlation_id, level="error",
            )
            raise ProvisioningUpstreamError() from e

    async def _upstream_side_effect(
        self,
        operation: str,
        call: Callable[[], Awaitable[Any]],
        correlation_id: Optional[str],
    ) -> Any:
        try:
            return await retry_async(
                call,
                retries=1,
                base_delay=self.retry_base_delay,
                retry_on=(lightning_api.NetworkError,),
                retry_if=_not_sent,
            )
        except UpstreamUnavailable as e:
            log_event(
                logger, component="provisioning", operation=operation, outcome="failed",
                reason=e.code, correlation_id=correlation_id, level="error",
                message=f"provisioning {operation} failed: {e} context={getattr(e, 'context', {})}",
            )
            raise ProvisioningUpstreamError() from e

    async def _read_period_end(self, plan_id: str, correlation_id: Optional[str]) -> Optional[datetime]:
        """
        Read the plan's expiration after a successful side effect.

        Failure here must not lose the purchase: the row is written without a new
        period end (None keeps the stored value on extend).
        """
        try:
            info = await retry_async(
                lambda: lightning_api.read_plan_info(plan_id),
                retries=1,
                base_delay=self.retry_base_delay,
                retry_on=(lightning_api.NetworkError,),
            )
        except UpstreamUnavailable as e:
            log_event(
                logger, component="provisioning", operation="read_plan_info", outcome="degraded",
                reason=e.code, correlation_id=correlation_id, level="warning", plan_id=plan_id,
            )
            return None
        return info.expiration_date

    # --------------------------------------------------------------------------------
    # Local write + reconciliation
    # --------------------------------------------------------------------------------

    async def _persist(
        self,
        operation: str,
        write: Callable[[], Awaitable[Dict[str, Any]]],
        user_id: int,
        service_type: str,
        plan_id: str,
        traffic_mb: int,
        period_end: Optional[datetime],
        correlation_id: Optional[str],
    ) -> Dict[str, Any]:
        try:
            return await retry_async(
                write,
                retries=1,
                base_delay=self.retry_base_delay,
                retry_on=TRANSIENT_EXCEPTIONS,
            )
        except Exception as e:
            incident_id = await self._record_inconsistency(
                operation, user_id, service_type, plan_id, traffic_mb, period_end, e, correlation_id
            )
            raise ProvisioningInconsistencyError(incident_id=incident_id) from e

    async def _record_inconsistency(
        self,
        operation: str,
        user_id: int,
        service_type: str,
        plan_id: str,
        traffic_mb: int,
        period_end: Optional[datetime],
        error: Exception,
        correlation_id: Optional[str],
    ) -> Optional[int]:
        context = (
            f"operation={operation} user_id={user_id} service_type={service_type} plan_id={plan_id} "
            f"traffic_mb={traffic_mb} current_period_end={period_end.isoformat() if period_end else None} "
            f"error={error!r}"
        )
        try:
            incident_id = await database.record_provisioning_incident(
                user_id=user_id,
                service_type=service_type,
                operation=operation,
                plan_id=plan_id,
                traffic_mb=traffic_mb,
                current_period_end=period_end,
                error=repr(error),
            )
        except Exception as record_error:
            logger.critical(
                f"PROVISIONING_INCONSISTENCY_UNRECORDED [{context} record_error={record_error!r}]",
                extra={"component": "provisioning", "operation": operation, "outcome": "inconsistent",
                       "correlation_id": correlation_id},
            )
            return None

        logger.error(
            f"PROVISIONING_INCONSISTENCY [incident_id={incident_id} {context}]",
            extra={"component": "provisioning", "operation": operation, "outcome": "inconsistent",
                   "correlation_id": correlation_id},
        )
        return incident_id


# ====================================================================================
# Bandwidth
# ====================================================================================

async def get_bandwidth(
    user_id: int,
    plan_id: str,
    correlation_id: Optional[str] = None,
) -> Optional[Dict[str, Any]]:
    """
    Read remaining bandwidth of one of the user's residential plans.

    Returns:
        Raw provider payload, or None when the upstream call fails (logged).

    Raises:
        PlanNotFoundError: the plan does not belong to user_id
    """
    if await database.get_subscription_by_plan_id(user_id, plan_id) is None:
        log_event(
            logger, component="provisioning", operation="read_bandwidth", outcome="rejected",
            reason="plan_not_owned", correlation_id=correlation_id, level="warning",
            user_id=user_id, plan_id=plan_id,
        )
        raise PlanNotFoundError()

    try:
        return await retry_async(
            lambda: lightning_api.read_residential_bandwidth(plan_id),
            retries=1,
            retry_on=(lightning_api.NetworkError,),
        )
    except UpstreamUnavailable as e:
        log_event(
            logger, component="provisioning", operation="read_bandwidth", outcome="failed",
            reason=e.code, correlation_id=correlation_id, level="error", plan_id=plan_id,
            message=f"Error fetching bandwidth: {e} context={getattr(e, 'context', {})}",
        )
        return None
