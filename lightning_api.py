"""
Lightning reseller API client (upstream proxy provider).

Stateless request/response wrapper. No local state, no retries: retry policy
belongs to the caller, which knows whether a call has side effects.

API endpoints:
    POST /getplan/residential          {"bandwidth": GB}        -> {"PlanID": ...}
    POST /getplan/isp                  {"ip": ..., "region": ...} -> {"PlanID": ...}
    POST /add/{plan_id}/{traffic_gb}   {}                        -> ack
    GET  /info/{plan_id}                                         -> {"expiration_date": ..., "user": ..., "pass": ...}
    GET  /plan/residential/read/{plan_id}                        -> {"bandwidthLeft": ...}

Failure classification:
- Connection refused / connect timeout → NetworkError(request_sent=False)
- Read/write timeout, dropped connection → NetworkError(request_sent=True):
  the provider may already have applied the request
- Non-2xx → ProviderError (status + response preview kept for operators)
- 2xx without required fields → MalformedUpstreamResponse
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

import config
from app.core.exceptions import MalformedUpstreamResponse, ProviderError as _ProviderError, UpstreamUnavailable

logger = logging.getLogger(__name__)

RESPONSE_PREVIEW_LENGTH = 300


class LightningAPIError(UpstreamUnavailable):
    """Base class for Lightning API errors."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        # Operator-only details: endpoint, method, request body, status, response preview
        self.context = context or {}


class LightningAPIDisabled(LightningAPIError):
    """Lightning API key is not configured."""


class NetworkError(LightningAPIError):
    """Timeout or connection failure talking to Lightning."""

    code = "upstream_unavailable"

    def __init__(self, message: str, request_sent: bool, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, context)
        self.request_sent = request_sent


class ProviderError(LightningAPIError, _ProviderError):
    """Lightning answered with a non-2xx status."""

    code = "provider_error"

    def __init__(self, message: str, status_code: int, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, context)
        self.status_code = status_code


# =============================================================================
# Result types
# =============================================================================

@dataclass
class CreatedPlan:
    plan_id: str
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PlanInfo:
    plan_id: str
    expiration_date: Optional[datetime]
    raw: Dict[str, Any] = field(default_factory=dict)


def parse_expiration(value: Any) -> Optional[datetime]:
    """
    Parse an upstream expiration value into an aware UTC datetime.

    Accepts ISO-8601 strings (with or without "Z"), "YYYY-MM-DD HH:MM:SS",
    "YYYY-MM-DD" and unix timestamps in seconds or milliseconds.

    Raises:
        MalformedUpstreamResponse: value present but not understood
    """
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise MalformedUpstreamResponse(f"Unsupported expiration_date: {value!r}")
    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > 1e12 else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            parsed = None
            for fmt in ("%Y-%m-%d %H:%M:%S", "%Y-%m-%d", "%d-%m-%Y %H:%M:%S"):
                try:
                    parsed = datetime.strptime(text, fmt)
                    break
                except ValueError:
                    continue
        if parsed is not None:
            if parsed.tzinfo is None:
                return parsed.replace(tzinfo=timezone.utc)
            return parsed.astimezone(timezone.utc)
    raise MalformedUpstreamResponse(f"Unsupported expiration_date: {value!r}")


# =============================================================================
# HTTP plumbing
# =============================================================================

def _get_headers() -> Dict[str, str]:
    return {
        "Content-Type": "application/json",
        "x-api-key": config.LIGHTNING_API_KEY,
    }


def _timeout() -> httpx.Timeout:
    return httpx.Timeout(config.LIGHTNING_API_TIMEOUT, connect=min(5.0, config.LIGHTNING_API_TIMEOUT))


async def _request(
    operation: str,
    method: str,
    path: str,
    json_body: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    if not config.LIGHTNING_API_KEY:
        raise LightningAPIDisabled("Lightning API is not configured (LIGHTNING_API_KEY)")

    url = f"{config.LIGHTNING_API_URL.rstrip('/')}{path}"
    context: Dict[str, Any] = {"operation": operation, "method": method, "url": url, "request": json_body}
    logger.debug(f"lightning_api {operation}: START [method={method}, url={url}, body={json_body}]")

    try:
        async with httpx.AsyncClient(timeout=_timeout()) as client:
            response = await client.request(method, url, headers=_get_headers(), json=json_body)
    except (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout) as e:
        context["error"] = repr(e)
        logger.error(f"lightning_api {operation}: CONNECT_FAILED {context}")
        raise NetworkError(f"Lightning unreachable: {type(e).__name__}", request_sent=False, context=context) from e
    except httpx.TransportError as e:
        context["error"] = repr(e)
        logger.error(f"lightning_api {operation}: NETWORK_ERROR {context}")
        raise NetworkError(f"Lightning network error: {type(e).__name__}", request_sent=True, context=context) from e

    context["status"] = response.status_code
    context["response"] = response.text[:RESPONSE_PREVIEW_LENGTH]

    if not response.is_success:
        logger.error(f"lightning_api {operation}: PROVIDER_ERROR {context}")
        raise ProviderError(
            f"Lightning returned status {response.status_code}",
            status_code=response.status_code,
            context=context,
        )

    if not response.content:
        return {}
    try:
        data = response.json()
    except ValueError as e:
        logger.error(f"lightning_api {operation}: INVALID_JSON {context}")
        raise MalformedUpstreamResponse(f"Lightning {operation} returned non-JSON body") from e
    if not isinstance(data, dict):
        logger.error(f"lightning_api {operation}: UNEXPECTED_BODY {context}")
        raise MalformedUpstreamResponse(f"Lightning {operation} returned {type(data).__name__}")

    logger.debug(f"lightning_api {operation}: SUCCESS [status={response.status_code}]")
    return data


def _extract_plan_id(operation: str, data: Dict[str, Any]) -> str:
    plan_id = data.get("PlanID")
    if plan_id is None or str(plan_id).strip() == "":
        logger.error(f"lightning_api {operation}: MISSING_PLAN_ID [response={str(data)[:RESPONSE_PREVIEW_LENGTH]}]")
        raise MalformedUpstreamResponse(f"Lightning {operation} response has no PlanID")
    return str(plan_id).strip()


# =============================================================================
# Operations
# =============================================================================

async def create_residential_plan(bandwidth_gb: int) -> CreatedPlan:
    """Create a residential plan with `bandwidth_gb` of traffic."""
    data = await _request(
        "create_residential_plan", "POST", "/getplan/residential", {"bandwidth": int(bandwidth_gb)}
    )
    return CreatedPlan(plan_id=_extract_plan_id("create_residential_plan", data), raw=data)


async def create_isp_plan(ip: str, region: str) -> CreatedPlan:
    """Create an ISP plan bound to an egress IP and region."""
    data = await _request("create_isp_plan", "POST", "/getplan/isp", {"ip": ip, "region": region})
    return CreatedPlan(plan_id=_extract_plan_id("create_isp_plan", data), raw=data)


async def extend_plan(plan_id: str, traffic_gb: int) -> Dict[str, Any]:
    """Add `traffic_gb` to an existing residential plan. Returns the provider ack."""
    return await _request("extend_plan", "POST", f"/add/{plan_id}/{int(traffic_gb)}", {})


async def read_plan_info(plan_id: str) -> PlanInfo:
    """Read plan details (expiration date, credentials)."""
    data = await _request("read_plan_info", "GET", f"/info/{plan_id}")
    return PlanInfo(
        plan_id=plan_id,
        expiration_date=parse_expiration(data.get("expiration_date")),
        raw=data,
    )


async def read_residential_bandwidth(plan_id: str) -> Dict[str, Any]:
    """Read remaining bandwidth of a residential plan. Returns the raw payload."""
    return await _request("read_residential_bandwidth", "GET", f"/plan/residential/read/{plan_id}")
