"""
Activation Service Layer

Turns a user's active plan into proxy access details: the provider's raw
credentials (user/pass from plan info) combined with the protocol endpoints
configured for the provider and region.

Endpoint data lives in a JSON table, never in code:

    {
      "lightning": {
        "default": {"location": "...", "http": {"host": "...", "port": 8000},
                    "socks5": {"host": "...", "port": 9000}},
        "us": {...}
      }
    }
"""

import json
import logging
import secrets
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

import config
import database
import lightning_api
from app.core.exceptions import MalformedUpstreamResponse, UpstreamUnavailable
from app.core.structured_logger import elapsed_ms, log_event
from app.utils.retry import retry_async
from app.utils.security import validate_provider, validate_region, validate_service_type
from app.services.activation.exceptions import (
    ActivationUpstreamError,
    InvalidActivationRequestError,
    SubscriptionNotFoundError,
    UnknownProviderError,
)

logger = logging.getLogger(__name__)

DEFAULT_REGION_KEY = "default"
SESSION_ID_BYTES = 8
PROTOCOLS = ("http", "socks5")


# ====================================================================================
# Result Types
# ====================================================================================

@dataclass
class ProxyEndpoint:
    host: str
    port: int


@dataclass
class ProxyAccessDescriptor:
    """Canonical proxy access details returned to the caller"""
    plan_id: Optional[str]
    login: str
    password: str
    location: Optional[str]
    session_id: str
    session_login: str
    protocols: Dict[str, ProxyEndpoint]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ====================================================================================
# Endpoint table
# ====================================================================================

def _validate_endpoint_table(table: Any) -> Dict[str, Dict[str, Any]]:
    if not isinstance(table, dict) or not table:
        raise ValueError("Endpoint table must be a non-empty object keyed by provider")
    for provider, regions in table.items():
        if not isinstance(regions, dict) or not regions:
            raise ValueError(f"Endpoint table for provider '{provider}' must map regions to endpoints")
        for region, entry in regions.items():
            if not isinstance(entry, dict):
                raise ValueError(f"Endpoint entry {provider}/{region} must be an object")
            for protocol in PROTOCOLS:
                endpoint = entry.get(protocol)
                if endpoint is None:
                    continue
                if not isinstance(endpoint, dict) or not endpoint.get("host") or not isinstance(endpoint.get("port"), int):
                    raise ValueError(f"Endpoint {provider}/{region}/{protocol} needs host and integer port")
    return table


def load_endpoint_table(path: Optional[str] = None) -> Dict[str, Dict[str, Any]]:
    """
    Load the provider/region endpoint table from a JSON file.

    Raises:
        OSError: file cannot be read
        ValueError: file is not a valid endpoint table
    """
    path = path or config.PROXY_ENDPOINTS_FILE
    with open(path, "r", encoding="utf-8") as f:
        table = json.load(f)
    table = _validate_endpoint_table(table)
    logger.info(f"Loaded proxy endpoint table: providers={sorted(table)} path={path}")
    return table


# ====================================================================================
# Formatter
# ====================================================================================

class ProxyActivationFormatter:
    """Maps raw provider credentials to a ProxyAccessDescriptor."""

    def __init__(self, endpoint_table: Dict[str, Dict[str, Any]]):
        self.endpoint_table = _validate_endpoint_table(endpoint_table)

    def supports(self, provider: str) -> bool:
        return provider in self.endpoint_table

    def _entry(self, provider: str, region: Optional[str]) -> Dict[str, Any]:
        regions = self.endpoint_table.get(provider)
        if regions is None:
            raise UnknownProviderError(f"Unknown provider: {provider}")
        if region and region in regions:
            return regions[region]
        if DEFAULT_REGION_KEY in regions:
            return regions[DEFAULT_REGION_KEY]
        raise UnknownProviderError(f"No endpoints configured for provider {provider} in region {region}")

    def format(
        self,
        raw_credentials: Dict[str, Any],
        provider: str,
        region: Optional[str] = None,
        plan_id: Optional[str] = None,
    ) -> ProxyAccessDescriptor:
        """
        Build the access descriptor.

        Raises:
            MalformedUpstreamResponse: `user` or `pass` missing or empty
            UnknownProviderError: no endpoints for provider/region
        """
        login = raw_credentials.get("user") if isinstance(raw_credentials, dict) else None
        password = raw_credentials.get("pass") if isinstance(raw_credentials, dict) else None
        if not login or not password:
            raise MalformedUpstreamResponse("Provider credentials are missing user or pass")

        entry = self._entry(provider, region)
        protocols = {
            protocol: ProxyEndpoint(host=entry[protocol]["host"], port=entry[protocol]["port"])
            for protocol in PROTOCOLS
            if entry.get(protocol)
        }
        session_id = secrets.token_hex(SESSION_ID_BYTES)
        return ProxyAccessDescriptor(
            plan_id=plan_id,
            login=str(login),
            password=str(password),
            location=entry.get("location"),
            session_id=session_id,
            session_login=f"{login}-session-{session_id}",
            protocols=protocols,
        )


# ====================================================================================
# Activation
# ====================================================================================

class ProxyActivator:
    """Reads the user's plan credentials upstream and formats them."""

    def __init__(self, formatter: ProxyActivationFormatter):
        self.formatter = formatter

    async def activate(
        self,
        user_id: int,
        provider: str,
        service_type: str,
        region: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> ProxyAccessDescriptor:
        """
        Raises:
            InvalidActivationRequestError: bad provider, service type or region
            UnknownProviderError: provider has no endpoint table
            SubscriptionNotFoundError: user has no subscription for service_type
            ActivationUpstreamError / MalformedUpstreamResponse: credentials unavailable
        """
        for is_valid, error in (
            validate_provider(provider),
            validate_service_type(service_type),
            validate_region(region),
        ):
            if not is_valid:
                raise InvalidActivationRequestError(error)
        if not self.formatter.supports(provider):
            raise UnknownProviderError(f"Unknown provider: {provider}")

        with elapsed_ms() as elapsed:
            subscription = await database.get_subscription(user_id, service_type)
            if subscription is None:
                raise SubscriptionNotFoundError()
            plan_id = subscription["plan_id"]

            try:
                info = await retry_async(
                    lambda: lightning_api.read_plan_info(plan_id),
                    retries=1,
                    retry_on=(lightning_api.NetworkError,),
                )
            except MalformedUpstreamResponse:
                raise
            except UpstreamUnavailable as e:
                log_event(
                    logger, component="activation", operation="activate", outcome="failed",
                    reason=e.code, correlation_id=correlation_id, level="error",
                    user_id=user_id, plan_id=plan_id, duration_ms=elapsed(),
                    message=f"activation read_plan_info failed: {e} context={getattr(e, 'context', {})}",
                )
                raise ActivationUpstreamError() from e

            descriptor = self.formatter.format(info.raw, provider, region, plan_id=plan_id)
            log_event(
                logger, component="activation", operation="activate", outcome="success",
                correlation_id=correlation_id, duration_ms=elapsed(),
                user_id=user_id, service_type=service_type, plan_id=plan_id,
            )
        return descriptor
