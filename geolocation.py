"""
Geolocation provider for ISP plans.

ISP plans are bound to an egress IP and region. The provisioner receives a
GeoLocationProvider instead of calling lookup services directly, so tests can
substitute a static provider.
"""
import ipaddress
import logging
from dataclasses import dataclass
from typing import Optional

import httpx

import config
from app.core.exceptions import UpstreamUnavailable

logger = logging.getLogger(__name__)


class GeoLocationError(UpstreamUnavailable):
    """IP or region could not be determined."""


@dataclass(frozen=True)
class GeoLocation:
    ip: str
    region: str


class GeoLocationProvider:
    """Interface: resolve the IP/region an ISP plan should be created for."""

    async def lookup(self, client_ip: Optional[str] = None) -> GeoLocation:
        raise NotImplementedError


class StaticGeoLocation(GeoLocationProvider):
    """Always returns the same location (fixed egress deployments, tests)."""

    def __init__(self, ip: str, region: str):
        self._location = GeoLocation(ip=ip, region=region)

    async def lookup(self, client_ip: Optional[str] = None) -> GeoLocation:
        return self._location


def _is_public_ip(value: Optional[str]) -> bool:
    if not value:
        return False
    try:
        return ipaddress.ip_address(value).is_global
    except ValueError:
        return False


class IpInfoGeoLocation(GeoLocationProvider):
    """
    Resolve region through ipinfo.io.

    The client's IP is used when it is a public address; otherwise the service's
    own public IP is looked up through ipify.
    """

    def __init__(
        self,
        ipinfo_url: str = None,
        token: Optional[str] = None,
        ipify_url: str = None,
        timeout: float = None,
    ):
        self.ipinfo_url = (ipinfo_url or config.IPINFO_URL).rstrip("/")
        self.token = token if token is not None else config.IPINFO_TOKEN
        self.ipify_url = ipify_url or config.IPIFY_URL
        self.timeout = timeout or config.GEOLOCATION_TIMEOUT

    async def _get_json(self, client: httpx.AsyncClient, url: str, params: Optional[dict] = None) -> dict:
        try:
            response = await client.get(url, params=params)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"geolocation: REQUEST_FAILED [url={url}, error={e!r}]")
            raise GeoLocationError("Could not determine location") from e
        if not isinstance(data, dict):
            raise GeoLocationError("Could not determine location")
        return data

    async def lookup(self, client_ip: Optional[str] = None) -> GeoLocation:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            ip = client_ip if _is_public_ip(client_ip) else None
            if ip is None:
                ip = (await self._get_json(client, self.ipify_url)).get("ip")
                if not ip:
                    raise GeoLocationError("Could not determine public IP")

            params = {"token": self.token} if self.token else None
            info = await self._get_json(client, f"{self.ipinfo_url}/{ip}/json", params=params)

        region = info.get("region")
        if not region:
            logger.warning(f"geolocation: NO_REGION [ip={ip}]")
            raise GeoLocationError("Could not determine region")
        return GeoLocation(ip=ip, region=region)
