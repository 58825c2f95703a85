"""
Proxy API

POST /lola/buy                     {traffic, serviceType}        -> {planId}
GET  /lola/get-bandwidth/{planId}                                -> raw payload | null (own plans only)
POST /v1/proxy/activate-proxy      {provider, service_type, region} -> access descriptor
"""
from aiohttp import web

from app.api.auth import get_client_ip, get_identity
from app.api.middleware import get_correlation_id, read_json_object
from app.core.exceptions import ValidationError
from app.services.activation import ProxyActivator
from app.services.provisioning import SubscriptionProvisioner, get_bandwidth
from app.utils.security import validate_plan_id

PROVISIONER_KEY = web.AppKey("provisioner", SubscriptionProvisioner)
ACTIVATOR_KEY = web.AppKey("activator", ProxyActivator)


async def buy_handler(request: web.Request) -> web.Response:
    identity = get_identity(request)
    body = await read_json_object(request)

    result = await request.app[PROVISIONER_KEY].purchase(
        user_id=identity["id"],
        traffic_gb=body.get("traffic"),
        service_type=body.get("serviceType"),
        client_ip=get_client_ip(request),
        correlation_id=get_correlation_id(request),
    )
    return web.json_response({"planId": result.plan_id})


async def get_bandwidth_handler(request: web.Request) -> web.Response:
    identity = get_identity(request)
    plan_id = request.match_info["plan_id"]
    is_valid, error = validate_plan_id(plan_id)
    if not is_valid:
        raise ValidationError(error)

    payload = await get_bandwidth(identity["id"], plan_id, correlation_id=get_correlation_id(request))
    return web.json_response(payload)


async def activate_proxy_handler(request: web.Request) -> web.Response:
    identity = get_identity(request)
    body = await read_json_object(request)

    descriptor = await request.app[ACTIVATOR_KEY].activate(
        user_id=identity["id"],
        provider=body.get("provider"),
        service_type=body.get("service_type"),
        region=body.get("region"),
        correlation_id=get_correlation_id(request),
    )
    return web.json_response(descriptor.to_dict())


def register_proxy_routes(app: web.Application) -> None:
    app.router.add_post("/lola/buy", buy_handler)
    app.router.add_get("/lola/get-bandwidth/{plan_id}", get_bandwidth_handler)
    app.router.add_post("/v1/proxy/activate-proxy", activate_proxy_handler)
