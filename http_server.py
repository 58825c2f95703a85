"""
HTTP Server

Assembles the aiohttp application: proxy purchase/activation, payment checkout,
gateway callback and /health.

/health does NOT touch the database - it only reads readiness flags.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from aiohttp import web

import database
import redis_client
from app.api.auth import IdentityResolver, create_auth_middleware
from app.api.middleware import correlation_middleware, error_middleware
from app.api.payment_routes import CALLBACK_PATH, register_payment_routes
from app.api.proxy_routes import ACTIVATOR_KEY, PROVISIONER_KEY, register_proxy_routes
from app.services.activation import ProxyActivator
from app.services.provisioning import SubscriptionProvisioner

logger = logging.getLogger(__name__)

HEALTH_PATH = "/health"
PUBLIC_PATHS = ("/", HEALTH_PATH, CALLBACK_PATH)


async def health_handler(request: web.Request) -> web.Response:
    """
    Health check endpoint handler

    Response format:
        {
            "status": "ok" | "degraded",
            "db_ready": true | false,
            "redis_ready": true | false,
            "timestamp": "2024-01-01T12:00:00Z"
        }

    Status is "ok" when DB_READY is set. Redis is reported but never degrades
    status: provisioning falls back to in-process locks without it.
    """
    db_ready = database.DB_READY
    response_data: Dict[str, Any] = {
        "status": "ok" if db_ready else "degraded",
        "db_ready": db_ready,
        "redis_ready": redis_client.REDIS_READY,
        "timestamp": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
    }
    # 200 for both states; monitoring distinguishes by "status"
    return web.json_response(response_data, status=200)


async def root_handler(request: web.Request) -> web.Response:
    return web.json_response({"service": "proxy-reseller", "health": HEALTH_PATH})


def create_app(
    provisioner: SubscriptionProvisioner,
    activator: ProxyActivator,
    identity_resolver: Optional[IdentityResolver] = None,
) -> web.Application:
    """
    Build the aiohttp application.

    Args:
        provisioner: purchase orchestrator
        activator: proxy credential formatter
        identity_resolver: bearer token -> {id, username}; defaults to the users table
    """
    resolver = identity_resolver or database.get_user_by_access_token
    app = web.Application(
        middlewares=[
            correlation_middleware,
            error_middleware,
            create_auth_middleware(resolver, public_paths=PUBLIC_PATHS),
        ]
    )
    app[PROVISIONER_KEY] = provisioner
    app[ACTIVATOR_KEY] = activator

    app.router.add_get("/", root_handler)
    app.router.add_get(HEALTH_PATH, health_handler)
    register_proxy_routes(app)
    register_payment_routes(app)
    return app


async def start_http_server(app: web.Application, host: str = "0.0.0.0", port: int = 8080) -> web.AppRunner:
    """
    Start serving `app`.

    Returns:
        AppRunner for shutdown
    """
    runner = web.AppRunner(app)
    await runner.setup()

    site = web.TCPSite(runner, host, port)
    await site.start()

    logger.info(f"HTTP server started on http://{host}:{port} (health: {HEALTH_PATH})")
    return runner


async def http_server_task(app: web.Application, host: str = "0.0.0.0", port: int = 8080):
    """
    Background task running the HTTP server until cancelled.
    """
    runner = await start_http_server(app, host, port)
    try:
        while True:
            await asyncio.sleep(3600)
    except asyncio.CancelledError:
        logger.info("HTTP server task cancelled")
        raise
    finally:
        try:
            await runner.cleanup()
            logger.info("HTTP server stopped")
        except Exception as e:
            logger.error(f"Error stopping HTTP server: {e}")
