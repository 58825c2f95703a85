import asyncio
import logging

import config

# Configure logging FIRST (before any other imports that may log)
# Routes INFO/WARNING → stdout, ERROR/CRITICAL → stderr for correct container classification
from app.core.logging_config import setup_logging
setup_logging(config.LOG_LEVEL)

import database
import http_server
import redis_client
from app.core.structured_logger import log_event
from app.services.activation import ProxyActivationFormatter, ProxyActivator, load_endpoint_table
from app.services.provisioning import SubscriptionProvisioner
from app.utils.security import mask_secret
from geolocation import IpInfoGeoLocation

# ====================================================================================
# LOGGING CONTRACT
# ====================================================================================
#
# Standard log fields (see app.core.structured_logger):
# - component        (http / provisioning / settlement / payments / activation / infra)
# - operation        (what is happening)
# - correlation_id   (X-Request-ID or generated per request)
# - outcome          (started | success | degraded | rejected | failed | inconsistent)
# - duration_ms      (when applicable)
# - reason           (short, non-PII explanation)
#
# SECURITY:
# - DO NOT log API keys, bearer tokens or full gateway payloads
# ====================================================================================

logger = logging.getLogger(__name__)


async def main():
    config.validate_required()
    logger.info(f"Starting proxy reseller service in {config.APP_ENV.upper()} environment")
    logger.info(f"Using DATABASE_URL from {config.APP_ENV.upper()}_DATABASE_URL")
    logger.info(
        f"Lightning API: url={config.LIGHTNING_API_URL} key={mask_secret(config.LIGHTNING_API_KEY)}; "
        f"Cryptomus merchant={mask_secret(config.CRYPTOMUS_MERCHANT_ID)}"
    )

    # Fails fast: activation cannot work without endpoint data
    endpoint_table = load_endpoint_table(config.PROXY_ENDPOINTS_FILE)

    # ====================================================================================
    # SAFE STARTUP GUARD: the HTTP server starts even if the DB is unavailable.
    # /health reports degraded; requests touching the DB fail with 500.
    # ====================================================================================
    try:
        success = await database.init_db()
        if success:
            logger.info("Database initialized")
        else:
            logger.error("DB INIT FAILED: RUNNING IN DEGRADED MODE")
    except Exception as e:
        logger.exception("DB INIT FAILED: RUNNING IN DEGRADED MODE")
        logger.error(f"Database initialization error: {type(e).__name__}: {e}")
        database.DB_READY = False

    if redis_client.is_configured():
        await redis_client.check_redis_connection()
    else:
        logger.warning("REDIS_URL not set: provisioning locks are process-local (single instance only)")

    provisioner = SubscriptionProvisioner(geolocation=IpInfoGeoLocation())
    activator = ProxyActivator(ProxyActivationFormatter(endpoint_table))
    app = http_server.create_app(provisioner, activator)

    server_task = asyncio.create_task(
        http_server.http_server_task(app, config.HTTP_HOST, config.HTTP_PORT)
    )
    log_event(logger, component="startup", operation="startup_completed", outcome="success")

    try:
        await server_task
    finally:
        log_event(logger, component="shutdown", operation="shutdown_start", outcome="success")

        if not server_task.done():
            server_task.cancel()
        try:
            await server_task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error(f"Error during shutdown of HTTP server: {e}")

        try:
            await redis_client.close_redis_client()
        except Exception as e:
            logger.error(f"Error closing Redis client: {e}")

        try:
            await database.close_pool()
        except Exception as e:
            logger.error(f"Error closing database pool: {e}")

        log_event(logger, component="shutdown", operation="shutdown_completed", outcome="success")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Service stopped")
