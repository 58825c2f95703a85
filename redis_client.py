"""
Redis Client Module

Async Redis client using redis.asyncio with singleton pattern.
Backs the distributed provisioning lock; optional for single-instance deployments.
"""
import logging
from typing import Optional

import redis.asyncio as redis

import config

logger = logging.getLogger(__name__)

_redis_client: Optional[redis.Redis] = None
REDIS_READY: bool = False


def is_configured() -> bool:
    return bool(config.REDIS_URL)


async def get_redis_client() -> Optional[redis.Redis]:
    """
    Get or create Redis client instance (singleton pattern).

    Returns:
        Redis client instance if configured, None if REDIS_URL not set

    Raises:
        RuntimeError: If the client cannot be created from REDIS_URL
    """
    global _redis_client, REDIS_READY

    if not config.REDIS_URL:
        return None

    if _redis_client is None:
        try:
            _redis_client = redis.from_url(
                config.REDIS_URL,
                decode_responses=True,
                socket_timeout=5,
                socket_connect_timeout=5,
                retry_on_timeout=True,
                health_check_interval=30,
                max_connections=20,
            )
            logger.info("Redis client created")
        except Exception as e:
            _redis_client = None
            REDIS_READY = False
            raise RuntimeError(f"Redis client creation failed: {e}") from e

    return _redis_client


async def check_redis_connection() -> bool:
    """
    Check Redis connection health with PING.

    Does NOT raise - returns False on any error.
    """
    global REDIS_READY

    if not config.REDIS_URL:
        REDIS_READY = False
        return False

    try:
        client = await get_redis_client()
        REDIS_READY = bool(client is not None and await client.ping())
    except Exception as e:
        REDIS_READY = False
        logger.warning(
            "REDIS_CONNECTION_FAILED",
            extra={
                "component": "infra",
                "operation": "redis_health_check",
                "outcome": "failed",
                "reason": str(e)[:100],
            }
        )
        return False

    logger.info(
        "REDIS_CONNECTED" if REDIS_READY else "REDIS_CONNECTION_FAILED",
        extra={
            "component": "infra",
            "operation": "redis_health_check",
            "outcome": "success" if REDIS_READY else "failed",
        }
    )
    return REDIS_READY


async def close_redis_client():
    """
    Close Redis client connection pool.

    Safe to call multiple times - idempotent.
    """
    global _redis_client, REDIS_READY

    if _redis_client is not None:
        try:
            await _redis_client.aclose()
            logger.info("Redis client closed")
        except Exception as e:
            logger.error(f"Error closing Redis client: {e}")
        finally:
            _redis_client = None
            REDIS_READY = False
