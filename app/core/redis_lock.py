"""
Per-key locking for provisioning.

Distributed locking uses the Redis SET NX PX pattern with a random token and a
compare-and-delete Lua script on release, so only the owner can release and a
crashed holder is released by TTL.

While held, the lock renews its TTL every third of the TTL, so a slow
purchase (upstream timeouts, retried writes) cannot outlive it.

Without REDIS_URL the lock falls back to a process-local asyncio.Lock per key,
which is only correct for a single-instance deployment.
"""
import asyncio
import logging
import os
import uuid
from contextlib import asynccontextmanager
from typing import Dict, Optional

import redis.asyncio as redis

import config
import redis_client

logger = logging.getLogger(__name__)

# Lua script for atomic compare-and-delete (safe lock release)
RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""

# Lua script for atomic compare-and-extend (lock renewal)
EXTEND_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("pexpire", KEYS[1], ARGV[2])
else
    return 0
end
"""

RETRY_INTERVAL_SECONDS = 0.1
ERROR_RETRY_INTERVAL_SECONDS = 0.2


class LockAcquireTimeout(Exception):
    """Lock for the key could not be acquired within wait_timeout."""

    def __init__(self, key: str):
        super().__init__(f"Failed to acquire lock: {key}")
        self.key = key


class RedisDistributedLock:
    """
    Redis distributed lock.

    Example:
        lock = RedisDistributedLock(
            redis_client=client,
            key="lock:prod:provision:42:residential",
            ttl_seconds=120,
            wait_timeout=10,
        )
        async with lock:
            # Critical section
            pass
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        key: str,
        ttl_seconds: float = 60,
        wait_timeout: float = 5,
    ):
        self.redis_client = redis_client
        self.key = key
        self.ttl_seconds = ttl_seconds
        self.wait_timeout = wait_timeout
        self.token: Optional[str] = None
        self.acquired = False
        self.instance_id = os.getenv("INSTANCE_ID", f"pid-{os.getpid()}")
        self._release_script = None
        self._extend_script = None
        self._renew_task: Optional[asyncio.Task] = None

    def _get_release_script(self):
        if self._release_script is None:
            self._release_script = self.redis_client.register_script(RELEASE_SCRIPT)
        return self._release_script

    async def acquire(self, correlation_id: Optional[str] = None) -> bool:
        """
        Acquire the lock, polling until wait_timeout.

        Returns:
            True if lock acquired, False on timeout
        """
        if self.acquired:
            return False

        self.token = str(uuid.uuid4())
        loop = asyncio.get_running_loop()
        start_time = loop.time()
        attempt = 0

        while True:
            attempt += 1
            elapsed = loop.time() - start_time
            if elapsed >= self.wait_timeout:
                logger.warning(
                    "REDIS_LOCK_TIMEOUT",
                    extra={
                        "component": "infra",
                        "operation": "lock_acquire",
                        "outcome": "timeout",
                        "key": self.key,
                        "correlation_id": correlation_id,
                    }
                )
                self.token = None
                return False

            try:
                result = await self.redis_client.set(
                    self.key,
                    self.token,
                    nx=True,
                    px=int(self.ttl_seconds * 1000),
                )
                if result:
                    self.acquired = True
                    logger.debug(
                        "REDIS_LOCK_ACQUIRED",
                        extra={
                            "component": "infra",
                            "operation": "lock_acquire",
                            "outcome": "success",
                            "key": self.key,
                            "correlation_id": correlation_id,
                        }
                    )
                    return True
                await asyncio.sleep(RETRY_INTERVAL_SECONDS)
            except redis.RedisError as e:
                logger.error(
                    "REDIS_LOCK_ERROR",
                    extra={
                        "component": "infra",
                        "operation": "lock_acquire",
                        "outcome": "error",
                        "reason": str(e)[:100],
                        "key": self.key,
                        "correlation_id": correlation_id,
                    }
                )
                await asyncio.sleep(ERROR_RETRY_INTERVAL_SECONDS)

    async def extend(self) -> bool:
        """Reset the TTL if we still own the lock. Returns False once ownership is lost."""
        if self._extend_script is None:
            self._extend_script = self.redis_client.register_script(EXTEND_SCRIPT)
        result = await self._extend_script(keys=[self.key], args=[self.token, int(self.ttl_seconds * 1000)])
        return bool(result)

    async def _renew_loop(self) -> None:
        interval = self.ttl_seconds / 3
        while self.acquired:
            await asyncio.sleep(interval)
            try:
                if not await self.extend():
                    logger.error(
                        "REDIS_LOCK_LOST",
                        extra={
                            "component": "infra",
                            "operation": "lock_renew",
                            "outcome": "failed",
                            "reason": "token_mismatch_or_expired",
                            "key": self.key,
                        }
                    )
                    return
            except redis.RedisError as e:
                logger.error(
                    "REDIS_LOCK_ERROR",
                    extra={
                        "component": "infra",
                        "operation": "lock_renew",
                        "outcome": "error",
                        "reason": str(e)[:100],
                        "key": self.key,
                    }
                )

    async def release(self, correlation_id: Optional[str] = None) -> None:
        """
        Release the lock if we still own it. Idempotent.

        A failed release is logged, not raised: the TTL frees the key.
        """
        if not self.acquired or not self.token:
            self.acquired = False
            return

        try:
            result = await self._get_release_script()(keys=[self.key], args=[self.token])
            if not result:
                logger.warning(
                    "REDIS_LOCK_ERROR",
                    extra={
                        "component": "infra",
                        "operation": "lock_release",
                        "outcome": "failed",
                        "reason": "token_mismatch_or_expired",
                        "key": self.key,
                        "correlation_id": correlation_id,
                    }
                )
        except redis.RedisError as e:
            logger.error(
                "REDIS_LOCK_ERROR",
                extra={
                    "component": "infra",
                    "operation": "lock_release",
                    "outcome": "error",
                    "reason": str(e)[:100],
                    "key": self.key,
                    "correlation_id": correlation_id,
                }
            )
        finally:
            self.acquired = False
            self.token = None

    async def __aenter__(self):
        if not await self.acquire():
            raise LockAcquireTimeout(self.key)
        self._renew_task = asyncio.create_task(self._renew_loop())
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._renew_task is not None:
            self._renew_task.cancel()
            try:
                await self._renew_task
            except asyncio.CancelledError:
                pass
            self._renew_task = None
        await self.release()
        return False


class LocalKeyedLock:
    """
    Process-local lock per key.

    Locks are created on first use and dropped once no coroutine holds or waits
    for them.
    """

    _locks: Dict[str, asyncio.Lock] = {}
    _refs: Dict[str, int] = {}

    def __init__(self, key: str, wait_timeout: float = 5):
        self.key = key
        self.wait_timeout = wait_timeout

    def _retain(self) -> asyncio.Lock:
        self._refs[self.key] = self._refs.get(self.key, 0) + 1
        return self._locks.setdefault(self.key, asyncio.Lock())

    def _drop(self) -> None:
        remaining = self._refs.get(self.key, 1) - 1
        if remaining <= 0:
            self._refs.pop(self.key, None)
            self._locks.pop(self.key, None)
        else:
            self._refs[self.key] = remaining

    async def __aenter__(self):
        lock = self._retain()
        try:
            await asyncio.wait_for(lock.acquire(), timeout=self.wait_timeout)
        except asyncio.TimeoutError:
            self._drop()
            raise LockAcquireTimeout(self.key) from None
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self._locks[self.key].release()
        self._drop()
        return False


def provisioning_lock_key(user_id: int, service_type: str) -> str:
    return f"lock:{config.APP_ENV}:provision:{user_id}:{service_type}"


@asynccontextmanager
async def provisioning_lock(
    user_id: int,
    service_type: str,
    *,
    ttl_seconds: Optional[int] = None,
    wait_timeout: Optional[int] = None,
):
    """
    Serialize provisioning for one (user, service type).

    Raises:
        LockAcquireTimeout: another purchase for the same key is still running
    """
    key = provisioning_lock_key(user_id, service_type)
    ttl = ttl_seconds if ttl_seconds is not None else config.PROVISIONING_LOCK_TTL
    wait = wait_timeout if wait_timeout is not None else config.PROVISIONING_LOCK_WAIT

    client = await redis_client.get_redis_client()
    if client is None:
        lock = LocalKeyedLock(key, wait_timeout=wait)
    else:
        lock = RedisDistributedLock(client, key, ttl_seconds=ttl, wait_timeout=wait)

    async with lock:
        yield
