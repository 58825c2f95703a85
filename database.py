"""
Persistence layer: asyncpg pool, schema bootstrap and repository functions.

Repositories exposed to the services:
    SubscriptionRepository  get_subscription / create_subscription /
                            add_subscription_traffic / replace_subscription_plan
    PaymentRepository       create_payment / get_payment / get_payment_for_update /
                            update_payment_from_webhook
    BalanceLedger           increase_balance
    Reconciliation          record_provisioning_incident

Every function accepts an optional `conn` so callers can compose several writes in
one transaction (see `transaction()`). Functions never cache rows between calls.

UTC boundary: columns are TIMESTAMP WITHOUT TIME ZONE holding UTC. Everything passed
to asyncpg goes through _to_db_utc, everything read back through _from_db_utc.
"""
import asyncio
import hashlib
import logging
import os
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, AsyncIterator, Dict, Optional

import asyncpg

import config
from app.utils.retry import retry_async

logger = logging.getLogger(__name__)

# Set by init_db(); /health reports it without touching the database
DB_READY: bool = False

DATABASE_URL = config.DATABASE_URL

if not DATABASE_URL:
    if config.IS_PROD:
        print(f"ERROR: {config.APP_ENV.upper()}_DATABASE_URL is REQUIRED in PROD!", file=sys.stderr)
        sys.exit(1)
    logger.warning(f"{config.APP_ENV.upper()}_DATABASE_URL is not set - running in degraded mode")

_pool: Optional[asyncpg.Pool] = None
_pool_lock = asyncio.Lock()


# ====================================================================================
# UTC HELPERS
# ====================================================================================

def _to_db_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Convert aware datetime to naive UTC for DB storage."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        raise ValueError("Naive datetime passed to the database layer")
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def _from_db_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Convert naive DB datetime (stored as UTC) to aware UTC."""
    if dt is None:
        return None
    if dt.tzinfo is not None:
        return dt.astimezone(timezone.utc)
    return dt.replace(tzinfo=timezone.utc)


def _subscription_row(row: Optional[asyncpg.Record]) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    d = dict(row)
    for k in ("current_period_end", "created_at", "updated_at"):
        if isinstance(d.get(k), datetime):
            d[k] = _from_db_utc(d[k])
    return d


# ====================================================================================
# POOL
# ====================================================================================

def _get_pool_config() -> dict:
    """Build asyncpg.create_pool kwargs. Single source of truth for pool creation."""
    return {
        "min_size": int(os.getenv("DB_POOL_MIN_SIZE", "2")),
        "max_size": int(os.getenv("DB_POOL_MAX_SIZE", "15")),
        "max_inactive_connection_lifetime": 300,
        "timeout": int(os.getenv("DB_POOL_ACQUIRE_TIMEOUT", "10")),
        "command_timeout": int(os.getenv("DB_POOL_COMMAND_TIMEOUT", "30")),
    }


async def get_pool() -> asyncpg.Pool:
    """
    Get the connection pool, creating it on first use.

    Pool creation is retried once on transient connection errors.
    """
    global _pool
    if not DATABASE_URL:
        raise RuntimeError(f"{config.APP_ENV.upper()}_DATABASE_URL is not configured")
    if _pool is None:
        async with _pool_lock:
            if _pool is None:
                pool_config = _get_pool_config()
                _pool = await retry_async(
                    lambda: asyncpg.create_pool(DATABASE_URL, **pool_config),
                    retries=1,
                    base_delay=0.5,
                    max_delay=5.0,
                    retry_on=(asyncpg.PostgresConnectionError, OSError),
                )
                logger.info(
                    "DB_POOL_CONFIG min=%s max=%s acquire_timeout=%s command_timeout=%s",
                    pool_config["min_size"], pool_config["max_size"],
                    pool_config["timeout"], pool_config["command_timeout"],
                )
    return _pool


async def close_pool():
    global _pool, DB_READY
    if _pool:
        await _pool.close()
        _pool = None
        DB_READY = False
        logger.info("Database connection pool closed")


@asynccontextmanager
async def _connection(conn: Optional[asyncpg.Connection] = None) -> AsyncIterator[asyncpg.Connection]:
    """Use the caller's connection, or borrow one from the pool."""
    if conn is not None:
        yield conn
        return
    pool = await get_pool()
    async with pool.acquire() as acquired:
        yield acquired


@asynccontextmanager
async def transaction() -> AsyncIterator[asyncpg.Connection]:
    """
    Borrow a connection and open a transaction on it.

    Usage:
        async with database.transaction() as conn:
            payment = await database.get_payment_for_update(order_id, conn=conn)
            ...
    """
    pool = await get_pool()
    async with pool.acquire() as conn:
        async with conn.transaction():
            yield conn


# ====================================================================================
# SCHEMA
# ====================================================================================

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id SERIAL PRIMARY KEY,
        username TEXT UNIQUE NOT NULL,
        balance NUMERIC(20, 8) NOT NULL DEFAULT 0,
        access_token_hash TEXT UNIQUE,
        created_at TIMESTAMP NOT NULL DEFAULT (NOW() AT TIME ZONE 'utc')
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS service_users (
        id SERIAL PRIMARY KEY,
        user_id INTEGER NOT NULL REFERENCES users(id),
        service_type TEXT NOT NULL,
        provider_id TEXT NOT NULL,
        plan_id TEXT NOT NULL,
        traffic_mb BIGINT NOT NULL CHECK (traffic_mb >= 0),
        current_period_end TIMESTAMP,
        region TEXT,
        ip_number TEXT,
        created_at TIMESTAMP NOT NULL DEFAULT (NOW() AT TIME ZONE 'utc'),
        updated_at TIMESTAMP NOT NULL DEFAULT (NOW() AT TIME ZONE 'utc'),
        UNIQUE (user_id, service_type)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS payments (
        order_id TEXT PRIMARY KEY,
        username TEXT NOT NULL,
        amount NUMERIC(20, 8) NOT NULL,
        status TEXT NOT NULL,
        network TEXT,
        payer_currency TEXT,
        payment_type TEXT NOT NULL,
        created_at TIMESTAMP NOT NULL DEFAULT (NOW() AT TIME ZONE 'utc'),
        updated_at TIMESTAMP NOT NULL DEFAULT (NOW() AT TIME ZONE 'utc')
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS balance_transactions (
        id SERIAL PRIMARY KEY,
        username TEXT NOT NULL,
        amount NUMERIC(20, 8) NOT NULL,
        source TEXT NOT NULL,
        reference TEXT,
        created_at TIMESTAMP NOT NULL DEFAULT (NOW() AT TIME ZONE 'utc'),
        UNIQUE (source, reference)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS provisioning_incidents (
        id SERIAL PRIMARY KEY,
        user_id INTEGER NOT NULL,
        service_type TEXT NOT NULL,
        operation TEXT NOT NULL,
        plan_id TEXT NOT NULL,
        traffic_mb BIGINT NOT NULL,
        current_period_end TIMESTAMP,
        error TEXT,
        status TEXT NOT NULL DEFAULT 'open',
        created_at TIMESTAMP NOT NULL DEFAULT (NOW() AT TIME ZONE 'utc')
    )
    """,
)


async def init_db() -> bool:
    """
    Create tables if missing and mark the database ready.

    Raises:
        Any asyncpg/connection error; the caller decides whether to start degraded.
    """
    global DB_READY
    pool = await get_pool()
    async with pool.acquire() as conn:
        async with conn.transaction():
            for statement in SCHEMA_STATEMENTS:
                await conn.execute(statement)
    DB_READY = True
    logger.info("Database initialized")
    return True


# ====================================================================================
# AUTH COLLABORATOR
# ====================================================================================

def hash_access_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


async def get_user_by_access_token(token: str) -> Optional[Dict[str, Any]]:
    """Resolve a bearer token issued by the auth service to {id, username}."""
    async with _connection() as conn:
        row = await conn.fetchrow(
            "SELECT id, username FROM users WHERE access_token_hash = $1",
            hash_access_token(token),
        )
    return dict(row) if row else None


# ====================================================================================
# SUBSCRIPTIONS (service_users)
# ====================================================================================

async def get_subscription(
    user_id: int,
    service_type: str,
    conn: Optional[asyncpg.Connection] = None,
) -> Optional[Dict[str, Any]]:
    async with _connection(conn) as c:
        row = await c.fetchrow(
            "SELECT * FROM service_users WHERE user_id = $1 AND service_type = $2",
            user_id, service_type,
        )
    return _subscription_row(row)


async def get_subscription_by_plan_id(
    user_id: int,
    plan_id: str,
    conn: Optional[asyncpg.Connection] = None,
) -> Optional[Dict[str, Any]]:
    """Subscription of `user_id` holding `plan_id`, or None if the plan is not theirs."""
    async with _connection(conn) as c:
        row = await c.fetchrow(
            "SELECT * FROM service_users WHERE user_id = $1 AND plan_id = $2",
            user_id, plan_id,
        )
    return _subscription_row(row)


async def create_subscription(
    user_id: int,
    service_type: str,
    provider_id: str,
    plan_id: str,
    traffic_mb: int,
    current_period_end: Optional[datetime],
    region: Optional[str] = None,
    ip_number: Optional[str] = None,
    conn: Optional[asyncpg.Connection] = None,
) -> Optional[Dict[str, Any]]:
    """
    Insert the subscription row for (user_id, service_type).

    Returns:
        The created row, or None if a row for the pair already exists.
    """
    async with _connection(conn) as c:
        row = await c.fetchrow(
            """INSERT INTO service_users
                   (user_id, service_type, provider_id, plan_id, traffic_mb,
                    current_period_end, region, ip_number)
               VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
               ON CONFLICT (user_id, service_type) DO NOTHING
               RETURNING *""",
            user_id, service_type, provider_id, plan_id, traffic_mb,
            _to_db_utc(current_period_end), region, ip_number,
        )
    return _subscription_row(row)


async def add_subscription_traffic(
    subscription_id: int,
    traffic_mb: int,
    current_period_end: Optional[datetime],
    conn: Optional[asyncpg.Connection] = None,
) -> Dict[str, Any]:
    """
    Add traffic to an existing row. Never overwrites traffic_mb.

    current_period_end=None keeps the stored value.
    """
    async with _connection(conn) as c:
        row = await c.fetchrow(
            """UPDATE service_users
               SET traffic_mb = traffic_mb + $2,
                   current_period_end = COALESCE($3, current_period_end),
                   updated_at = (NOW() AT TIME ZONE 'utc')
               WHERE id = $1
               RETURNING *""",
            subscription_id, traffic_mb, _to_db_utc(current_period_end),
        )
    if row is None:
        raise LookupError(f"Subscription not found: id={subscription_id}")
    return _subscription_row(row)


async def replace_subscription_plan(
    subscription_id: int,
    plan_id: str,
    traffic_mb: int,
    current_period_end: Optional[datetime],
    region: Optional[str] = None,
    ip_number: Optional[str] = None,
    conn: Optional[asyncpg.Connection] = None,
) -> Dict[str, Any]:
    """Point an ISP subscription at a freshly created plan, adding the purchased traffic."""
    async with _connection(conn) as c:
        row = await c.fetchrow(
            """UPDATE service_users
               SET plan_id = $2,
                   traffic_mb = traffic_mb + $3,
                   current_period_end = $4,
                   region = COALESCE($5, region),
                   ip_number = COALESCE($6, ip_number),
                   updated_at = (NOW() AT TIME ZONE 'utc')
               WHERE id = $1
               RETURNING *""",
            subscription_id, plan_id, traffic_mb, _to_db_utc(current_period_end), region, ip_number,
        )
    if row is None:
        raise LookupError(f"Subscription not found: id={subscription_id}")
    return _subscription_row(row)


async def record_provisioning_incident(
    user_id: int,
    service_type: str,
    operation: str,
    plan_id: str,
    traffic_mb: int,
    current_period_end: Optional[datetime],
    error: str,
    conn: Optional[asyncpg.Connection] = None,
) -> int:
    """Record an upstream purchase that is not reflected locally. Returns incident id."""
    async with _connection(conn) as c:
        return await c.fetchval(
            """INSERT INTO provisioning_incidents
                   (user_id, service_type, operation, plan_id, traffic_mb, current_period_end, error)
               VALUES ($1, $2, $3, $4, $5, $6, $7)
               RETURNING id""",
            user_id, service_type, operation, plan_id, traffic_mb,
            _to_db_utc(current_period_end), error[:1000],
        )


# ====================================================================================
# PAYMENTS
# ====================================================================================

async def create_payment(
    order_id: str,
    username: str,
    amount: Decimal,
    status: str,
    payment_type: str,
    conn: Optional[asyncpg.Connection] = None,
) -> Dict[str, Any]:
    async with _connection(conn) as c:
        row = await c.fetchrow(
            """INSERT INTO payments (order_id, username, amount, status, payment_type)
               VALUES ($1, $2, $3, $4, $5)
               RETURNING *""",
            order_id, username, amount, status, payment_type,
        )
    return dict(row)


async def get_payment(order_id: str, conn: Optional[asyncpg.Connection] = None) -> Optional[Dict[str, Any]]:
    async with _connection(conn) as c:
        row = await c.fetchrow("SELECT * FROM payments WHERE order_id = $1", order_id)
    return dict(row) if row else None


async def get_payment_for_update(order_id: str, conn: asyncpg.Connection) -> Optional[Dict[str, Any]]:
    """
    Read and row-lock a payment. Must be called inside `transaction()`.

    Concurrent deliveries for the same order wait here until the first commits.
    """
    row = await conn.fetchrow("SELECT * FROM payments WHERE order_id = $1 FOR UPDATE", order_id)
    return dict(row) if row else None


async def update_payment_from_webhook(
    order_id: str,
    status: str,
    amount: Decimal,
    network: Optional[str],
    payer_currency: Optional[str],
    conn: asyncpg.Connection,
) -> Dict[str, Any]:
    row = await conn.fetchrow(
        """UPDATE payments
           SET status = $2, amount = $3, network = $4, payer_currency = $5,
               updated_at = (NOW() AT TIME ZONE 'utc')
           WHERE order_id = $1
           RETURNING *""",
        order_id, status, amount, network, payer_currency,
    )
    if row is None:
        raise LookupError(f"Payment not found: order_id={order_id}")
    return dict(row)


# ====================================================================================
# BALANCE LEDGER
# ====================================================================================

async def increase_balance(
    username: str,
    amount: Decimal,
    source: str,
    reference: str,
    conn: asyncpg.Connection,
) -> Optional[Decimal]:
    """
    Atomically credit a user's balance and write the ledger row.

    (source, reference) is unique, so the same payment can never be credited twice
    even if a caller bypasses the status guard.

    Returns:
        New balance, or None when (source, reference) was already credited

    Raises:
        LookupError: user does not exist
    """
    if amount <= 0:
        raise ValueError(f"Invalid amount for increase_balance: {amount}")

    ledger_id = await conn.fetchval(
        """INSERT INTO balance_transactions (username, amount, source, reference)
           VALUES ($1, $2, $3, $4)
           ON CONFLICT (source, reference) DO NOTHING
           RETURNING id""",
        username, amount, source, reference,
    )
    if ledger_id is None:
        logger.warning(f"BALANCE_ALREADY_CREDITED user={username} source={source} reference={reference}")
        return None
    new_balance = await conn.fetchval(
        "UPDATE users SET balance = balance + $1 WHERE username = $2 RETURNING balance",
        amount, username,
    )
    if new_balance is None:
        raise LookupError(f"User not found: username={username}")

    logger.info(f"BALANCE_INCREASED user={username} amount={amount} source={source} reference={reference}")
    return new_balance
