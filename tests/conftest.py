"""
Pytest configuration and shared fixtures for service layer tests.
"""
import os

# config.py reads the environment at import time
os.environ.setdefault("APP_ENV", "local")
for _var in ("DATABASE_URL", "LIGHTNING_API_KEY", "CRYPTOMUS_API_KEY", "CRYPTOMUS_MERCHANT_ID"):
    os.environ.pop(_var, None)

import asyncio
import copy
import itertools
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

import pytest

import config
from geolocation import StaticGeoLocation


TEST_CRYPTOMUS_API_KEY = "test-cryptomus-key"


class FakeDatabase:
    """
    In-memory stand-in for the repository functions in database.py.

    Mirrors the guarantees the services rely on:
    - UNIQUE (user_id, service_type) on subscriptions
    - row lock on payments held until the transaction ends
    - UNIQUE (source, reference) on the balance ledger, duplicates skipped
    - rollback of payments/balances/ledger when a transaction raises
    """

    def __init__(self):
        self.subscriptions: Dict[Tuple[int, str], Dict[str, Any]] = {}
        self.payments: Dict[str, Dict[str, Any]] = {}
        self.balances: Dict[str, Decimal] = {}
        self.ledger: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.incidents = []
        self.users_by_token: Dict[str, Dict[str, Any]] = {}
        self._ids = itertools.count(1)
        self._row_locks: Dict[str, asyncio.Lock] = {}

    # --- subscriptions -------------------------------------------------------------

    def add_subscription(self, user_id, service_type, plan_id, traffic_mb, current_period_end=None, **extra):
        row = {
            "id": next(self._ids),
            "user_id": user_id,
            "service_type": service_type,
            "provider_id": "lightning",
            "plan_id": plan_id,
            "traffic_mb": traffic_mb,
            "current_period_end": current_period_end,
            "region": extra.get("region"),
            "ip_number": extra.get("ip_number"),
        }
        self.subscriptions[(user_id, service_type)] = row
        return dict(row)

    def _subscription_by_id(self, subscription_id):
        for row in self.subscriptions.values():
            if row["id"] == subscription_id:
                return row
        raise LookupError(f"Subscription not found: id={subscription_id}")

    async def get_subscription(self, user_id, service_type, conn=None):
        await asyncio.sleep(0)
        row = self.subscriptions.get((user_id, service_type))
        return dict(row) if row else None

    async def get_subscription_by_plan_id(self, user_id, plan_id, conn=None):
        await asyncio.sleep(0)
        for row in self.subscriptions.values():
            if row["user_id"] == user_id and row["plan_id"] == plan_id:
                return dict(row)
        return None

    async def create_subscription(self, user_id, service_type, provider_id, plan_id, traffic_mb,
                                  current_period_end, region=None, ip_number=None, conn=None):
        await asyncio.sleep(0)
        if (user_id, service_type) in self.subscriptions:
            return None
        row = self.add_subscription(user_id, service_type, plan_id, traffic_mb, current_period_end,
                                    region=region, ip_number=ip_number)
        self.subscriptions[(user_id, service_type)]["provider_id"] = provider_id
        row["provider_id"] = provider_id
        return row

    async def add_subscription_traffic(self, subscription_id, traffic_mb, current_period_end, conn=None):
        await asyncio.sleep(0)
        row = self._subscription_by_id(subscription_id)
        row["traffic_mb"] += traffic_mb
        if current_period_end is not None:
            row["current_period_end"] = current_period_end
        return dict(row)

    async def replace_subscription_plan(self, subscription_id, plan_id, traffic_mb, current_period_end,
                                        region=None, ip_number=None, conn=None):
        await asyncio.sleep(0)
        row = self._subscription_by_id(subscription_id)
        row["plan_id"] = plan_id
        row["traffic_mb"] += traffic_mb
        row["current_period_end"] = current_period_end
        row["region"] = region or row["region"]
        row["ip_number"] = ip_number or row["ip_number"]
        return dict(row)

    async def record_provisioning_incident(self, user_id, service_type, operation, plan_id, traffic_mb,
                                           current_period_end, error, conn=None):
        incident_id = len(self.incidents) + 1
        self.incidents.append({
            "id": incident_id,
            "user_id": user_id,
            "service_type": service_type,
            "operation": operation,
            "plan_id": plan_id,
            "traffic_mb": traffic_mb,
            "current_period_end": current_period_end,
            "error": error,
        })
        return incident_id

    # --- auth ----------------------------------------------------------------------

    async def get_user_by_access_token(self, token):
        return self.users_by_token.get(token)

    # --- payments ------------------------------------------------------------------

    def add_payment(self, order_id, username, amount, status="pending"):
        self.payments[order_id] = {
            "order_id": order_id,
            "username": username,
            "amount": Decimal(str(amount)),
            "status": status,
            "network": None,
            "payer_currency": None,
            "payment_type": "cryptomus",
        }
        self.balances.setdefault(username, Decimal("0"))

    @asynccontextmanager
    async def transaction(self):
        conn = {"locks": []}
        snapshot = (copy.deepcopy(self.payments), dict(self.balances), dict(self.ledger))
        try:
            yield conn
        except BaseException:
            self.payments, self.balances, self.ledger = snapshot
            raise
        finally:
            for lock in conn["locks"]:
                lock.release()

    async def create_payment(self, order_id, username, amount, status, payment_type, conn=None):
        self.add_payment(order_id, username, amount, status)
        self.payments[order_id]["payment_type"] = payment_type
        return dict(self.payments[order_id])

    async def get_payment(self, order_id, conn=None):
        row = self.payments.get(order_id)
        return dict(row) if row else None

    async def get_payment_for_update(self, order_id, conn):
        lock = self._row_locks.setdefault(order_id, asyncio.Lock())
        await lock.acquire()
        conn["locks"].append(lock)
        row = self.payments.get(order_id)
        return dict(row) if row else None

    async def update_payment_from_webhook(self, order_id, status, amount, network, payer_currency, conn):
        await asyncio.sleep(0)
        row = self.payments[order_id]
        row.update(status=status, amount=amount, network=network, payer_currency=payer_currency)
        return dict(row)

    async def increase_balance(self, username, amount, source, reference, conn):
        await asyncio.sleep(0)
        if amount <= 0:
            raise ValueError(f"Invalid amount for increase_balance: {amount}")
        if (source, reference) in self.ledger:
            return None
        if username not in self.balances:
            raise LookupError(f"User not found: username={username}")
        self.ledger[(source, reference)] = {"username": username, "amount": amount}
        self.balances[username] += amount
        return self.balances[username]


@pytest.fixture
def fake_db():
    """In-memory repository"""
    return FakeDatabase()


@pytest.fixture(autouse=True)
def test_config(monkeypatch):
    """Deterministic configuration: no Redis, test credentials, short lock wait"""
    monkeypatch.setattr(config, "REDIS_URL", "")
    monkeypatch.setattr(config, "LIGHTNING_API_URL", "https://lightning.test/api")
    monkeypatch.setattr(config, "LIGHTNING_API_KEY", "test-lightning-key")
    monkeypatch.setattr(config, "CRYPTOMUS_API_URL", "https://cryptomus.test/v1")
    monkeypatch.setattr(config, "CRYPTOMUS_API_KEY", TEST_CRYPTOMUS_API_KEY)
    monkeypatch.setattr(config, "CRYPTOMUS_MERCHANT_ID", "merchant-123")
    monkeypatch.setattr(config, "CRYPTOMUS_CALLBACK_ROUTE", "https://shop.test/payment/cryptomus-callback")
    monkeypatch.setattr(config, "CRYPTOMUS_RETURN_ROUTE", "https://shop.test/dashboard")
    monkeypatch.setattr(config, "PROVISIONING_LOCK_WAIT", 2)
    return config


@pytest.fixture
def static_geolocation():
    """Fixed egress location for ISP plans"""
    return StaticGeoLocation(ip="203.0.113.7", region="us")


@pytest.fixture
def expiration():
    """Plan expiration returned by the provider"""
    return datetime(2026, 12, 1, 0, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def endpoint_table():
    """Provider/region endpoint data"""
    return {
        "lightning": {
            "default": {
                "location": "Global",
                "http": {"host": "resi.example.net", "port": 9999},
                "socks5": {"host": "resi.example.net", "port": 10000},
            },
            "us": {
                "location": "United States",
                "http": {"host": "us.example.net", "port": 8080},
                "socks5": {"host": "us.example.net", "port": 1080},
            },
        }
    }
