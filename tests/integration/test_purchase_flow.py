"""
Integration tests for the purchase and activation flow.

HTTP app → SubscriptionProvisioner → lightning_api (httpx.MockTransport) → repository.

Tests:
1. Buy then buy again → one upstream plan, traffic accumulates
2. Concurrent buys for a new user → one created row
3. Provider outage → 502, nothing stored
4. Activation returns credentials from plan info
"""
import asyncio
import json
from unittest.mock import patch

import httpx
import pytest
import pytest_asyncio
from aiohttp.test_utils import TestClient, TestServer

import http_server
import lightning_api
from app.services.activation import ProxyActivationFormatter, ProxyActivator
from app.services.provisioning import SubscriptionProvisioner

_RealAsyncClient = httpx.AsyncClient

AUTH = {"Authorization": "Bearer token-1"}


class FakeLightning:
    """Reseller API double keeping plan state"""

    def __init__(self):
        self.plans = {}
        self.fail_with = None

    async def handler(self, request: httpx.Request) -> httpx.Response:
        if self.fail_with is not None:
            return httpx.Response(self.fail_with, json={"error": "maintenance"})
        path = request.url.path
        if path == "/api/getplan/residential":
            await asyncio.sleep(0.01)
            plan_id = f"plan-{len(self.plans) + 1}"
            self.plans[plan_id] = json.loads(request.content)["bandwidth"]
            return httpx.Response(200, json={"PlanID": plan_id})
        if path.startswith("/api/add/"):
            _, _, _, plan_id, gb = path.split("/")
            self.plans[plan_id] += int(gb)
            return httpx.Response(200, json={"status": "ok"})
        if path.startswith("/api/info/"):
            return httpx.Response(200, json={
                "expiration_date": "2026-12-01T00:00:00Z", "user": "lp-user", "pass": "lp-pass",
            })
        return httpx.Response(404)


@pytest.fixture
def lightning():
    fake = FakeLightning()
    with patch.object(
        lightning_api.httpx,
        "AsyncClient",
        lambda **kwargs: _RealAsyncClient(transport=httpx.MockTransport(fake.handler), **kwargs),
    ):
        yield fake


@pytest_asyncio.fixture
async def client(fake_db, static_geolocation, endpoint_table, lightning):
    fake_db.users_by_token["token-1"] = {"id": 1, "username": "alice"}
    app = http_server.create_app(
        SubscriptionProvisioner(static_geolocation, retry_base_delay=0),
        ProxyActivator(ProxyActivationFormatter(endpoint_table)),
        identity_resolver=fake_db.get_user_by_access_token,
    )
    with patch('app.services.provisioning.service.database', fake_db), \
            patch('app.services.activation.service.database', fake_db):
        async with TestClient(TestServer(app)) as test_client:
            yield test_client


class TestPurchaseFlow:

    @pytest.mark.asyncio
    async def test_buy_then_extend(self, client, fake_db, lightning):
        first = await client.post("/lola/buy", json={"traffic": 5, "serviceType": "residential"}, headers=AUTH)
        second = await client.post("/lola/buy", json={"traffic": 2, "serviceType": "residential"}, headers=AUTH)

        assert first.status == 200 and second.status == 200
        assert (await first.json())["planId"] == (await second.json())["planId"] == "plan-1"
        assert lightning.plans == {"plan-1": 7}
        assert fake_db.subscriptions[(1, "residential")]["traffic_mb"] == 7000

    @pytest.mark.asyncio
    async def test_concurrent_buys_create_one_plan(self, client, fake_db, lightning):
        responses = await asyncio.gather(*[
            client.post("/lola/buy", json={"traffic": 1, "serviceType": "residential"}, headers=AUTH)
            for _ in range(3)
        ])

        assert [r.status for r in responses] == [200, 200, 200]
        assert list(lightning.plans) == ["plan-1"]
        assert fake_db.subscriptions[(1, "residential")]["traffic_mb"] == 3000

    @pytest.mark.asyncio
    async def test_provider_outage(self, client, fake_db, lightning):
        lightning.fail_with = 503

        response = await client.post("/lola/buy", json={"traffic": 1, "serviceType": "residential"}, headers=AUTH)
        body = await response.json()

        assert response.status == 502
        assert body == {"error": "purchase_failed", "message": "Could not complete purchase"}
        assert fake_db.subscriptions == {}

    @pytest.mark.asyncio
    async def test_activate_after_purchase(self, client, fake_db, lightning):
        await client.post("/lola/buy", json={"traffic": 1, "serviceType": "residential"}, headers=AUTH)

        response = await client.post(
            "/v1/proxy/activate-proxy",
            json={"provider": "lightning", "service_type": "residential", "region": "us"},
            headers=AUTH,
        )
        body = await response.json()

        assert response.status == 200
        assert body["plan_id"] == "plan-1"
        assert body["login"] == "lp-user"
        assert body["password"] == "lp-pass"
        assert body["session_login"].startswith("lp-user-session-")
