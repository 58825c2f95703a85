"""
Unit tests for provisioning service layer.

Tests focus on business logic:
- Create / extend / ISP replace decisions
- GB -> MB conversion
- Serialization of concurrent purchases
- Upstream failure leaves no local trace
- Inconsistency recording after a successful upstream side effect
"""
import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import pytest

import lightning_api
from app.core.redis_lock import LockAcquireTimeout
from app.services.provisioning.exceptions import (
    InvalidPurchaseRequestError,
    PlanNotFoundError,
    ProvisioningInconsistencyError,
    ProvisioningUpstreamError,
    PurchaseInProgressError,
)
from app.services.provisioning.service import SubscriptionProvisioner, get_bandwidth
from geolocation import GeoLocationError, StaticGeoLocation


@pytest.fixture
def provisioner(static_geolocation):
    return SubscriptionProvisioner(static_geolocation, retry_base_delay=0)


@pytest.fixture
def upstream(expiration):
    """Patched Lightning client functions"""
    with patch.object(lightning_api, "create_residential_plan", AsyncMock(
        return_value=lightning_api.CreatedPlan(plan_id="res-1")
    )) as create_residential, patch.object(lightning_api, "create_isp_plan", AsyncMock(
        return_value=lightning_api.CreatedPlan(plan_id="isp-1")
    )) as create_isp, patch.object(lightning_api, "extend_plan", AsyncMock(
        return_value={"status": "ok"}
    )) as extend, patch.object(lightning_api, "read_plan_info", AsyncMock(
        side_effect=lambda plan_id: lightning_api.PlanInfo(plan_id=plan_id, expiration_date=expiration)
    )) as read_info:
        yield {
            "create_residential": create_residential,
            "create_isp": create_isp,
            "extend": extend,
            "read_info": read_info,
        }


class TestResidentialPurchase:
    """Tests for the residential create/extend paths"""

    @pytest.mark.asyncio
    async def test_fresh_purchase_converts_gb_to_mb(self, provisioner, fake_db, upstream, expiration):
        """traffic=5 on a fresh subscription stores 5000 MB"""
        with patch('app.services.provisioning.service.database', fake_db):
            result = await provisioner.purchase(42, 5, "residential")

        assert result.plan_id == "res-1"
        assert result.action == "created"
        row = fake_db.subscriptions[(42, "residential")]
        assert row["traffic_mb"] == 5000
        assert row["plan_id"] == "res-1"
        assert row["current_period_end"] == expiration
        upstream["create_residential"].assert_awaited_once_with(5)
        upstream["read_info"].assert_awaited_once_with("res-1")

    @pytest.mark.asyncio
    async def test_float_whole_number_accepted(self, provisioner, fake_db, upstream):
        """2.0 GB is a whole number and is sold as 2 GB"""
        with patch('app.services.provisioning.service.database', fake_db):
            await provisioner.purchase(42, 2.0, "residential")

        assert fake_db.subscriptions[(42, "residential")]["traffic_mb"] == 2000
        upstream["create_residential"].assert_awaited_once_with(2)

    @pytest.mark.asyncio
    async def test_extend_accumulates(self, provisioner, fake_db, upstream, expiration):
        """3000 MB + 2 GB ends at 5000 MB with a refreshed period end"""
        old_end = datetime(2026, 1, 1, tzinfo=timezone.utc)
        fake_db.add_subscription(42, "residential", "res-existing", 3000, old_end)

        with patch('app.services.provisioning.service.database', fake_db):
            result = await provisioner.purchase(42, 2, "residential")

        assert result.plan_id == "res-existing"
        assert result.action == "extended"
        row = fake_db.subscriptions[(42, "residential")]
        assert row["traffic_mb"] == 5000
        assert row["current_period_end"] == expiration
        upstream["extend"].assert_awaited_once_with("res-existing", 2)
        upstream["create_residential"].assert_not_awaited()

    @pytest.mark.asyncio
    async def test_repeated_purchases_keep_single_plan(self, provisioner, fake_db, upstream):
        """Only the first purchase creates a plan; the rest extend it"""
        with patch('app.services.provisioning.service.database', fake_db):
            for _ in range(3):
                result = await provisioner.purchase(42, 1, "residential")

        assert result.plan_id == "res-1"
        assert len(fake_db.subscriptions) == 1
        assert fake_db.subscriptions[(42, "residential")]["traffic_mb"] == 3000
        assert upstream["create_residential"].await_count == 1
        assert upstream["extend"].await_count == 2

    @pytest.mark.asyncio
    async def test_concurrent_purchases_create_one_row(self, provisioner, fake_db, upstream):
        """Two simultaneous purchases for a new pair: one create, one extend"""
        async def slow_create(bandwidth_gb):
            await asyncio.sleep(0.05)
            return lightning_api.CreatedPlan(plan_id="res-1")

        upstream["create_residential"].side_effect = slow_create

        with patch('app.services.provisioning.service.database', fake_db):
            results = await asyncio.gather(
                provisioner.purchase(42, 1, "residential"),
                provisioner.purchase(42, 1, "residential"),
            )

        assert {r.plan_id for r in results} == {"res-1"}
        assert sorted(r.action for r in results) == ["created", "extended"]
        assert len(fake_db.subscriptions) == 1
        assert fake_db.subscriptions[(42, "residential")]["traffic_mb"] == 2000
        assert upstream["create_residential"].await_count == 1

    @pytest.mark.asyncio
    async def test_other_users_are_independent(self, provisioner, fake_db, upstream):
        """Different users get their own rows"""
        with patch('app.services.provisioning.service.database', fake_db):
            await asyncio.gather(
                provisioner.purchase(1, 1, "residential"),
                provisioner.purchase(2, 1, "residential"),
            )

        assert set(fake_db.subscriptions) == {(1, "residential"), (2, "residential")}


class TestIspPurchase:
    """Tests for the ISP create/replace paths"""

    @pytest.mark.asyncio
    async def test_fresh_isp_uses_geolocation(self, provisioner, fake_db, upstream):
        """ISP plans are created for the resolved IP and region"""
        with patch('app.services.provisioning.service.database', fake_db):
            result = await provisioner.purchase(7, 3, "isp", client_ip="198.51.100.1")

        assert result.plan_id == "isp-1"
        upstream["create_isp"].assert_awaited_once_with("203.0.113.7", "us")
        row = fake_db.subscriptions[(7, "isp")]
        assert row["traffic_mb"] == 3000
        assert row["region"] == "us"
        assert row["ip_number"] == "203.0.113.7"

    @pytest.mark.asyncio
    async def test_existing_isp_replaces_plan_in_place(self, provisioner, fake_db, upstream, expiration):
        """A new ISP plan replaces plan_id on the same row and traffic accumulates"""
        fake_db.add_subscription(7, "isp", "isp-old", 1000, datetime(2026, 1, 1, tzinfo=timezone.utc))
        upstream["create_isp"].return_value = lightning_api.CreatedPlan(plan_id="isp-new")

        with patch('app.services.provisioning.service.database', fake_db):
            result = await provisioner.purchase(7, 2, "isp")

        assert result.plan_id == "isp-new"
        assert result.action == "replaced"
        assert len(fake_db.subscriptions) == 1
        row = fake_db.subscriptions[(7, "isp")]
        assert row["plan_id"] == "isp-new"
        assert row["traffic_mb"] == 3000
        assert row["current_period_end"] == expiration
        upstream["extend"].assert_not_awaited()

    @pytest.mark.asyncio
    async def test_geolocation_failure_is_upstream_error(self, fake_db, upstream):
        """No location, no plan, no row"""
        class FailingGeo(StaticGeoLocation):
            async def lookup(self, client_ip=None):
                raise GeoLocationError("Could not determine region")

        provisioner = SubscriptionProvisioner(FailingGeo("0.0.0.0", "x"), retry_base_delay=0)
        with patch('app.services.provisioning.service.database', fake_db):
            with pytest.raises(ProvisioningUpstreamError):
                await provisioner.purchase(7, 1, "isp")

        upstream["create_isp"].assert_not_awaited()
        assert fake_db.subscriptions == {}


class TestPurchaseValidation:
    """Invalid requests are rejected before any side effect"""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("traffic,service_type", [
        (0, "residential"),
        (-1, "residential"),
        (1.5, "residential"),
        ("5", "residential"),
        (None, "residential"),
        (True, "residential"),
        (10_001, "residential"),
        (5, "datacenter"),
        (5, None),
    ])
    async def test_invalid_request(self, provisioner, fake_db, upstream, traffic, service_type):
        with patch('app.services.provisioning.service.database', fake_db):
            with pytest.raises(InvalidPurchaseRequestError):
                await provisioner.purchase(42, traffic, service_type)

        upstream["create_residential"].assert_not_awaited()
        assert fake_db.subscriptions == {}

    @pytest.mark.asyncio
    async def test_lock_timeout_is_in_progress(self, provisioner, fake_db, upstream):
        """A held lock rejects the purchase without upstream calls"""
        @asynccontextmanager
        async def busy_lock(user_id, service_type):
            raise LockAcquireTimeout("lock:test")
            yield

        with patch('app.services.provisioning.service.database', fake_db), \
                patch('app.services.provisioning.service.provisioning_lock', busy_lock):
            with pytest.raises(PurchaseInProgressError):
                await provisioner.purchase(42, 1, "residential")

        upstream["create_residential"].assert_not_awaited()


class TestUpstreamFailures:
    """Upstream failures abort before any local write"""

    @pytest.mark.asyncio
    async def test_provider_error_on_create_writes_nothing(self, provisioner, fake_db, upstream):
        upstream["create_residential"].side_effect = lightning_api.ProviderError(
            "Lightning returned status 500", status_code=500, context={"response": "internal"}
        )

        with patch('app.services.provisioning.service.database', fake_db):
            with pytest.raises(ProvisioningUpstreamError) as exc_info:
                await provisioner.purchase(42, 5, "residential")

        assert exc_info.value.code == "purchase_failed"
        assert exc_info.value.message == "Could not complete purchase"
        assert fake_db.subscriptions == {}
        upstream["create_residential"].assert_awaited_once()

    @pytest.mark.asyncio
    async def test_extend_failure_keeps_row_unchanged(self, provisioner, fake_db, upstream):
        fake_db.add_subscription(42, "residential", "res-existing", 3000)
        upstream["extend"].side_effect = lightning_api.ProviderError("bad", status_code=400)

        with patch('app.services.provisioning.service.database', fake_db):
            with pytest.raises(ProvisioningUpstreamError):
                await provisioner.purchase(42, 2, "residential")

        assert fake_db.subscriptions[(42, "residential")]["traffic_mb"] == 3000

    @pytest.mark.asyncio
    async def test_unsent_request_is_retried_once(self, provisioner, fake_db, upstream):
        """Connect failure: the request never reached the provider, one retry"""
        upstream["create_residential"].side_effect = [
            lightning_api.NetworkError("refused", request_sent=False),
            lightning_api.CreatedPlan(plan_id="res-1"),
        ]

        with patch('app.services.provisioning.service.database', fake_db):
            result = await provisioner.purchase(42, 1, "residential")

        assert result.plan_id == "res-1"
        assert upstream["create_residential"].await_count == 2

    @pytest.mark.asyncio
    async def test_sent_request_is_not_retried(self, provisioner, fake_db, upstream):
        """Read timeout: the provider may have applied it, no second create"""
        upstream["create_residential"].side_effect = lightning_api.NetworkError("timeout", request_sent=True)

        with patch('app.services.provisioning.service.database', fake_db):
            with pytest.raises(ProvisioningUpstreamError):
                await provisioner.purchase(42, 1, "residential")

        assert upstream["create_residential"].await_count == 1
        assert fake_db.subscriptions == {}

    @pytest.mark.asyncio
    async def test_expiration_read_failure_still_persists(self, provisioner, fake_db, upstream):
        """The plan exists upstream; the row is written without a period end"""
        upstream["read_info"].side_effect = lightning_api.ProviderError("bad", status_code=502)

        with patch('app.services.provisioning.service.database', fake_db):
            result = await provisioner.purchase(42, 1, "residential")

        assert result.current_period_end is None
        assert fake_db.subscriptions[(42, "residential")]["plan_id"] == "res-1"
        assert upstream["read_info"].await_count == 1

    @pytest.mark.asyncio
    async def test_expiration_read_failure_keeps_stored_period_on_extend(self, provisioner, fake_db, upstream):
        old_end = datetime(2026, 1, 1, tzinfo=timezone.utc)
        fake_db.add_subscription(42, "residential", "res-existing", 3000, old_end)
        upstream["read_info"].side_effect = lightning_api.NetworkError("timeout", request_sent=True)

        with patch('app.services.provisioning.service.database', fake_db):
            await provisioner.purchase(42, 2, "residential")

        row = fake_db.subscriptions[(42, "residential")]
        assert row["traffic_mb"] == 5000
        assert row["current_period_end"] == old_end
        # read-only call: retried once on any network error
        assert upstream["read_info"].await_count == 2


class TestInconsistencyRecording:
    """Upstream succeeded, local write failed"""

    @pytest.mark.asyncio
    async def test_failed_write_records_incident(self, provisioner, fake_db, upstream):
        fake_db.create_subscription = AsyncMock(side_effect=RuntimeError("disk full"))

        with patch('app.services.provisioning.service.database', fake_db):
            with pytest.raises(ProvisioningInconsistencyError) as exc_info:
                await provisioner.purchase(42, 5, "residential")

        assert exc_info.value.code == "purchase_inconsistent"
        assert exc_info.value.incident_id == 1
        incident = fake_db.incidents[0]
        assert incident["plan_id"] == "res-1"
        assert incident["traffic_mb"] == 5000
        assert incident["operation"] == "created"
        assert "disk full" in incident["error"]

    @pytest.mark.asyncio
    async def test_transient_write_failure_is_retried(self, provisioner, fake_db, upstream):
        """A dropped DB connection gets one more attempt before an incident is recorded"""
        real_add = fake_db.add_subscription_traffic
        fake_db.add_subscription(42, "residential", "res-existing", 3000)

        async def flaky(*args, **kwargs):
            if flaky.calls == 0:
                flaky.calls += 1
                raise ConnectionError("reset")
            return await real_add(*args, **kwargs)
        flaky.calls = 0
        fake_db.add_subscription_traffic = flaky

        with patch('app.services.provisioning.service.database', fake_db):
            await provisioner.purchase(42, 2, "residential")

        assert fake_db.subscriptions[(42, "residential")]["traffic_mb"] == 5000
        assert fake_db.incidents == []

    @pytest.mark.asyncio
    async def test_conflicting_row_records_incident(self, provisioner, fake_db, upstream):
        """A row that appears between read and insert is not silently dropped"""
        fake_db.create_subscription = AsyncMock(return_value=None)

        with patch('app.services.provisioning.service.database', fake_db):
            with pytest.raises(ProvisioningInconsistencyError):
                await provisioner.purchase(42, 1, "residential")

        assert len(fake_db.incidents) == 1

    @pytest.mark.asyncio
    async def test_unrecorded_incident_still_raises(self, provisioner, fake_db, upstream):
        fake_db.create_subscription = AsyncMock(side_effect=RuntimeError("db down"))
        fake_db.record_provisioning_incident = AsyncMock(side_effect=RuntimeError("db down"))

        with patch('app.services.provisioning.service.database', fake_db):
            with pytest.raises(ProvisioningInconsistencyError) as exc_info:
                await provisioner.purchase(42, 1, "residential")

        assert exc_info.value.incident_id is None


class TestGetBandwidth:
    """Tests for get_bandwidth function"""

    @pytest.mark.asyncio
    async def test_returns_raw_payload(self, fake_db):
        fake_db.add_subscription(42, "residential", "res-1", 5000)
        payload = {"bandwidthLeft": 1234, "unit": "MB"}
        with patch('app.services.provisioning.service.database', fake_db), \
                patch.object(lightning_api, "read_residential_bandwidth", AsyncMock(return_value=payload)):
            assert await get_bandwidth(42, "res-1") == payload

    @pytest.mark.asyncio
    async def test_returns_none_on_upstream_failure(self, fake_db):
        fake_db.add_subscription(42, "residential", "res-1", 5000)
        with patch('app.services.provisioning.service.database', fake_db), \
                patch.object(lightning_api, "read_residential_bandwidth", AsyncMock(
                    side_effect=lightning_api.ProviderError("bad", status_code=404)
                )):
            assert await get_bandwidth(42, "res-1") is None

    @pytest.mark.asyncio
    async def test_foreign_plan_is_not_found(self, fake_db):
        fake_db.add_subscription(7, "residential", "res-1", 5000)
        read = AsyncMock(return_value={"bandwidthLeft": 1})
        with patch('app.services.provisioning.service.database', fake_db), \
                patch.object(lightning_api, "read_residential_bandwidth", read):
            with pytest.raises(PlanNotFoundError):
                await get_bandwidth(42, "res-1")

        read.assert_not_awaited()
