"""
Tests for the HTTP API, using in-memory components.
"""

import pytest
from fastapi.testclient import TestClient

from pudeez.core import ContractMisconfigured, PollerConfig
from pudeez.db.store import InMemoryEscrowStore, LockTimeoutError
from pudeez.main import create_app
from pudeez.runtime import build_runtime
from pudeez.schemas import ChainEventKind

from conftest import APP_ID, BUYER, BUYER_STEAM, CLASS_ID, SELLER_STEAM


@pytest.fixture
def runtime(store, oracle, source):
    return build_runtime(
        store=store,
        oracle=oracle,
        source=source,
        poller_config=PollerConfig(enabled=False),
    )


@pytest.fixture
def client(runtime):
    """Create a test client; the context manager runs startup and shutdown."""
    with TestClient(create_app(runtime)) as test_client:
        yield test_client


@pytest.fixture
def deposited(runtime, linked, seller_items, make_event):
    """Escrow E1 initialized with a baseline and paid."""
    reconciler = runtime.service.reconciler
    reconciler.apply_event(make_event(ChainEventKind.ESCROW_INITIALIZED, "E1"))
    reconciler.apply_event(make_event(ChainEventKind.PAYMENT_DEPOSITED, "E1"))
    return "E1"


class TestEscrowQueries:

    def test_get_escrow(self, client, deposited):
        response = client.get("/escrows/E1")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "deposited"
        assert body["price_in_base_unit"] == 2_500_000_000
        assert body["item_type_key"] == f"{APP_ID}/{CLASS_ID}/0"
        assert not body["baseline_missing"]

    def test_unknown_escrow_is_404(self, client):
        assert client.get("/escrows/missing").status_code == 404

    def test_list_by_status(self, client, deposited):
        assert [e["escrow_id"] for e in client.get("/escrows", params={"status": "deposited"}).json()] == ["E1"]
        assert client.get("/escrows", params={"status": "completed"}).json() == []

    def test_list_by_status_rejects_unknown_status(self, client):
        assert client.get("/escrows", params={"status": "shipped"}).status_code == 422

    def test_list_for_account(self, client, deposited):
        assert len(client.get(f"/accounts/{BUYER}/escrows").json()) == 1
        assert len(client.get(f"/accounts/{SELLER_STEAM}/escrows").json()) == 1
        assert client.get("/accounts/0xnobody/escrows").json() == []


class TestVerify:

    def test_transferred(self, client, oracle, deposited):
        oracle.transfer_item(SELLER_STEAM, BUYER_STEAM, APP_ID, "asset-1")

        response = client.post("/escrows/E1/verify")

        assert response.status_code == 200
        body = response.json()
        assert body["transferred"]
        assert body["seller_decrease"] == 1
        assert body["buyer_increase"] == 1

    def test_not_yet_transferred(self, client, deposited):
        response = client.post("/escrows/E1/verify")
        assert response.status_code == 200
        assert not response.json()["transferred"]

    def test_wrong_state_is_409(self, client, runtime, make_event, linked, seller_items):
        runtime.service.reconciler.apply_event(make_event(ChainEventKind.ESCROW_INITIALIZED, "E2"))
        assert client.post("/escrows/E2/verify").status_code == 409

    def test_unknown_is_404(self, client):
        assert client.post("/escrows/nope/verify").status_code == 404

    def test_oracle_down_is_503(self, client, oracle, deposited):
        oracle.set_unavailable()
        response = client.post("/escrows/E1/verify")
        assert response.status_code == 503
        assert response.headers["Retry-After"] == "30"


class TestInventory:

    def test_check_item(self, client, seller_items):
        response = client.get(f"/inventory/{SELLER_STEAM}/{APP_ID}/items/asset-1")
        assert response.status_code == 200
        assert response.json()["held"]

        assert not client.get(f"/inventory/{BUYER_STEAM}/{APP_ID}/items/asset-1").json()["held"]

    def test_count(self, client, seller_items):
        response = client.get(
            f"/inventory/{SELLER_STEAM}/{APP_ID}/count",
            params={"class_id": CLASS_ID},
        )
        assert response.status_code == 200
        assert response.json()["count"] == 5

    def test_unavailable_is_503_not_false(self, client, oracle):
        oracle.set_unavailable()
        response = client.get(f"/inventory/{SELLER_STEAM}/{APP_ID}/items/asset-1")
        assert response.status_code == 503


class TestStoreErrors:

    def test_lock_timeout_is_503(self, oracle, source):
        class BusyStore(InMemoryEscrowStore):
            def list_by_status(self, status):
                raise LockTimeoutError("lock timeout")

        rt = build_runtime(
            store=BusyStore(), oracle=oracle, source=source,
            poller_config=PollerConfig(enabled=False),
        )
        with TestClient(create_app(rt)) as client:
            response = client.get("/escrows", params={"status": "deposited"})

        assert response.status_code == 503
        assert response.headers["Retry-After"] == "2"


class TestSystemEndpoints:

    def test_health(self, client):
        assert client.get("/health").json()["status"] == "healthy"

    def test_health_detailed(self, client):
        response = client.get("/health/detailed")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_health_detailed_reports_misconfigured_contract(self, client, runtime, source):
        source.fail_next(ChainEventKind.PAYMENT_CLAIMED, ContractMisconfigured("Invalid params"))
        runtime.poller.poll_once(ChainEventKind.PAYMENT_CLAIMED)

        response = client.get("/health/detailed")

        assert response.status_code == 503
        assert response.json()["status"] == "unhealthy"

    def test_metrics(self, client, deposited):
        client.get("/escrows/E1")
        body = client.get("/metrics").json()
        assert body["events_applied"] == 2
        assert body["requests_total"] >= 1
        assert "poller" in body
