"""
Tests for the ledger HTTP API.

Every response body on failure is {"message": ...}.
"""

import pytest
from fastapi.testclient import TestClient

from supplychain.config import LedgerConfig, LinkScheme
from supplychain.core import Hasher, LedgerService
from supplychain.main import create_app


APPLES = {"productId": "P1001", "description": "Organic Apples", "owner": "Farm Co."}


@pytest.fixture
def ledger():
    return LedgerService()


@pytest.fixture
def client(ledger):
    return TestClient(create_app(config=LedgerConfig(), ledger=ledger))


class TestHealth:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "OK"
        assert body["timestamp"].endswith("Z")

    def test_ledger_health(self, client):
        client.post("/addProduct", json=APPLES)
        response = client.get("/health/ledger")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["chain_links"]["valid"] is True
        assert body["checks"]["chain_links"]["product_count"] == 1

    def test_ledger_health_unhealthy(self):
        class BrokenLedger(LedgerService):
            def verify_links(self):
                return False

        client = TestClient(create_app(config=LedgerConfig(), ledger=BrokenLedger()))
        response = client.get("/health/ledger")
        assert response.status_code == 503
        assert response.json()["message"] == "Ledger unhealthy"

    def test_metrics(self, client):
        client.post("/addProduct", json=APPLES)
        response = client.get("/metrics")
        assert response.status_code == 200
        assert response.json()["appends_total"] >= 1

    def test_request_id_echoed(self, client):
        response = client.get("/health", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"


class TestAddProduct:

    def test_first_block(self, client):
        response = client.post("/addProduct", json=APPLES)
        assert response.status_code == 201
        body = response.json()
        assert body["message"] == "Block added"
        block = body["block"]
        assert block["index"] == 0
        assert block["previousLinkValue"] == "0"
        assert block["data"]["productId"] == "P1001"
        assert block["data"]["owner"] == "Farm Co."
        assert block["linkValue"].endswith("-0")

    def test_link_value_matches_fields(self, client):
        block = client.post("/addProduct", json=APPLES).json()["block"]
        expected = Hasher.link_value(
            0,
            block["timestamp"],
            {"productId": "P1001", "description": "Organic Apples", "owner": "Farm Co."},
            "0",
        )
        assert block["linkValue"] == expected

    def test_second_block_links_to_first(self, client):
        first = client.post("/addProduct", json=APPLES).json()["block"]
        second = client.post("/addProduct", json={**APPLES, "productId": "P1002"}).json()["block"]
        assert second["index"] == 1
        assert second["previousLinkValue"] == first["linkValue"]

    def test_duplicate(self, client):
        client.post("/addProduct", json=APPLES)
        response = client.post("/addProduct", json=APPLES)
        assert response.status_code == 400
        assert response.json() == {"message": "Product ID already exists: P1001"}
        assert len(client.get("/chain").json()) == 1

    @pytest.mark.parametrize("missing", ["productId", "description", "owner"])
    def test_missing_field(self, client, missing):
        body = {k: v for k, v in APPLES.items() if k != missing}
        response = client.post("/addProduct", json=body)
        assert response.status_code == 400
        assert response.json() == {"message": f"Missing required field: {missing}"}

    def test_empty_field(self, client):
        response = client.post("/addProduct", json={**APPLES, "owner": ""})
        assert response.status_code == 400
        assert response.json()["message"] == "Missing required field: owner"

    def test_wrong_type(self, client):
        response = client.post("/addProduct", json={**APPLES, "productId": 1001})
        assert response.status_code == 400
        assert response.json()["message"] == "Invalid request body"

    def test_malformed_json(self, client):
        response = client.post(
            "/addProduct",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )
        assert response.status_code == 400
        assert response.json()["message"] == "Invalid request body"

    def test_wallet_address(self, client):
        response = client.post("/addProduct", json={**APPLES, "walletAddress": "0xabc"})
        assert response.json()["block"]["data"]["walletAddress"] == "0xabc"

    def test_null_wallet_address(self, client):
        response = client.post("/addProduct", json={**APPLES, "walletAddress": None})
        assert response.status_code == 201
        block = response.json()["block"]
        assert block["data"]["walletAddress"] is None
        assert "walletAddress" not in block["linkValue"]
        expected = Hasher.link_value(
            0,
            block["timestamp"],
            {"productId": "P1001", "description": "Organic Apples", "owner": "Farm Co."},
            "0",
        )
        assert block["linkValue"] == expected

    def test_sha256_scheme(self):
        ledger = LedgerService(link_scheme=LinkScheme.SHA256)
        client = TestClient(create_app(config=LedgerConfig(), ledger=ledger))
        block = client.post("/addProduct", json=APPLES).json()["block"]
        assert len(block["linkValue"]) == 64


class TestAddEvent:

    @pytest.fixture
    def seeded(self, client):
        client.post("/addProduct", json=APPLES)
        return client

    def test_event_added(self, seeded):
        response = seeded.post("/addEvent", json={"productId": "P1001", "eventType": "Shipment"})
        assert response.status_code == 201
        body = response.json()
        assert body["message"] == "Event added"
        assert body["event"]["productId"] == "P1001"
        assert body["event"]["eventType"] == "Shipment"
        assert body["event"]["timestamp"].endswith("Z")

        events = seeded.get("/events").json()
        assert len(events) == 1
        assert events[0]["eventType"] == "Shipment"

    def test_event_with_key_value(self, seeded):
        response = seeded.post("/addEvent", json={
            "productId": "P1001",
            "eventType": "QualityCheck",
            "key": "grade",
            "value": "A",
        })
        event = response.json()["event"]
        assert (event["key"], event["value"]) == ("grade", "A")

    def test_unknown_product(self, seeded):
        response = seeded.post("/addEvent", json={"productId": "P9999", "eventType": "Shipment"})
        assert response.status_code == 404
        assert response.json() == {"message": "Product not found: P9999"}
        assert seeded.get("/events").json() == []

    def test_missing_event_type(self, seeded):
        response = seeded.post("/addEvent", json={"productId": "P1001"})
        assert response.status_code == 400
        assert response.json() == {"message": "Missing required field: eventType"}

    def test_missing_product_id(self, seeded):
        response = seeded.post("/addEvent", json={"eventType": "Shipment"})
        assert response.status_code == 400
        assert response.json() == {"message": "Missing required field: productId"}


class TestQueries:

    def test_empty(self, client):
        assert client.get("/chain").json() == []
        assert client.get("/events").json() == []

    def test_chain_order(self, client):
        for product_id in ("P1", "P2", "P3"):
            client.post("/addProduct", json={**APPLES, "productId": product_id})
        chain = client.get("/chain").json()
        assert [b["data"]["productId"] for b in chain] == ["P1", "P2", "P3"]
        assert [b["index"] for b in chain] == [0, 1, 2]

    def test_listing_is_idempotent(self, client):
        client.post("/addProduct", json=APPLES)
        client.post("/addEvent", json={"productId": "P1001", "eventType": "Shipment"})
        assert client.get("/chain").json() == client.get("/chain").json()
        assert client.get("/events").json() == client.get("/events").json()

    def test_product_detail(self, client):
        client.post("/addProduct", json=APPLES)
        client.post("/addEvent", json={"productId": "P1001", "eventType": "Shipment"})
        response = client.get("/chain/P1001")
        assert response.status_code == 200
        body = response.json()
        assert body["block"]["data"]["productId"] == "P1001"
        assert [e["eventType"] for e in body["events"]] == ["Shipment"]

    def test_product_detail_unknown(self, client):
        response = client.get("/chain/P9999")
        assert response.status_code == 404
        assert response.json() == {"message": "Product not found: P9999"}


class TestErrors:

    def test_unexpected_error_is_500(self):
        class FailingLedger(LedgerService):
            def list_products(self):
                raise RuntimeError("store exploded")

        app = create_app(config=LedgerConfig(), ledger=FailingLedger())
        client = TestClient(app, raise_server_exceptions=False)
        response = client.get("/chain")
        assert response.status_code == 500
        assert response.json() == {"message": "Server error"}


class TestLifespan:

    def test_auto_seed(self, ledger):
        app = create_app(config=LedgerConfig(auto_seed=True), ledger=ledger)
        with TestClient(app) as client:
            chain = client.get("/chain").json()
        assert [b["data"]["productId"] for b in chain] == ["P1001", "P1002", "P1003"]

    def test_no_seed_by_default(self, ledger):
        with TestClient(create_app(config=LedgerConfig(), ledger=ledger)) as client:
            assert client.get("/chain").json() == []

    def test_cors_origin_allowed(self, client):
        response = client.get("/chain", headers={"Origin": "http://localhost:5173"})
        assert response.headers["access-control-allow-origin"] == "http://localhost:5173"
