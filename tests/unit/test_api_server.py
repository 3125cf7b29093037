"""
Unit tests for the HTTP API.
"""

import asyncio

import pytest
from fastapi.testclient import TestClient

from observer.api_server import create_app
from observer.config import ObserverConfig
from observer.indexer.coordinator import ObserverService
from observer.ledger.memory import InMemoryLedger


CONTRACT = "0x9fe46736679d2d9a65f0992f2272de9f3c7fa6e0"
M1 = "0x" + "11" * 20
S1 = "0x" + "22" * 20


@pytest.fixture
def service(store):
    ledger = InMemoryLedger(contract_address=CONTRACT)
    ledger.emit(ledger.participant_registered(M1, "Maker", 0))
    ledger.emit(ledger.participant_registered(S1, "Supplier", 1))
    ledger.mine_block()
    ledger.emit(ledger.item_created(creator=M1, barcode="B1", volume=100, name="Coffee"))
    ledger.mine_block()
    ledger.emit(ledger.item_transferred("B1", seller=M1, buyer=S1, volume=40))
    ledger.mine_block()

    service = ObserverService(
        ObserverConfig(contract_addresses=[CONTRACT]),
        ledger=ledger,
        store=store
    )
    asyncio.run(service.scanner.backfill())
    return service


@pytest.fixture
def client(service):
    return TestClient(create_app(service))


class TestApiServer:
    """Test read endpoints."""

    def test_health(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["cursor"] == 3
        assert body["caught_up"] is True

    def test_participants(self, client):
        response = client.get("/api/participants")
        assert [p["name"] for p in response.json()] == ["Maker", "Supplier"]

        assert client.get(f"/api/participants/{S1}").json()["role"] == "Supplier"
        assert client.get("/api/participants/0x" + "ff" * 20).status_code == 404

    def test_inventory(self, client):
        body = client.get(f"/api/participants/{S1}/inventory").json()
        assert body["inventory"][0]["volume"] == 40

        body = client.get(f"/api/participants/{S1}/inventory", params={"block": 2}).json()
        assert body["as_of_block"] == 2
        assert body["inventory"] == []

    def test_inventory_rejects_negative_block(self, client):
        response = client.get(f"/api/participants/{S1}/inventory", params={"block": -1})
        assert response.status_code == 422

    def test_item_and_history(self, client):
        assert client.get("/api/items/B1").json()["name"] == "Coffee"
        assert client.get("/api/items/NOPE").status_code == 404

        body = client.get("/api/items/B1/history").json()
        assert body["count"] == 2
        assert [h["block_height"] for h in body["history"]] == [2, 3]

    def test_transaction_proof(self, client, service):
        tx_ref = service.ledger.tx_refs(3)[0]
        response = client.get(
            "/api/transactions/proof", params={"block_number": 3, "tx_ref": tx_ref}
        )
        assert response.status_code == 200
        body = response.json()
        assert body["block_hash"] == service.store.get_block(3).hash
        assert len(body["events"]) == 1

    def test_transaction_proof_not_found(self, client):
        response = client.get(
            "/api/transactions/proof", params={"block_number": 3, "tx_ref": "0xmissing"}
        )
        assert response.status_code == 404

    def test_audit_trail(self, client):
        body = client.get("/api/audit/items/B1").json()
        assert body["total_transactions"] == 2
        assert body["volume_in_circulation"] == 100
        assert client.get("/api/audit/items/NOPE").status_code == 404

    def test_stats(self, client):
        body = client.get("/api/stats").json()
        assert body["total_participants"] == 2
        assert body["total_items"] == 1
        assert body["total_transactions"] == 2
        assert body["active_participants"] == 2
        assert body["indexer"]["cursor"] == 3
