"""
Integration tests for the v1 API endpoints.

WHAT: Threads, messages, offers, purchase, properties and status over HTTP
WHY: Ensure API contract compliance and error-to-status mapping
HOW: FastAPI TestClient with store, stream, chain peer and orchestrator overridden
"""

import pytest
from fastapi.testclient import TestClient

from novaland.api.deps import (
    get_peer,
    get_property_cache,
    get_purchase_orchestrator,
    get_store,
    get_stream,
)
from novaland.chain import ChainTimeoutError
from novaland.main import app
from novaland.services.property_cache import PropertyCache
from novaland.services.purchase_orchestrator import PurchaseOrchestrator
from tests.conftest import BUYER, SELLER, STRANGER


@pytest.fixture
def client(store, stream, peer):
    """TestClient whose dependencies point at the test database and mock chain."""
    cache = PropertyCache(peer)
    orchestrator = PurchaseOrchestrator(store, cache, peer, price_policy="listing")

    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_stream] = lambda: stream
    app.dependency_overrides[get_peer] = lambda: peer
    app.dependency_overrides[get_property_cache] = lambda: cache
    app.dependency_overrides[get_purchase_orchestrator] = lambda: orchestrator
    yield TestClient(app)
    app.dependency_overrides.clear()


def headers(wallet: str) -> dict:
    return {"X-Wallet-Address": wallet}


def open_thread(client, property_id=1) -> dict:
    response = client.post(
        "/api/v1/threads",
        json={"seller_wallet": SELLER, "property_id": property_id},
        headers=headers(BUYER)
    )
    assert response.status_code == 201
    return response.json()


def submit_offer(client, thread_id, price="1.0") -> dict:
    response = client.post(
        f"/api/v1/threads/{thread_id}/offers",
        json={"price": price, "note": "Ready to close"},
        headers=headers(BUYER)
    )
    assert response.status_code == 201
    return response.json()


def accept(client, thread_id, offer_id, wallet=SELLER):
    return client.post(
        f"/api/v1/threads/{thread_id}/offers/{offer_id}/accept",
        headers=headers(wallet)
    )


@pytest.mark.integration
class TestThreadEndpoints:
    """Test conversation endpoints."""

    def test_create_thread(self, client):
        thread = open_thread(client)

        assert thread["buyer_wallet"] == BUYER
        assert thread["seller_wallet"] == SELLER
        assert thread["status"] == "open"

    def test_create_thread_is_idempotent(self, client):
        first = open_thread(client)
        second = open_thread(client)

        assert first["id"] == second["id"]

    def test_create_thread_with_self(self, client):
        response = client.post(
            "/api/v1/threads",
            json={"seller_wallet": BUYER, "property_id": 1},
            headers=headers(BUYER)
        )

        assert response.status_code == 400
        assert response.json()["error"] == "VALIDATION_ERROR"

    def test_missing_wallet_header(self, client):
        response = client.get("/api/v1/threads")

        assert response.status_code == 400
        assert response.json()["error"] == "VALIDATION_ERROR"

    def test_malformed_seller_wallet(self, client):
        response = client.post(
            "/api/v1/threads",
            json={"seller_wallet": "not-a-wallet", "property_id": 1},
            headers=headers(BUYER)
        )
        assert response.status_code == 400

    def test_list_threads_with_titles_and_unread(self, client, store):
        thread = open_thread(client)
        store.insert_message(thread["id"], SELLER, "Hi there")

        response = client.get("/api/v1/threads?role=buyer", headers=headers(BUYER))

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 1
        assert data["threads"][0]["unread_count"] == 1
        assert data["threads"][0]["counterparty_name"] == f"{SELLER[:6]}...{SELLER[-4:]}"

    def test_thread_hidden_from_non_participants(self, client):
        thread = open_thread(client)

        response = client.get(f"/api/v1/threads/{thread['id']}", headers=headers(STRANGER))

        assert response.status_code == 404
        assert response.json()["error"] == "THREAD_NOT_FOUND"

    def test_thread_detail(self, client):
        thread = open_thread(client)
        offer = submit_offer(client, thread["id"])

        response = client.get(f"/api/v1/threads/{thread['id']}", headers=headers(SELLER))

        assert response.status_code == 200
        detail = response.json()
        assert detail["has_pending_offer"] is True
        assert detail["pending_offer_id"] == offer["id"]
        assert detail["purchase_phase"] == "idle"

    def test_messages_and_read_marker(self, client):
        thread = open_thread(client)
        sent = client.post(
            f"/api/v1/threads/{thread['id']}/messages",
            json={"content": "Is parking included?", "client_id": "c-1"},
            headers=headers(BUYER)
        )
        assert sent.status_code == 201
        assert sent.json()["client_id"] == "c-1"

        listed = client.get(f"/api/v1/threads/{thread['id']}/messages", headers=headers(SELLER))
        assert [m["content"] for m in listed.json()["messages"]] == ["Is parking included?"]

        read = client.post(f"/api/v1/threads/{thread['id']}/read", headers=headers(SELLER))
        assert read.json() == {"thread_id": thread["id"], "updated": 1}

    def test_blank_message_rejected(self, client):
        thread = open_thread(client)

        response = client.post(
            f"/api/v1/threads/{thread['id']}/messages",
            json={"content": "   "},
            headers=headers(BUYER)
        )
        assert response.status_code == 400


@pytest.mark.integration
class TestOfferEndpoints:
    """Test offer submission and resolution."""

    def test_submit_offer(self, client):
        thread = open_thread(client)

        offer = submit_offer(client, thread["id"], price="1.25")

        assert offer["type"] == "offer"
        assert offer["status"] == "pending"
        assert offer["price"] == "1.25"

    def test_seller_cannot_offer(self, client):
        thread = open_thread(client)

        response = client.post(
            f"/api/v1/threads/{thread['id']}/offers",
            json={"price": "2"},
            headers=headers(SELLER)
        )

        assert response.status_code == 403
        assert response.json()["error"] == "NOT_BUYER"

    @pytest.mark.parametrize("price", ["abc", "-1", 0, None])
    def test_invalid_price(self, client, price):
        thread = open_thread(client)

        response = client.post(
            f"/api/v1/threads/{thread['id']}/offers",
            json={"price": price},
            headers=headers(BUYER)
        )

        assert response.status_code == 400
        assert response.json()["error"] == "INVALID_PRICE"

    def test_second_pending_offer(self, client):
        thread = open_thread(client)
        submit_offer(client, thread["id"])

        response = client.post(
            f"/api/v1/threads/{thread['id']}/offers",
            json={"price": "1.1"},
            headers=headers(BUYER)
        )

        assert response.status_code == 409
        assert response.json()["error"] == "OFFER_PENDING"

    def test_accept_and_terminal_state(self, client):
        thread = open_thread(client)
        offer = submit_offer(client, thread["id"])

        by_buyer = accept(client, thread["id"], offer["id"], wallet=BUYER)
        assert by_buyer.status_code == 403
        assert by_buyer.json()["error"] == "NOT_SELLER"

        accepted = accept(client, thread["id"], offer["id"])
        assert accepted.status_code == 200
        assert accepted.json()["status"] == "accepted"

        rejected = client.post(
            f"/api/v1/threads/{thread['id']}/offers/{offer['id']}/reject",
            headers=headers(SELLER)
        )
        assert rejected.status_code == 409
        assert rejected.json()["error"] == "NOT_PENDING"

    def test_accept_unknown_offer(self, client):
        thread = open_thread(client)

        response = accept(client, thread["id"], 999)
        assert response.status_code == 404


@pytest.mark.integration
class TestPurchaseEndpoints:
    """Test purchase outcomes and their status codes."""

    def test_purchase_success(self, client, peer):
        thread = open_thread(client)
        offer = submit_offer(client, thread["id"], price="1.0")
        accept(client, thread["id"], offer["id"])

        response = client.post(f"/api/v1/threads/{thread['id']}/purchase", headers=headers(BUYER))

        assert response.status_code == 200
        body = response.json()
        assert body["phase"] == "success"
        assert body["reconciled"] is True
        assert body["amount"] == "1.2"
        assert body["amount_wei"] == "1200000000000000000"
        assert peer.properties[1].owner == BUYER

        detail = client.get(f"/api/v1/threads/{thread['id']}", headers=headers(BUYER)).json()
        assert detail["status"] == "closed"
        assert detail["accepted_offer_id"] is None

    def test_purchase_without_accepted_offer(self, client, peer):
        thread = open_thread(client)
        submit_offer(client, thread["id"])

        response = client.post(f"/api/v1/threads/{thread['id']}/purchase", headers=headers(BUYER))

        assert response.status_code == 409
        assert response.json()["error"] == "NO_ACCEPTED_OFFER"
        assert peer.submissions == []

    def test_purchase_by_seller(self, client):
        thread = open_thread(client)

        response = client.post(f"/api/v1/threads/{thread['id']}/purchase", headers=headers(SELLER))
        assert response.status_code == 403

    def test_purchase_not_listed(self, client, peer):
        peer.add_property(3, owner=SELLER, price="3", is_listed=False)
        thread = open_thread(client, property_id=3)
        offer = submit_offer(client, thread["id"])
        accept(client, thread["id"], offer["id"])

        response = client.post(f"/api/v1/threads/{thread['id']}/purchase", headers=headers(BUYER))

        assert response.status_code == 422
        assert response.json()["error"] == "NOT_LISTED"

    def test_purchase_unconfirmed_then_verified(self, client, peer):
        thread = open_thread(client)
        offer = submit_offer(client, thread["id"])
        accept(client, thread["id"], offer["id"])
        peer.confirm_error = ChainTimeoutError("no receipt")

        pending = client.post(f"/api/v1/threads/{thread['id']}/purchase", headers=headers(BUYER))

        assert pending.status_code == 202
        assert pending.json()["needs_verification"] is True
        assert pending.json()["error"]["error"] == "TX_UNCONFIRMED"

        blocked = client.post(f"/api/v1/threads/{thread['id']}/purchase", headers=headers(BUYER))
        assert blocked.status_code == 202
        assert blocked.json()["error"]["error"] == "NEEDS_VERIFICATION"

        peer.confirm_error = None
        verified = client.post(f"/api/v1/threads/{thread['id']}/purchase/verify", headers=headers(BUYER))

        assert verified.status_code == 200
        assert verified.json()["reconciled"] is True
        assert len(peer.submissions) == 1

    def test_retry_closure_without_settled_purchase(self, client):
        thread = open_thread(client)

        response = client.post(
            f"/api/v1/threads/{thread['id']}/purchase/retry-closure", headers=headers(BUYER)
        )
        assert response.status_code == 400


@pytest.mark.integration
class TestPropertyAndStatusEndpoints:

    def test_get_property(self, client):
        response = client.get("/api/v1/properties/2")

        assert response.status_code == 200
        data = response.json()
        assert data["title"] == "Maple Street Cottage"
        assert data["price"] == "2.5"
        assert data["price_wei"] == "2500000000000000000"

    def test_unknown_property(self, client):
        response = client.get("/api/v1/properties/77")

        assert response.status_code == 404
        assert response.json()["error"] == "PROPERTY_NOT_FOUND"

    def test_property_chain_down(self, client, peer):
        peer.available = False

        response = client.get("/api/v1/properties/1?refresh=true")

        assert response.status_code == 503
        assert response.json()["retryable"] is True

    def test_status(self, client):
        response = client.get("/api/v1/status")

        assert response.status_code == 200
        data = response.json()
        assert data["chain"]["available"] is True
        assert data["chain"]["details"]["chain_id"] == 31337
        assert data["price_policy"] in ("listing", "offer")

    def test_root(self, client):
        response = client.get("/")

        assert response.status_code == 200
        assert response.json()["status"] == "running"
