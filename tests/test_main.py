"""App wiring and HTTP route tests."""

import hashlib
import hmac
import json
import os
import sqlite3
import tempfile
import time
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

_tmp = tempfile.NamedTemporaryFile(suffix=".db", delete=False, prefix="main_test_")
_tmp.close()
os.environ["DB_PATH"] = _tmp.name

import marketpay.database as _db_mod
from marketpay.database import init_db
from marketpay.main import app
from marketpay.services.container import build_services
from marketpay.services.notifier import Notifier
from marketpay.services.stripe_client import StripeClientError, StripeClients
from marketpay.services.task_runner import TaskRunner

WEBHOOK_SECRET = "whsec_route_tests"


@pytest.fixture(autouse=True)
def _setup_db():
    """Rebuild the database before every test."""
    os.environ["DB_PATH"] = _tmp.name
    _db_mod.DB_PATH = _tmp.name
    conn = sqlite3.connect(_tmp.name)
    conn.executescript("""
        DROP TABLE IF EXISTS orders;
        DROP TABLE IF EXISTS products;
        DROP TABLE IF EXISTS store_users;
        DROP TABLE IF EXISTS stores;
    """)
    conn.close()
    init_db()
    yield


class FakeSleep:

    async def __call__(self, seconds):
        return None


@pytest.fixture
def stripe():
    client = MagicMock()
    client.retrieve_account = AsyncMock(return_value={"id": "acct_1", "charges_enabled": True})
    client.create_payment_link = AsyncMock(
        return_value={"id": "plink_1", "url": "https://buy.stripe.com/plink_1"}
    )
    client.list_balance_transactions = AsyncMock(return_value=[{"fee": 320, "net": 9680, "amount": 10000}])
    client.list_charges = AsyncMock(return_value=[])
    return client


@pytest.fixture
def services(stripe, monkeypatch):
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)
    services = build_services(
        clients=StripeClients(live=stripe, test=stripe),
        notifier=Notifier(),
        task_runner=TaskRunner(sleep=FakeSleep()),
    )
    original = app.state.services
    app.state.services = services
    yield services
    app.state.services = original


@pytest.fixture
def client(services):
    with TestClient(app) as c:
        yield c


def _seed_store(services, connected=True):
    return services.documents.create("store", {
        "slug": "shop",
        "title": "Shop",
        "connected_account_id": "acct_1" if connected else None,
    })


def _checkout_body(store_id, **overrides):
    body = {
        "store_id": store_id,
        "line_items": [{"price": "price_a", "quantity": 1, "product_id": None, "name": "Mug", "unit_amount": 10000}],
        "total": 10000,
    }
    body.update(overrides)
    return body


def _signed(event: dict, secret: str = WEBHOOK_SECRET) -> tuple[str, dict]:
    payload = json.dumps(event)
    ts = int(time.time())
    digest = hmac.new(secret.encode(), f"{ts}.{payload}".encode(), hashlib.sha256).hexdigest()
    return payload, {"Stripe-Signature": f"t={ts},v1={digest}", "Content-Type": "application/json"}


def _completed_event(**session):
    data = {
        "id": "cs_test_1",
        "payment_intent": "pi_1",
        "payment_link": "plink_1",
        "amount_total": 10000,
        "currency": "usd",
        "customer_details": {"email": "buyer@example.com", "name": "Ada"},
    }
    data.update(session)
    return {
        "id": "evt_1",
        "type": "checkout.session.completed",
        "livemode": False,
        "data": {"object": data},
    }


class TestHealthEndpoint:

    def test_health_returns_ok(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}


class TestRouteRegistration:

    def test_routes_registered(self):
        paths = set(app.openapi()["paths"])
        assert "/api/checkout/link" in paths
        assert "/api/stripe/webhook" in paths
        assert "/api/orders/{order_id}" in paths
        assert "/api/orders/{order_id}/status" in paths

    def test_default_services_wired(self):
        services = app.state.services
        assert services.webhook.fee_retriever is services.fee_retriever
        assert services.fee_retriever.task_runner is services.task_runner
        assert services.inventory.documents is services.documents


# ── Checkout link ─────────────────────────────────────────


class TestCheckoutLink:

    def test_connected_store(self, client, services, stripe):
        store = _seed_store(services)
        resp = client.post("/api/checkout/link", json=_checkout_body(store["id"]))

        assert resp.status_code == 200
        data = resp.json()
        assert data["url"] == "https://buy.stripe.com/plink_1"
        assert data["fee_info"]["application_fee_minor"] == 363

        order = services.documents.find_one("order", data["order_id"])
        assert order["stripe_payment_id"] == "plink_1"
        assert order["status"] == "open"
        assert order["amount"] == 10000
        assert order["extra"]["connect_fee_info"]["net_to_seller_minor"] == 9317
        assert order["line_items"][0]["stripe_price_id"] == "price_a"

        params = stripe.create_payment_link.call_args.args[0]
        assert params["application_fee_amount"] == 363
        assert params["metadata"] == {"store_id": str(store["id"])}
        assert "CHECKOUT_SESSION_ID" in params["after_completion"]["redirect"]["url"]

    def test_plain_store(self, client, services):
        store = _seed_store(services, connected=False)
        resp = client.post("/api/checkout/link", json=_checkout_body(store["id"]))

        assert resp.status_code == 200
        assert resp.json()["fee_info"] is None

    def test_unknown_store(self, client):
        resp = client.post("/api/checkout/link", json=_checkout_body(999))
        assert resp.status_code == 404

    def test_item_without_price(self, client, services):
        store = _seed_store(services)
        body = _checkout_body(store["id"], line_items=[{"quantity": 1, "name": "Mystery"}])
        resp = client.post("/api/checkout/link", json=body)
        assert resp.status_code == 400

    def test_link_failure(self, client, services, stripe):
        stripe.create_payment_link.side_effect = StripeClientError("rate limited")
        store = _seed_store(services)
        resp = client.post("/api/checkout/link", json=_checkout_body(store["id"]))

        assert resp.status_code == 502
        assert resp.json()["fee_info"]["application_fee_minor"] == 363
        assert services.documents.count("order") == 0


# ── Webhook ───────────────────────────────────────────────


class TestStripeWebhook:

    def test_bad_signature_rejected(self, client, services):
        payload, headers = _signed(_completed_event(), secret="whsec_wrong")
        resp = client.post("/api/stripe/webhook", content=payload, headers=headers)

        assert resp.status_code == 400
        assert services.documents.count("order") == 0

    def test_missing_signature_rejected(self, client):
        resp = client.post("/api/stripe/webhook", content=json.dumps(_completed_event()))
        assert resp.status_code == 400

    def test_completed_session_updates_order(self, client, services):
        store = _seed_store(services)
        created = client.post("/api/checkout/link", json=_checkout_body(store["id"])).json()

        payload, headers = _signed(_completed_event())
        resp = client.post("/api/stripe/webhook", content=payload, headers=headers)

        assert resp.status_code == 200
        assert resp.json() == {"received": True, "order_id": created["order_id"]}
        order = services.documents.find_one("order", created["order_id"])
        assert order["status"] == "complete"
        assert order["buyer_email"] == "buyer@example.com"
        assert order["extra"]["fees_retrieval_status"] == "success"
        assert order["extra"]["connect_fee_info"]["application_fee_minor"] == 363

    def test_other_events_acknowledged(self, client, services):
        payload, headers = _signed({"id": "evt_2", "type": "payment_intent.created", "data": {"object": {}}})
        resp = client.post("/api/stripe/webhook", content=payload, headers=headers)

        assert resp.status_code == 200
        assert resp.json() == {"received": True, "ignored": "payment_intent.created"}
        assert services.documents.count("order") == 0

    def test_handler_failure_returns_500(self, client, services):
        services.webhook.handle_checkout_completed = AsyncMock(side_effect=RuntimeError("db locked"))
        payload, headers = _signed(_completed_event())
        resp = client.post("/api/stripe/webhook", content=payload, headers=headers)
        assert resp.status_code == 500


# ── Orders ────────────────────────────────────────────────


class TestOrders:

    def test_get_order(self, client, services):
        order = services.documents.create("order", {"amount": 500, "status": "open"})
        resp = client.get(f"/api/orders/{order['id']}")

        assert resp.status_code == 200
        assert resp.json()["amount_minor"] == 500

    def test_get_missing_order(self, client):
        assert client.get("/api/orders/999").status_code == 404

    def test_update_status_publishes(self, client, services):
        order = services.documents.create("order", {"amount": 500, "status": "complete"})
        resp = client.patch(f"/api/orders/{order['id']}/status", json={"status": "paid"})

        assert resp.status_code == 200
        assert resp.json()["status"] == "paid"
        assert resp.json()["published_at"] is not None

    def test_update_status_invalid(self, client, services):
        order = services.documents.create("order", {"amount": 500})
        resp = client.patch(f"/api/orders/{order['id']}/status", json={"status": "shipped-ish"})
        assert resp.status_code == 400

    def test_update_status_missing_order(self, client):
        assert client.patch("/api/orders/999/status", json={"status": "paid"}).status_code == 404

    def test_paid_order_decrements_inventory(self, services, monkeypatch):
        product = services.documents.create("product", {
            "name": "Mug",
            "prices": [{"stripe_id": "price_a", "inventory": 5}],
        })
        order = services.documents.create("order", {
            "amount": 1000,
            "status": "complete",
            "line_items": [{"name": "Mug", "product_id": product["id"], "quantity": 1, "stripe_price_id": "price_a"}],
        })

        # Leaving the client context drains the background jobs
        with TestClient(app) as client:
            resp = client.patch(f"/api/orders/{order['id']}/status", json={"status": "paid"})
            assert resp.status_code == 200

        assert services.documents.find_one("product", product["id"])["prices"][0]["inventory"] == 4
        assert services.documents.find_one("order", order["id"])["extra"]["inventory_decremented"] is True
