"""HTTP 接口测试：商品、购买、账户、Webhook 和运营后台。"""

import os
import sqlite3
import tempfile
from datetime import datetime, timedelta
from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient

_tmp = tempfile.NamedTemporaryFile(suffix=".db", delete=False, prefix="routes_")
_tmp.close()
os.environ["DB_PATH"] = _tmp.name
os.environ["JWT_SECRET"] = "test-secret-key-for-routes"

import marketcore.database as _db_mod
from marketcore.database import init_db
from marketcore.main import app
from marketcore.models.schemas import CREDIT, UNIT_CENTS
from marketcore.services.auth import create_token
from marketcore.services.errors import ProviderUnavailable
from marketcore.services.ledger import LedgerStore
from marketcore.services.platform_config import save_provider_credentials
from marketcore.services.processor_client import ChargeResult, PayoutItemResult
from marketcore.services.sign import generate_sign

_TABLES = (
    "payout_entries", "payout_batches", "seller_profiles", "seller_payout_profiles", "daily_rewards",
    "purchase_attempts", "licenses", "orders", "listings", "transactions",
    "accounts", "system_config", "admin",
)

WEBHOOK_SECRET = "whsec_test"


@pytest.fixture(autouse=True)
def _setup_db():
    os.environ["DB_PATH"] = _tmp.name
    _db_mod.DB_PATH = _tmp.name
    conn = sqlite3.connect(_tmp.name)
    conn.executescript("".join(f"DROP TABLE IF EXISTS {t};" for t in _TABLES))
    conn.close()
    init_db()
    yield


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def admin_headers():
    return {"Authorization": f"Bearer {create_token('admin')}"}


@pytest.fixture
def processor():
    fake = MagicMock()
    fake.charge.return_value = ChargeResult(charge_id="ch_1", status="succeeded")
    fake.refund.return_value = "re_1"
    fake.payout.side_effect = lambda batch_id, items: [
        PayoutItemResult(it["entry_id"], "success", "item") for it in items
    ]
    with patch("marketcore.services.purchase_service.get_processor_client", return_value=fake), \
            patch("marketcore.services.payout_service.get_processor_client", return_value=fake):
        yield fake


def _create_listing(client, **overrides):
    body = {
        "seller_id": "seller",
        "title": "SQL 优化助手",
        "content": "x" * 100,
        "price_cents": 1000,
        "credit_price": 300,
        "accepts_credits": True,
    }
    body.update(overrides)
    data = client.post("/v1/listings", json=body).json()
    assert data["code"] == 1
    return data["listing"]["listing_id"]


def _signed(payload: dict) -> dict:
    return {"X-Signature": generate_sign(payload, WEBHOOK_SECRET)}


# ── 商品 ──────────────────────────────────────────────────


class TestListingRoutes:
    """/v1/listings 测试。"""

    def test_create_and_get(self, client):
        listing_id = _create_listing(client)
        data = client.get(f"/v1/listings/{listing_id}").json()
        assert data["code"] == 1
        assert data["listing"]["preview"] == "x" * 20
        assert "content" not in data["listing"]

    def test_create_invalid(self, client):
        data = client.post("/v1/listings", json={
            "seller_id": "s", "title": "t", "content": "c", "price_cents": 0,
        }).json()
        assert data["code"] == -1

    def test_get_missing(self, client):
        data = client.get("/v1/listings/nope").json()
        assert data["code"] == -1
        assert data["error"] == "not_found"

    def test_content_and_archive(self, client):
        listing_id = _create_listing(client)
        data = client.get(f"/v1/listings/{listing_id}/content", params={"buyer_id": "b"}).json()
        assert data["full_access"] is False
        assert client.post(f"/v1/listings/{listing_id}/archive").json()["code"] == 1
        assert client.get(f"/v1/listings/{listing_id}").json()["listing"]["status"] == "archived"


# ── 购买 ──────────────────────────────────────────────────


class TestPurchaseRoutes:
    """/v1/purchases 与 /v1/orders 测试。"""

    def test_credit_purchase_and_replay(self, client):
        listing_id = _create_listing(client)
        LedgerStore().apply_transaction("buyer", CREDIT, 300, "signup_bonus")
        body = {
            "buyer_id": "buyer", "listing_id": listing_id,
            "payment_method": "credits", "idempotency_key": "click-1",
        }
        first = client.post("/v1/purchases", json=body).json()
        second = client.post("/v1/purchases", json=body).json()

        assert first["code"] == 1
        assert first["order"]["order_id"] == second["order"]["order_id"]
        assert first["order"]["license_key"]
        assert first["order"]["license_revoked"] is False

        balance = client.get("/v1/accounts/buyer/balance").json()
        assert balance["balance"] == 0

        content = client.get(f"/v1/listings/{listing_id}/content", params={"buyer_id": "buyer"}).json()
        assert content["full_access"] is True

    def test_insufficient_balance(self, client):
        listing_id = _create_listing(client)
        data = client.post("/v1/purchases", json={
            "buyer_id": "buyer", "listing_id": listing_id,
            "payment_method": "credits", "idempotency_key": "click-1",
        }).json()
        assert data["code"] == -1
        assert data["error"] == "insufficient_balance"

    def test_money_purchase(self, client, processor):
        listing_id = _create_listing(client)
        data = client.post("/v1/purchases", json={
            "buyer_id": "buyer", "listing_id": listing_id, "payment_method": "money",
            "idempotency_key": "click-1", "buyer_token": "tok",
        }).json()
        assert data["code"] == 1
        assert data["order"]["seller_net_cents"] == 791

        order = client.get(f"/v1/orders/{data['order']['order_id']}").json()
        assert order["order"]["status"] == "completed"

    def test_money_purchase_declined(self, client, processor):
        processor.charge.side_effect = ProviderUnavailable("timeout")
        listing_id = _create_listing(client)
        data = client.post("/v1/purchases", json={
            "buyer_id": "buyer", "listing_id": listing_id, "payment_method": "money",
            "idempotency_key": "click-1", "buyer_token": "tok",
        }).json()
        assert data["error"] == "payment_declined"

    def test_license_key_only_for_buyer(self, client, processor):
        listing_id = _create_listing(client)
        order_id = client.post("/v1/purchases", json={
            "buyer_id": "buyer", "listing_id": listing_id, "payment_method": "money",
            "idempotency_key": "click-1", "buyer_token": "tok",
        }).json()["order"]["order_id"]

        summary = client.get(f"/v1/orders/{order_id}").json()
        assert "license_key" not in summary["order"]

        mine = client.get(f"/v1/orders/{order_id}/license", params={"buyer_id": "buyer"}).json()
        assert mine["code"] == 1
        assert mine["license_key"]
        assert mine["revoked"] is False

        other = client.get(f"/v1/orders/{order_id}/license", params={"buyer_id": "someone"}).json()
        assert other["error"] == "not_found"

    def test_order_not_found(self, client):
        data = client.get("/v1/orders/nope").json()
        assert data["error"] == "not_found"


# ── 账户 ──────────────────────────────────────────────────


class TestAccountRoutes:
    """/v1/accounts 与 /v1/sellers 测试。"""

    def test_daily_claim_twice(self, client):
        first = client.post("/v1/accounts/u1/daily-claim").json()
        second = client.post("/v1/accounts/u1/daily-claim").json()
        assert first["code"] == 1
        assert first["amount"] == 50
        assert first["new_streak"] == 1
        assert second["error"] == "already_claimed"

        status = client.get("/v1/accounts/u1/daily-status").json()
        assert status["eligible"] is False

    def test_bonus_once(self, client):
        first = client.post("/v1/accounts/u1/bonus", json={"source": "signup_bonus"}).json()
        second = client.post("/v1/accounts/u1/bonus", json={"source": "signup_bonus"}).json()
        assert first["granted"] is True and first["amount"] == 100
        assert second["granted"] is False

    def test_bonus_unknown_source(self, client):
        data = client.post("/v1/accounts/u1/bonus", json={"source": "purchase"}).json()
        assert data["code"] == -1

    def test_transactions_paginated(self, client):
        for _ in range(3):
            LedgerStore().apply_transaction("u1", CREDIT, 10, "daily_login")
        data = client.get("/v1/accounts/u1/transactions", params={"limit": 2}).json()
        assert len(data["transactions"]) == 2
        assert data["transactions"][0]["balance_after"] == 30

    def test_unknown_unit(self, client):
        assert client.get("/v1/accounts/u1/balance", params={"unit": "usd"}).json()["code"] == -1

    def test_seller_earnings(self, client):
        LedgerStore().apply_transaction("s1", CREDIT, 2000, "purchase", unit=UNIT_CENTS)
        data = client.get("/v1/sellers/s1/earnings").json()
        assert data["code"] == 1
        assert data["balance_cents"] == 2000
        assert data["holding_cents"] == 2000
        assert data["eligible_cents"] == 0


# ── Webhook ──────────────────────────────────────────────


class TestWebhookRoutes:
    """/v1/webhooks/{provider} 测试。"""

    @pytest.fixture(autouse=True)
    def _credentials(self):
        save_provider_credentials("processor_a", "https://pa.example.com", "sk", WEBHOOK_SECRET)

    def test_bad_signature(self, client):
        payload = {"event": "charge.refunded", "charge_id": "ch_1"}
        data = client.post("/v1/webhooks/processor_a", json=payload,
                           headers={"X-Signature": "bad"}).json()
        assert data["code"] == -1

    def test_unconfigured_provider(self, client):
        payload = {"event": "charge.refunded"}
        data = client.post("/v1/webhooks/processor_b", json=payload, headers=_signed(payload)).json()
        assert data["code"] == -1

    def test_charge_succeeded_completes_order(self, client, processor):
        processor.charge.side_effect = ProviderUnavailable("timeout")
        listing_id = _create_listing(client)
        client.post("/v1/purchases", json={
            "buyer_id": "buyer", "listing_id": listing_id, "payment_method": "money",
            "idempotency_key": "click-1", "buyer_token": "tok",
        })

        payload = {"event": "charge.succeeded", "idempotency_key": "click-1",
                   "charge_id": "ch_late", "amount": 1000}
        data = client.post("/v1/webhooks/processor_a", json=payload, headers=_signed(payload)).json()
        assert data["code"] == 1
        assert LedgerStore().get_balance("seller", UNIT_CENTS) == 791

    def test_charge_succeeded_amount_mismatch(self, client, processor):
        processor.charge.side_effect = ProviderUnavailable("timeout")
        listing_id = _create_listing(client)
        client.post("/v1/purchases", json={
            "buyer_id": "buyer", "listing_id": listing_id, "payment_method": "money",
            "idempotency_key": "click-1", "buyer_token": "tok",
        })

        payload = {"event": "charge.succeeded", "idempotency_key": "click-1",
                   "charge_id": "ch_late", "amount": 1}
        data = client.post("/v1/webhooks/processor_a", json=payload, headers=_signed(payload)).json()
        assert data["error"] == "invalid_amount"

    def test_missing_field(self, client):
        payload = {"event": "charge.succeeded", "charge_id": "ch"}
        data = client.post("/v1/webhooks/processor_a", json=payload, headers=_signed(payload)).json()
        assert data["code"] == -1
        assert "idempotency_key" in data["msg"]

    def test_unknown_event(self, client):
        payload = {"event": "dispute.created"}
        data = client.post("/v1/webhooks/processor_a", json=payload, headers=_signed(payload)).json()
        assert data["code"] == -1


# ── 运营后台 ──────────────────────────────────────────────


class TestAdminRoutes:
    """/v1/admin 测试。"""

    def test_settings_roundtrip(self, client, admin_headers):
        data = client.get("/v1/admin/settings", headers=admin_headers).json()
        assert data["settings"]["commission_rate_percent"] == "15"
        assert data["providers"]["processor_a"] == "unconfigured"

        data = client.post("/v1/admin/settings", headers=admin_headers,
                           json={"settings": {"commission_rate_percent": 20}}).json()
        assert data["settings"]["commission_rate_percent"] == "20"

        bad = client.post("/v1/admin/settings", headers=admin_headers,
                          json={"settings": {"commission_rate_percent": 150}}).json()
        assert bad["code"] == -1

    def test_save_provider_credentials(self, client, admin_headers):
        data = client.post("/v1/admin/settings/providers/processor_b", headers=admin_headers, json={
            "base_url": "https://pb.example.com", "api_key": "k", "webhook_secret": "w",
        }).json()
        assert data["providers"]["processor_b"] == "configured"

    def test_seller_commission_rate(self, client, admin_headers):
        data = client.put("/v1/admin/sellers/seller/commission", headers=admin_headers,
                          json={"commission_rate_percent": 10}).json()
        assert data["commission_rate_percent"] == "10"
        assert data["effective_rate_percent"] == "10"

        listing_id = _create_listing(client)
        LedgerStore().apply_transaction("buyer", CREDIT, 300, "signup_bonus")
        order = client.post("/v1/purchases", json={
            "buyer_id": "buyer", "listing_id": listing_id,
            "payment_method": "credits", "idempotency_key": "click-1",
        }).json()["order"]
        assert order["commission_cents"] == 30

        cleared = client.put("/v1/admin/sellers/seller/commission", headers=admin_headers,
                             json={"commission_rate_percent": None}).json()
        assert cleared["commission_rate_percent"] is None
        assert cleared["effective_rate_percent"] == "15"

        bad = client.put("/v1/admin/sellers/seller/commission", headers=admin_headers,
                         json={"commission_rate_percent": 120}).json()
        assert bad["code"] == -1

    def test_refund(self, client, admin_headers):
        listing_id = _create_listing(client)
        LedgerStore().apply_transaction("buyer", CREDIT, 300, "signup_bonus")
        order = client.post("/v1/purchases", json={
            "buyer_id": "buyer", "listing_id": listing_id,
            "payment_method": "credits", "idempotency_key": "click-1",
        }).json()["order"]

        data = client.post(f"/v1/admin/orders/{order['order_id']}/refund", headers=admin_headers,
                           json={"revoke_license": True, "reason": "误购"}).json()
        assert data["order"]["status"] == "refunded"
        assert client.get("/v1/accounts/buyer/balance").json()["balance"] == 300

        again = client.post(f"/v1/admin/orders/{order['order_id']}/refund", headers=admin_headers,
                            json={}).json()
        assert again["error"] == "order_state_error"

    def test_payout_run_and_status(self, client, admin_headers, processor):
        resp = client.put("/v1/admin/sellers/s1/payout-profile", headers=admin_headers,
                          json={"provider": "processor_a", "destination": "s1@bank"}).json()
        assert resp["paid_through_seq"] == 0
        LedgerStore().apply_transaction("s1", CREDIT, 5000, "purchase", unit=UNIT_CENTS,
                                        now=datetime.now() - timedelta(days=8))

        data = client.post("/v1/admin/payouts/run", headers=admin_headers,
                           json={"provider": "processor_a"}).json()
        assert len(data["batches"]) == 1
        batch_id = data["batches"][0]["batch_id"]
        assert data["batches"][0]["status"] == "completed"

        listing = client.get("/v1/admin/payouts", headers=admin_headers).json()
        assert [b["batch_id"] for b in listing["batches"]] == [batch_id]

        status = client.get(f"/v1/admin/payouts/{batch_id}", headers=admin_headers).json()
        assert status["entries"][0]["amount_cents"] == 5000

        verify = client.get("/v1/admin/accounts/s1/verify", headers=admin_headers,
                            params={"unit": "cents"}).json()
        assert verify["ok"] is True
        assert verify["balance"] == 0

    def test_payout_unknown_provider(self, client, admin_headers):
        data = client.post("/v1/admin/payouts/run", headers=admin_headers,
                           json={"provider": "processor_z"}).json()
        assert data["code"] == -1

    def test_payout_status_missing(self, client, admin_headers):
        data = client.get("/v1/admin/payouts/nope", headers=admin_headers).json()
        assert data["error"] == "not_found"


class TestHealth:

    def test_health(self, client):
        assert client.get("/health").json() == {"status": "ok"}
