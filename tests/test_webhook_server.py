"""
Webhook Server Tests
HTTP surface: caller identity, payment callbacks and error-to-status mapping
"""

import json

import pytest
from fastapi.testclient import TestClient

from models import UserRole
from services.balance_ledger_service import BalanceLedgerService
from utils.webhook_signatures import cryptobot_signature
from webhook_server import app

ADMIN_HEADERS = {"X-Admin-Token": "test-admin-token"}


@pytest.fixture
def client():
    with TestClient(app) as test_client:
        yield test_client


def _signed_invoice(invoice_id, payload, update_type="invoice_paid"):
    body = json.dumps({
        "update_type": update_type,
        "payload": {"invoice_id": invoice_id, "payload": json.dumps(payload)},
    }).encode()
    headers = {
        "crypto-pay-api-signature": cryptobot_signature("test-cryptobot-token", body),
        "Content-Type": "application/json",
    }
    return body, headers


class TestHealth:

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["database"] is True
        assert response.json()["lease_monitor"] is False


class TestCallerIdentity:

    def test_missing_user_header(self, client):
        response = client.get("/balance")

        assert response.status_code == 401
        assert response.json()["code"] == "unauthorized"

    def test_unknown_user(self, client):
        assert client.get("/balance", headers={"X-User-Id": "4040"}).status_code == 401

    def test_banned_user(self, client, make_user):
        user_id = make_user(is_banned=True)

        response = client.get("/balance", headers={"X-User-Id": str(user_id)})

        assert response.status_code == 403

    def test_balance(self, client, make_user):
        user_id = make_user(balance="12.5")

        response = client.get("/balance", headers={"X-User-Id": str(user_id)})

        assert response.json() == {"user_id": user_id, "balance": "12.50"}

    def test_admin_route_requires_admin(self, client, make_user):
        user_id = make_user()

        forbidden = client.post(
            f"/admin/users/{user_id}/balance", json={"mode": "set", "amount": "500"},
            headers={"X-User-Id": str(user_id)},
        )
        allowed = client.post(
            f"/admin/users/{user_id}/balance", json={"mode": "set", "amount": "500"}, headers=ADMIN_HEADERS,
        )

        assert forbidden.status_code == 403
        assert allowed.status_code == 200
        assert allowed.json()["balance"] == "500.00"

    def test_admin_role_user_passes(self, client, make_user):
        admin_id = make_user(role=UserRole.ADMIN)
        target = make_user()

        response = client.post(
            f"/admin/users/{target}/balance", json={"mode": "add", "amount": "7"},
            headers={"X-User-Id": str(admin_id)},
        )

        assert response.status_code == 200
        assert response.json()["change"] == "7.00"


class TestCryptoBotWebhook:

    def test_invalid_signature_rejected(self, client, make_user):
        user_id = make_user()
        body, headers = _signed_invoice(1, {"userId": user_id, "amountRub": "100"})
        headers["crypto-pay-api-signature"] = "0" * 64

        response = client.post("/webhook/cryptobot", content=body, headers=headers)

        assert response.status_code == 403
        assert BalanceLedgerService.get_balance(user_id) == 0

    def test_deposit_is_credited_once(self, client, make_user):
        user_id = make_user()
        body, headers = _signed_invoice(9001, {"userId": user_id, "amountRub": "150"})

        first = client.post("/webhook/cryptobot", content=body, headers=headers)
        second = client.post("/webhook/cryptobot", content=body, headers=headers)

        assert first.status_code == 200
        assert first.json()["status"] == "deposited"
        assert second.json()["status"] == "duplicate"
        assert str(BalanceLedgerService.get_balance(user_id)) == "150.00"

    def test_other_updates_ignored(self, client, make_user):
        body, headers = _signed_invoice(5, {"userId": make_user(), "amountRub": "1"}, update_type="invoice_expired")

        response = client.post("/webhook/cryptobot", content=body, headers=headers)

        assert response.json() == {"status": "ignored"}

    def test_purchase_invoice_dispatches_pending_order(self, client, make_user, make_product):
        user_id = make_user()
        product_id = make_product(price="30", stock=["key-77"])
        pending = client.post(
            "/orders/pending",
            json={"items": [{"productId": product_id, "quantity": 1}], "total": "30", "payment_id": "777"},
            headers={"X-User-Id": str(user_id)},
        ).json()
        assert pending["amount_due"] == "30.00"

        body, headers = _signed_invoice(777, {
            "userId": user_id, "orderId": pending["order_id"], "amountRub": "30",
            "items": [{"productId": product_id, "quantity": 1}],
        })
        response = client.post("/webhook/cryptobot", content=body, headers=headers)

        assert response.status_code == 200
        assert response.json()["status"] == "paid"
        assert response.json()["dispatch"]["status"] == "completed"
        assert "key-77" in response.json()["dispatch"]["delivered_content"]


class TestCheckout:

    def test_pay_with_balance(self, client, make_user, make_product):
        user_id = make_user(balance="100")
        product_id = make_product(price="10", stock=["vpn-key-1"])

        response = client.post(
            "/orders/pay-with-balance",
            json={"items": [{"product_id": product_id, "quantity": 1}], "total": "10"},
            headers={"X-User-Id": str(user_id)},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["new_balance"] == "90.00"
        assert data["dispatch"]["delivered_content"] == "📦 VPN Key:\nvpn-key-1"

        again = client.post(
            f"/orders/{data['order_id']}/process", headers={"X-User-Id": str(user_id)}
        )
        assert again.json()["already_processed"] is True

    def test_typed_errors_map_to_status_codes(self, client, make_user, make_product):
        user_id = make_user(balance="5")
        product_id = make_product(price="10", stock=["k"])
        headers = {"X-User-Id": str(user_id)}

        funds = client.post(
            "/orders/pay-with-balance", json={"items": [{"product_id": product_id}], "total": "10"}, headers=headers
        )
        mismatch = client.post(
            "/orders/pay-with-balance", json={"items": [{"product_id": product_id}], "total": "1"}, headers=headers
        )
        missing = client.post(
            "/orders/pay-with-balance", json={"items": [{"product_id": 999}], "total": "1"}, headers=headers
        )

        assert (funds.status_code, funds.json()["code"]) == (409, "insufficient_funds")
        assert (mismatch.status_code, mismatch.json()["code"]) == (400, "price_mismatch")
        assert (missing.status_code, missing.json()["code"]) == (404, "product_not_found")

    def test_non_finite_total_is_bad_request(self, client, make_user, make_product):
        user_id = make_user(balance="100")
        product_id = make_product(price="10", stock=["k"])

        response = client.post(
            "/orders/pay-with-balance",
            json={"items": [{"product_id": product_id}], "total": "NaN"},
            headers={"X-User-Id": str(user_id)},
        )

        assert response.status_code == 400
        assert response.json()["code"] == "validation_error"
        assert BalanceLedgerService.get_balance(user_id) == 100

    def test_cancel_pending_order_returns_balance_part(self, client, make_user, make_product):
        user_id = make_user(balance="20")
        product_id = make_product(price="30", stock=["k"])
        headers = {"X-User-Id": str(user_id)}
        pending = client.post(
            "/orders/pending",
            json={"items": [{"productId": product_id}], "total": "30", "payment_id": "888", "balance_to_use": "20"},
            headers=headers,
        ).json()
        assert pending["new_balance"] == "0.00"

        cancelled = client.post(f"/orders/{pending['order_id']}/cancel", headers=headers)
        again = client.post(f"/orders/{pending['order_id']}/cancel", headers=headers)

        assert cancelled.json() == {"order_id": pending["order_id"], "status": "cancelled", "refunded": "20.00"}
        assert (again.status_code, again.json()["code"]) == (400, "validation_error")
        assert BalanceLedgerService.get_balance(user_id) == 20

    def test_other_users_order_is_not_found(self, client, make_user, make_product):
        owner = make_user(balance="100")
        stranger = make_user()
        product_id = make_product(price="10", stock=["k"])
        order_id = client.post(
            "/orders/pay-with-balance",
            json={"items": [{"product_id": product_id}], "total": "10"},
            headers={"X-User-Id": str(owner)},
        ).json()["order_id"]

        response = client.post(f"/orders/{order_id}/process", headers={"X-User-Id": str(stranger)})

        assert response.status_code == 404


class TestLeases:

    def test_unreachable_provider_is_bad_gateway(self, client, make_user):
        user_id = make_user(balance="100")

        response = client.post(
            "/sms/purchase", json={"service": "tg", "country": 0, "price": "40"},
            headers={"X-User-Id": str(user_id)},
        )

        assert response.status_code == 502
        assert response.json()["provider"] == "tiger_sms"
        assert BalanceLedgerService.get_balance(user_id) == 100

    def test_empty_lease_list(self, client, make_user):
        user_id = make_user()

        response = client.get("/leases?kind=sms_number", headers={"X-User-Id": str(user_id)})

        assert response.json() == {"leases": []}

    def test_unknown_lease_kind(self, client, make_user):
        response = client.get("/leases?kind=rocket", headers={"X-User-Id": str(make_user())})

        assert response.status_code == 400
