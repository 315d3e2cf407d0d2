from __future__ import annotations

import base64
import json
from typing import Any

import httpx

from quadra_proxy.main import app
from tests.client_test_utils import build_test_client

RAZORPAY_ENV = {"RAZORPAY_KEY_ID": "rzp_test_key", "RAZORPAY_KEY_SECRET": "rzp_secret"}


def _install_gateway(handler: Any) -> None:
    app.state.payment_service.gateway.client = httpx.AsyncClient(
        transport=httpx.MockTransport(handler)
    )


def _order_handler(seen: list[dict[str, Any]]) -> Any:
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        seen.append({"url": str(request.url), "auth": request.headers["authorization"], **body})
        return httpx.Response(
            200,
            json={
                "id": f"order_{len(seen)}",
                "entity": "order",
                "amount": body["amount"],
                "currency": body["currency"],
                "receipt": body["receipt"],
                "status": "created",
            },
        )

    return handler


def _verify_body(order: dict[str, Any], user_id: str, plan: str) -> dict[str, str]:
    return {
        "userId": user_id,
        "plan": plan,
        "transactionId": order["transactionId"],
        "razorpayPaymentId": "pay_123",
        "razorpayOrderId": order["orderId"],
        "razorpaySignature": "sig",
    }


def test_order_then_verify_upgrades_plan_and_keeps_usage(monkeypatch: Any) -> None:
    seen: list[dict[str, Any]] = []
    with build_test_client(monkeypatch, **RAZORPAY_ENV) as client:
        _install_gateway(_order_handler(seen))
        client.portal.call(app.state.ledger.record_usage, "payer", 100_050)

        order_response = client.post(
            "/api/payment/order", json={"userId": "payer", "plan": "LITE"}
        )
        order = order_response.json()
        pending = client.get("/api/user/payer/transactions").json()

        verify_response = client.post(
            "/api/payment/verify", json=_verify_body(order, "payer", "LITE")
        )
        transactions = client.get("/api/user/payer/transactions").json()

    assert order_response.status_code == 200
    assert order == {
        "orderId": "order_1",
        "transactionId": order["transactionId"],
        "amount": 29_900,
        "currency": "INR",
    }
    expected_auth = "Basic " + base64.b64encode(b"rzp_test_key:rzp_secret").decode()
    assert seen == [
        {
            "url": "https://api.razorpay.com/v1/orders",
            "auth": expected_auth,
            "amount": 29_900,
            "currency": "INR",
            "receipt": order["transactionId"],
            "payment_capture": 1,
        }
    ]
    assert [item["status"] for item in pending] == ["pending"]
    assert pending[0]["amount"] == 299

    assert verify_response.status_code == 200
    verified = verify_response.json()
    assert verified["success"] is True
    assert verified["message"] == "Payment verified successfully"
    assert verified["entitlements"]["plan"] == "LITE"
    assert verified["entitlements"]["tokenLimit"] == 2_000_000
    assert verified["entitlements"]["tokenUsage"] == 100_050
    assert [item["status"] for item in transactions] == ["completed"]


def test_verify_twice_is_a_conflict(monkeypatch: Any) -> None:
    with build_test_client(monkeypatch, **RAZORPAY_ENV) as client:
        _install_gateway(_order_handler([]))
        order = client.post(
            "/api/payment/order", json={"userId": "u2", "plan": "COLLEGE"}
        ).json()
        body = _verify_body(order, "u2", "COLLEGE")
        first = client.post("/api/payment/verify", json=body)
        second = client.post("/api/payment/verify", json=body)

    assert first.status_code == 200
    assert second.status_code == 409
    assert second.json()["status"] == "completed"


def test_verify_rejects_mismatched_or_unknown_transaction(monkeypatch: Any) -> None:
    with build_test_client(monkeypatch, **RAZORPAY_ENV) as client:
        _install_gateway(_order_handler([]))
        order = client.post(
            "/api/payment/order", json={"userId": "u3", "plan": "PRO"}
        ).json()

        other_user = client.post(
            "/api/payment/verify", json=_verify_body(order, "someone-else", "PRO")
        )
        other_plan = client.post(
            "/api/payment/verify", json=_verify_body(order, "u3", "LITE")
        )
        unknown = client.post(
            "/api/payment/verify",
            json=_verify_body({**order, "transactionId": "missing"}, "u3", "PRO"),
        )
        entitlements = client.get("/api/user/u3/entitlements").json()

    assert other_user.status_code == 400
    assert other_plan.status_code == 400
    assert unknown.status_code == 404
    assert entitlements["plan"] == "FREE"


def test_payment_request_validation(monkeypatch: Any) -> None:
    with build_test_client(monkeypatch, **RAZORPAY_ENV) as client:
        _install_gateway(_order_handler([]))
        missing_plan = client.post("/api/payment/order", json={"userId": "u4"})
        bad_plan = client.post(
            "/api/payment/order", json={"userId": "u4", "plan": "PLATINUM"}
        )
        missing_fields = client.post(
            "/api/payment/verify", json={"userId": "u4", "plan": "LITE"}
        )

    assert missing_plan.status_code == 400
    assert missing_plan.json() == {"error": "userId and plan are required"}
    assert bad_plan.status_code == 400
    assert bad_plan.json() == {"error": "Invalid plan"}
    assert missing_fields.status_code == 400
    assert missing_fields.json() == {"error": "Missing required parameters"}


def test_payments_unavailable_without_gateway_keys(monkeypatch: Any) -> None:
    with build_test_client(monkeypatch) as client:
        response = client.post(
            "/api/payment/order", json={"userId": "u5", "plan": "LITE"}
        )
        transactions = client.get("/api/user/u5/transactions").json()

    assert response.status_code == 500
    assert response.json() == {"error": "Payment system not configured"}
    assert transactions == []


def test_gateway_rejection_marks_transaction_failed(monkeypatch: Any) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": {"code": "BAD_REQUEST_ERROR"}})

    with build_test_client(monkeypatch, **RAZORPAY_ENV) as client:
        _install_gateway(handler)
        response = client.post(
            "/api/payment/order", json={"userId": "u6", "plan": "LITE"}
        )
        transactions = client.get("/api/user/u6/transactions").json()

    assert response.status_code == 500
    assert response.json() == {"error": "Failed to create payment order"}
    assert [item["status"] for item in transactions] == ["failed"]


def test_gateway_network_error_is_reported(monkeypatch: Any) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("timed out", request=request)

    with build_test_client(monkeypatch, **RAZORPAY_ENV) as client:
        _install_gateway(handler)
        response = client.post(
            "/api/payment/order", json={"userId": "u7", "plan": "PRO"}
        )

    assert response.status_code == 500
    assert response.json() == {"error": "Failed to create payment order"}
