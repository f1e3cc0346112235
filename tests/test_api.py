import asyncio
import base64
from decimal import Decimal

import httpx
from jose import jwt

import orderpay.auth
from orderpay import orchestrator
from orderpay.config import settings
from orderpay.main import app as fastapi_app

ORDER_PAYLOAD = {
    "currency_id": 1,
    "items": [
        {"product_id": 1, "quantity": 2, "unit_price": "50000"},
        {"product_id": 2, "quantity": 1, "unit_price": "30000"},
    ],
    "tax": "5000",
    "shipping": "10000",
}


def create_order(client):
    response = client.post("/orders", json=ORDER_PAYLOAD)
    assert response.status_code == 201
    return response.json()


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_create_order(client, seed):
    order = create_order(client)

    assert order["user_id"] == 1
    assert order["order_number"].startswith("ORD-")
    assert Decimal(order["total_amount"]) == Decimal("130000")
    assert Decimal(order["final_amount"]) == Decimal("145000")
    assert order["status"] == "PENDING"
    assert order["payment_status"] == "PENDING"
    assert len(order["items"]) == 2
    assert [t["status"] for t in order["tracking"]] == ["PENDING"]


def test_create_order_with_inactive_product(client, seed):
    payload = dict(ORDER_PAYLOAD, items=[{"product_id": 3, "quantity": 1, "unit_price": "10"}])

    response = client.post("/orders", json=payload)

    assert response.status_code == 409
    assert response.json() == {"detail": "Product Discontinued charger is not active", "code": "invalid_state"}


def test_get_order(client, seed):
    order = create_order(client)

    assert client.get(f"/orders/{order['id']}").json()["order_number"] == order["order_number"]
    assert client.get(f"/orders/by-number/{order['order_number']}").json()["id"] == order["id"]


def test_missing_order(client, seed):
    response = client.get("/orders/999")

    assert response.status_code == 404
    assert response.json() == {"detail": "Order not found", "code": "not_found"}


def test_foreign_order_is_denied(client, make_order):
    other = make_order(user_id=2)

    assert client.get(f"/orders/{other.id}").status_code == 403
    assert client.patch(f"/orders/{other.id}/cancel").status_code == 403
    response = client.post(f"/payments/{other.id}/process", json={"method": "click"})
    assert response.status_code == 403
    assert response.json()["detail"] == "Access denied"


def test_list_and_statistics(client, make_order):
    create_order(client)
    create_order(client)
    make_order(user_id=2)

    page = client.get("/orders", params={"limit": 1}).json()
    assert page["total"] == 2
    assert page["total_pages"] == 2
    assert len(page["orders"]) == 1

    assert client.get("/orders", params={"status": "CANCELLED"}).json()["total"] == 0
    assert client.get("/orders", params={"page": 0}).status_code == 400

    stats = client.get("/orders/statistics").json()
    assert stats["total_orders"] == 2
    assert stats["pending_orders"] == 2
    assert Decimal(stats["total_revenue"]) == Decimal("290000")


def test_status_update(client, seed):
    order = create_order(client)

    response = client.patch(f"/orders/{order['id']}/status", json={"status": "DELIVERED"})
    assert response.status_code == 409
    assert response.json()["code"] == "invalid_transition"

    response = client.patch(
        f"/orders/{order['id']}/status", json={"status": "CONFIRMED", "reason": "Manual check"}
    )
    assert response.status_code == 200
    assert response.json()["status"] == "CONFIRMED"
    assert "Manual check" in response.json()["notes"]


def test_cancel_order(client, seed):
    order = create_order(client)

    response = client.patch(f"/orders/{order['id']}/cancel", json={"reason": "Ordered twice"})

    assert response.status_code == 200
    assert response.json()["status"] == "CANCELLED"
    again = client.patch(f"/orders/{order['id']}/cancel")
    assert again.status_code == 409
    assert again.json()["detail"] == "Order is already cancelled"


def test_add_tracking(client, seed):
    order = create_order(client)
    client.patch(f"/orders/{order['id']}/status", json={"status": "CONFIRMED"})
    client.patch(f"/orders/{order['id']}/status", json={"status": "PROCESSING"})

    response = client.post(
        f"/orders/{order['id']}/tracking",
        json={"status": "SHIPPED", "description": "Handed to courier", "location": "Tashkent"},
    )

    assert response.status_code == 201
    assert response.json()["location"] == "Tashkent"
    assert client.get(f"/orders/{order['id']}").json()["status"] == "SHIPPED"


def test_unsupported_payment_method(client, seed):
    order = create_order(client)

    response = client.post(f"/payments/{order['id']}/process", json={"method": "bitcoin"})

    assert response.status_code == 400
    assert response.json()["code"] == "invalid_argument"


def test_click_checkout_over_http(client, click, provider, seed):
    order = create_order(client)

    response = client.post(f"/payments/{order['id']}/process", json={"method": "click"})
    assert response.status_code == 200
    result = response.json()
    assert result["status"] == "PENDING"
    assert "amount=14500000" in result["payment_url"]

    fields = {
        "click_trans_id": "9001",
        "service_id": "svc1",
        "click_paydoc_id": "5501",
        "merchant_trans_id": str(result["payment_id"]),
        "amount": "14500000",
        "action": "0",
        "error": "0",
        "error_note": "Success",
        "sign_time": "2024-05-01 10:00:00",
    }
    fields["sign_string"] = click.sign(fields)
    prepare = client.post("/payments/click/callback", data=fields)
    assert prepare.status_code == 200
    assert prepare.json()["error"] == 0

    fields.update(action="1", merchant_prepare_id=str(result["payment_id"]))
    fields["sign_string"] = click.sign(fields)
    assert client.post("/payments/click/callback", data=fields).json()["error"] == 0

    status = client.get(f"/payments/{order['id']}/status").json()
    assert status["status"] == "CONFIRMED"
    assert status["payment_status"] == "PAID"
    assert status["payments"][0]["external_transaction_id"] == "9001"

    provider.reply({"error_code": 0, "payment_id": 5501})
    refund = client.post(f"/payments/{order['id']}/refund", json={"amount": "45000"})
    assert refund.status_code == 200
    assert refund.json()["status"] == "PARTIALLY_REFUNDED"
    assert Decimal(refund.json()["amount"]) == Decimal("45000")


def test_bad_callback_is_acknowledged_with_provider_error(client, click, seed):
    order = create_order(client)
    payment_id = client.post(f"/payments/{order['id']}/process", json={"method": "click"}).json()[
        "payment_id"
    ]

    response = client.post(
        "/payments/click/callback",
        data={"click_trans_id": "1", "merchant_trans_id": str(payment_id), "sign_string": "x"},
    )

    assert response.status_code == 200
    assert response.json()["error"] < 0


def test_payme_rpc_over_http(client, payme, seed):
    order = create_order(client)
    auth = "Basic " + base64.b64encode(b"Paycom:payme_key").decode()

    response = client.post(
        "/payments/payme/callback",
        json={
            "jsonrpc": "2.0",
            "id": 1,
            "method": "CheckPerformTransaction",
            "params": {"amount": 14500000, "account": {"order_id": str(order["id"])}},
        },
        headers={"Authorization": auth},
    )

    assert response.status_code == 200
    assert response.json() == {"jsonrpc": "2.0", "id": 1, "result": {"allow": True}}


def test_failed_refund_is_retryable(client, click, provider, seed):
    order = create_order(client)
    payment_id = client.post(f"/payments/{order['id']}/process", json={"method": "click"}).json()[
        "payment_id"
    ]
    for action in ("0", "1"):
        fields = {
            "click_trans_id": "9001",
            "service_id": "svc1",
            "click_paydoc_id": "5501",
            "merchant_trans_id": str(payment_id),
            "merchant_prepare_id": str(payment_id),
            "amount": "14500000",
            "action": action,
            "error": "0",
            "sign_time": "2024-05-01 10:00:00",
        }
        fields["sign_string"] = click.sign(fields)
        client.post("/payments/click/callback", data=fields)
    provider.fail(httpx.ConnectTimeout("timed out"))

    response = client.post(f"/payments/{order['id']}/refund")

    assert response.status_code == 502
    assert response.json()["code"] == "upstream_failure"
    assert response.json()["retryable"] is True
    assert client.get(f"/payments/{order['id']}/status").json()["payment_status"] == "PAID"


def test_payment_statistics(client, click, seed):
    order = create_order(client)
    client.post(f"/payments/{order['id']}/process", json={"method": "click"})

    stats = client.get("/payments/statistics").json()

    assert stats["total_count"] == 1
    assert stats["by_method"]["CLICK"]["count"] == 1
    assert stats["by_status"]["PENDING"]["count"] == 1


def test_callback_runs_in_a_worker_thread(client, click, mocker):
    calls = []

    def handle(db, method, callback):
        try:
            asyncio.get_running_loop()
            calls.append("event loop")
        except RuntimeError:
            calls.append("worker thread")
        return {"error": 0}

    mocker.patch("orderpay.orchestrator.handle_callback", side_effect=handle)

    response = client.post("/payments/click/callback", data={"click_trans_id": "1"})

    assert response.json() == {"error": 0}
    assert calls == ["worker thread"]


def test_payment_history_is_paged_and_scoped_to_the_caller(client, click, make_order, db):
    for _ in range(3):
        order = create_order(client)
        client.post(f"/payments/{order['id']}/process", json={"method": "click"})
    foreign = make_order(user_id=2)
    orchestrator.process_payment(db, foreign.id, "click")

    first = client.get("/payments", params={"limit": 2}).json()
    second = client.get("/payments", params={"limit": 2, "page": 2}).json()

    assert first["total"] == 3
    assert first["total_pages"] == 2
    assert len(first["payments"]) == 2
    assert len(second["payments"]) == 1
    ids = [p["id"] for p in first["payments"] + second["payments"]]
    assert ids == sorted(ids, reverse=True)
    assert all(p["payment_method"] == "CLICK" for p in first["payments"])
    assert client.get("/payments", params={"page": 0}).status_code == 400


def test_status_check_over_http(client, uzum, provider, seed):
    order = create_order(client)
    provider.reply({"success": True, "payment_id": "uz-1", "payment_url": "https://pay.uzum.uz/p/uz-1"})
    payment_id = client.post(f"/payments/{order['id']}/process", json={"method": "uzum"}).json()["payment_id"]
    provider.reply({"success": True, "status": "paid", "amount": 14500000, "payment_id": "uz-1"})

    response = client.post(f"/payments/attempts/{payment_id}/check")

    assert response.status_code == 200
    assert response.json()["status"] == "PAID"
    assert response.json()["order_id"] == order["id"]
    assert client.get(f"/orders/{order['id']}").json()["status"] == "CONFIRMED"


def test_status_check_of_foreign_payment_is_denied(client, click, make_order, db):
    foreign = make_order(user_id=2)
    payment_id = orchestrator.process_payment(db, foreign.id, "click").payment_id

    assert client.post(f"/payments/attempts/{payment_id}/check").status_code == 403
    assert client.post("/payments/attempts/999/check").status_code == 404


def test_token_is_required(client, seed):
    fastapi_app.dependency_overrides.pop(orderpay.auth.verify_token)

    response = client.get("/orders", headers={"Authorization": "Bearer not-a-jwt"})
    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid or missing token"

    token = jwt.encode({"sub": "2"}, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)
    response = client.get("/orders", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 200
    assert response.json()["total"] == 0
