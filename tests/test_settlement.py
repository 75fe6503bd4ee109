"""Tests for payment settlement: client callback, webhook and their convergence."""

import asyncio
import json
from concurrent.futures import ThreadPoolExecutor

from storefront_orders import models, notifications, schemas, settlement
from storefront_orders.clients import gateway_client
from storefront_orders.database import SessionLocal
from storefront_orders.errors import UpstreamFailure
from storefront_orders.models import OrderStatus, PaymentStatus

from conftest import KEY_SECRET, SHIPPING_ADDRESS, WEBHOOK_SECRET


def webhook_event(event_type, gateway_order_id, payment_id="pay_001", amount=64000):
    return {
        "event": event_type,
        "payload": {
            "payment": {"entity": {
                "id": payment_id, "order_id": gateway_order_id, "status": "captured", "amount": amount,
            }},
            "order": {"entity": {"id": gateway_order_id}},
        },
    }


def post_webhook(client, sign, event, secret=WEBHOOK_SECRET):
    raw = json.dumps(event).encode("utf-8")
    return client.post(
        "/orders/webhook",
        content=raw,
        headers={"Content-Type": "application/json", "X-Razorpay-Signature": sign(secret, raw)},
    )


def callback_body(sign, product, gateway_order_id="order_abc", payment_id="pay_001", secret=KEY_SECRET):
    return {
        "gateway_order_id": gateway_order_id,
        "gateway_payment_id": payment_id,
        "signature": sign(secret, f"{gateway_order_id}|{payment_id}"),
        "order_data": {
            "items": [{"product_id": product.id, "size": "M", "color": "Indigo", "quantity": 1}],
            "shipping_address": dict(SHIPPING_ADDRESS),
            "payment_method": "gateway",
        },
    }


class TestVerifySignature:
    def test_matches(self, sign):
        assert settlement.verify_signature("s3cret", "a|b", sign("s3cret", "a|b"))

    def test_wrong_secret(self, sign):
        assert not settlement.verify_signature("s3cret", "a|b", sign("other", "a|b"))

    def test_missing_signature_or_secret(self, sign):
        assert not settlement.verify_signature("s3cret", "a|b", None)
        assert not settlement.verify_signature("", "a|b", sign("", "a|b"))


class TestClientCallback:
    def test_creates_paid_order(self, client, make_product, sign, headers_for, stock_of, issue_gateway_order):
        product = make_product()
        issue_gateway_order("order_abc", user_id=1)
        response = client.post("/orders/verify-payment", json=callback_body(sign, product), headers=headers_for(1))
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "confirmed"
        assert data["payment"]["status"] == "completed"
        assert data["payment"]["transaction_id"] == "pay_001"
        assert data["payment"]["gateway_order_id"] == "order_abc"
        assert data["payment"]["paid_at"] is not None
        assert stock_of(product.id) == 9

    def test_replay_returns_same_order(self, client, make_product, sign, headers_for, stock_of, issue_gateway_order):
        product = make_product()
        issue_gateway_order("order_abc", user_id=1)
        body = callback_body(sign, product)
        first = client.post("/orders/verify-payment", json=body, headers=headers_for(1)).json()
        second = client.post("/orders/verify-payment", json=body, headers=headers_for(1)).json()
        assert first["id"] == second["id"]
        assert stock_of(product.id) == 9

    def test_wrong_secret_creates_nothing(self, client, db, make_product, sign, headers_for, stock_of):
        product = make_product()
        body = callback_body(sign, product, secret="not-the-secret")
        response = client.post("/orders/verify-payment", json=body, headers=headers_for(1))
        assert response.status_code == 400
        assert response.json()["detail"] == "Payment verification failed"
        assert db.query(models.Order).count() == 0
        assert stock_of(product.id) == 10

    def test_guest_callback(self, client, make_product, sign, issue_gateway_order):
        product = make_product()
        issue_gateway_order("order_abc")
        body = callback_body(sign, product)
        body["order_data"]["email"] = "guest@example.com"
        response = client.post("/orders/verify-payment", json=body)
        assert response.status_code == 200
        assert response.json()["is_guest"] is True

    def test_order_must_match_paid_amount(self, client, db, make_product, sign, headers_for, stock_of, monkeypatch):
        cheap = make_product(name="Hair Tie", price="10.00")
        expensive = make_product(name="Silk Saree", price="9000.00")

        async def fake_create_order(amount, currency, receipt, notes=None):
            return {"id": "order_cheap", "amount": gateway_client.to_minor_units(amount), "currency": currency}

        monkeypatch.setattr(gateway_client, "create_order", fake_create_order)
        quote = client.post("/orders/create-payment", json={
            "items": [{"product_id": cheap.id, "size": "M", "color": "Indigo", "quantity": 1}],
        }, headers=headers_for(1)).json()
        assert quote["amount_minor"] == 6180

        body = callback_body(sign, expensive, gateway_order_id="order_cheap")
        response = client.post("/orders/verify-payment", json=body, headers=headers_for(1))
        assert response.status_code == 400
        assert db.query(models.Order).count() == 0
        assert stock_of(expensive.id) == 10

    def test_unknown_gateway_order(self, client, db, make_product, sign, headers_for, stock_of):
        product = make_product()
        response = client.post("/orders/verify-payment", json=callback_body(sign, product), headers=headers_for(1))
        assert response.status_code == 400
        assert db.query(models.Order).count() == 0
        assert stock_of(product.id) == 10

    def test_gateway_order_of_another_user(self, client, make_product, sign, headers_for, issue_gateway_order):
        product = make_product()
        issue_gateway_order("order_abc", user_id=2)
        response = client.post("/orders/verify-payment", json=callback_body(sign, product), headers=headers_for(1))
        assert response.status_code == 400

    def test_concurrent_callbacks_create_one_order(self, make_product, sign, stock_of, issue_gateway_order):
        product_id = make_product(variants=[("M", "Indigo", 5)]).id
        issue_gateway_order("order_race")
        callback = schemas.VerifyPaymentRequest(
            gateway_order_id="order_race",
            gateway_payment_id="pay_race",
            signature=sign(KEY_SECRET, "order_race|pay_race"),
            order_data=schemas.OrderCreate(
                items=[schemas.OrderItemIn(product_id=product_id, size="M", color="Indigo", quantity=1)],
                shipping_address=schemas.Address(**SHIPPING_ADDRESS),
                payment_method="gateway",
                email="guest@example.com",
            ),
        )

        def settle(_):
            session = SessionLocal()
            try:
                return settlement.settle_client_callback(session, callback).id
            finally:
                session.close()

        with ThreadPoolExecutor(max_workers=2) as pool:
            order_ids = list(pool.map(settle, range(2)))

        assert order_ids[0] == order_ids[1]
        session = SessionLocal()
        try:
            assert session.query(models.Order).count() == 1
        finally:
            session.close()
        assert stock_of(product_id) == 4


class TestWebhook:
    def create_pending_order(self, client, make_product, order_body, headers_for, issue_gateway_order,
                             gateway_order_id="order_hook"):
        product = make_product()
        issue_gateway_order(gateway_order_id, user_id=1)
        body = order_body(product, payment_method="gateway", gateway_order_id=gateway_order_id)
        response = client.post("/orders", json=body, headers=headers_for(1))
        assert response.status_code == 201
        assert response.json()["status"] == "pending"
        return response.json()["id"]

    def test_settles_pending_order(self, client, make_product, order_body, headers_for, sign, issue_gateway_order):
        order_id = self.create_pending_order(client, make_product, order_body, headers_for, issue_gateway_order)
        response = post_webhook(client, sign, webhook_event("payment.captured", "order_hook"))
        assert response.status_code == 200
        assert response.json()["outcome"] == "applied"

        order = client.get(f"/orders/{order_id}", headers=headers_for(1)).json()
        assert order["status"] == "confirmed"
        assert order["payment"]["status"] == "completed"
        assert order["payment"]["transaction_id"] == "pay_001"

        history = client.get(f"/orders/{order_id}/history", headers=headers_for(1)).json()
        assert [entry["status"] for entry in history] == ["pending", "confirmed"]

    def test_replay_is_noop(self, client, make_product, order_body, headers_for, sign, issue_gateway_order):
        order_id = self.create_pending_order(client, make_product, order_body, headers_for, issue_gateway_order)
        event = webhook_event("order.paid", "order_hook")
        assert post_webhook(client, sign, event).json()["outcome"] == "applied"
        assert post_webhook(client, sign, event).json()["outcome"] == "already_settled"

        history = client.get(f"/orders/{order_id}/history", headers=headers_for(1)).json()
        assert len(history) == 2

    def test_captured_amount_must_match_total(self, client, make_product, order_body, headers_for, sign,
                                              issue_gateway_order):
        order_id = self.create_pending_order(client, make_product, order_body, headers_for, issue_gateway_order)
        response = post_webhook(client, sign, webhook_event("payment.captured", "order_hook", amount=100))
        assert response.status_code == 400

        order = client.get(f"/orders/{order_id}", headers=headers_for(1)).json()
        assert order["status"] == "pending"
        assert order["payment"]["status"] == "pending"

    def test_unknown_order_is_tolerated(self, client, db, sign):
        response = post_webhook(client, sign, webhook_event("payment.captured", "order_unknown"))
        assert response.status_code == 200
        assert response.json()["outcome"] == "no_order"
        assert db.query(models.Order).count() == 0

    def test_bad_signature(self, client, make_product, order_body, headers_for, sign, issue_gateway_order):
        order_id = self.create_pending_order(client, make_product, order_body, headers_for, issue_gateway_order)
        response = post_webhook(client, sign, webhook_event("payment.captured", "order_hook"), secret="forged")
        assert response.status_code == 400
        order = client.get(f"/orders/{order_id}", headers=headers_for(1)).json()
        assert order["payment"]["status"] == "pending"

    def test_missing_signature(self, client):
        response = client.post("/orders/webhook", json=webhook_event("payment.captured", "order_hook"))
        assert response.status_code == 400

    def test_other_events_ignored(self, client, sign):
        response = post_webhook(client, sign, webhook_event("refund.created", "order_hook"))
        assert response.status_code == 200
        assert response.json()["outcome"] == "ignored"

    def test_payment_failed_then_captured(self, client, make_product, order_body, headers_for, sign,
                                          issue_gateway_order):
        order_id = self.create_pending_order(client, make_product, order_body, headers_for, issue_gateway_order)
        assert post_webhook(client, sign, webhook_event("payment.failed", "order_hook")).json()["outcome"] == "payment_failed"
        order = client.get(f"/orders/{order_id}", headers=headers_for(1)).json()
        assert order["payment"]["status"] == "failed"
        assert order["status"] == "pending"

        assert post_webhook(client, sign, webhook_event("payment.captured", "order_hook")).json()["outcome"] == "applied"
        order = client.get(f"/orders/{order_id}", headers=headers_for(1)).json()
        assert order["payment"]["status"] == "completed"
        assert order["status"] == "confirmed"


class TestCaptureAfterCancellation:
    def test_capture_is_refunded(self, client, make_product, order_body, headers_for, sign, issue_gateway_order,
                                 monkeypatch):
        product = make_product()
        issue_gateway_order("order_late", user_id=1)
        body = order_body(product, payment_method="gateway", gateway_order_id="order_late")
        order_id = client.post("/orders", json=body, headers=headers_for(1)).json()["id"]
        client.put(f"/orders/{order_id}/cancel", json={}, headers=headers_for(1))

        scheduled = []

        async def done():
            return None

        def fake_refund_late_capture(late_order_id):
            scheduled.append(late_order_id)
            return done()

        monkeypatch.setattr(settlement, "refund_late_capture", fake_refund_late_capture)
        response = post_webhook(client, sign, webhook_event("payment.captured", "order_late"))
        assert response.json()["outcome"] == "applied"
        assert scheduled == [order_id]

        order = client.get(f"/orders/{order_id}", headers=headers_for(1)).json()
        assert order["status"] == "cancelled"
        history = client.get(f"/orders/{order_id}/history", headers=headers_for(1)).json()
        assert "refund requested" in history[-1]["note"]

    def test_refund_late_capture(self, db, make_product, order_body, client, headers_for, issue_gateway_order,
                                 monkeypatch):
        product = make_product()
        issue_gateway_order("order_late", user_id=1)
        body = order_body(product, payment_method="gateway", gateway_order_id="order_late")
        order_id = client.post("/orders", json=body, headers=headers_for(1)).json()["id"]
        client.put(f"/orders/{order_id}/cancel", json={}, headers=headers_for(1))
        monkeypatch.setattr(notifications, "fire_and_forget", lambda coro: coro.close())
        assert settlement.apply_settlement(db, "order_late", "pay_late") == settlement.APPLIED

        refunds = []

        async def fake_refund(payment_id, amount, notes=None):
            refunds.append(payment_id)
            return {"id": "rfnd_late"}

        monkeypatch.setattr(gateway_client, "refund_payment", fake_refund)
        asyncio.run(settlement.refund_late_capture(order_id))

        assert refunds == ["pay_late"]
        db.expire_all()
        order = db.get(models.Order, order_id)
        assert order.payment_status == PaymentStatus.REFUNDED
        assert order.refund_transaction_id == "rfnd_late"


class TestChannelConvergence:
    def test_callback_then_webhook(self, client, make_product, sign, headers_for, stock_of, issue_gateway_order):
        product = make_product()
        issue_gateway_order("order_abc", user_id=1)
        order = client.post("/orders/verify-payment", json=callback_body(sign, product), headers=headers_for(1)).json()
        response = post_webhook(client, sign, webhook_event("payment.captured", "order_abc"))
        assert response.json()["outcome"] == "already_settled"
        assert stock_of(product.id) == 9

        history = client.get(f"/orders/{order['id']}/history", headers=headers_for(1)).json()
        assert len(history) == 1

    def test_webhook_then_callback(self, client, make_product, order_body, headers_for, sign, stock_of,
                                   issue_gateway_order):
        product = make_product()
        issue_gateway_order("order_abc", user_id=1)
        body = order_body(product, payment_method="gateway", gateway_order_id="order_abc")
        pending = client.post("/orders", json=body, headers=headers_for(1)).json()
        post_webhook(client, sign, webhook_event("payment.captured", "order_abc"))

        settled = client.post("/orders/verify-payment", json=callback_body(sign, product), headers=headers_for(1)).json()
        assert settled["id"] == pending["id"]
        assert settled["payment"]["status"] == "completed"
        assert stock_of(product.id) == 9


class TestApplySettlement:
    def test_outcomes(self, db, make_product, order_body, client, headers_for, issue_gateway_order):
        product = make_product()
        issue_gateway_order("order_direct", user_id=1)
        body = order_body(product, payment_method="gateway", gateway_order_id="order_direct")
        client.post("/orders", json=body, headers=headers_for(1))

        assert settlement.apply_settlement(db, "order_direct", "pay_9") == settlement.APPLIED
        assert settlement.apply_settlement(db, "order_direct", "pay_9") == settlement.ALREADY_SETTLED
        assert settlement.apply_settlement(db, "order_missing") == settlement.NO_ORDER

        order = db.query(models.Order).filter(models.Order.gateway_order_id == "order_direct").one()
        assert order.status == OrderStatus.CONFIRMED
        assert order.payment_status == PaymentStatus.COMPLETED


class TestCreatePayment:
    def test_quotes_and_opens_gateway_order(self, client, db, make_product, headers_for, monkeypatch):
        product = make_product()
        calls = []

        async def fake_create_order(amount, currency, receipt, notes=None):
            calls.append(amount)
            return {"id": "order_new", "amount": gateway_client.to_minor_units(amount), "currency": currency}

        monkeypatch.setattr(gateway_client, "create_order", fake_create_order)
        response = client.post("/orders/create-payment", json={
            "items": [{"product_id": product.id, "size": "M", "color": "Indigo", "quantity": 1}],
        }, headers=headers_for(3))
        assert response.status_code == 200
        data = response.json()
        assert data["gateway_order_id"] == "order_new"
        assert data["amount_minor"] == 64000
        assert data["currency"] == "INR"
        assert data["key_id"] == "rzp_test_key"
        assert len(calls) == 1

        issued = db.get(models.GatewayOrder, "order_new")
        assert issued.amount_minor == 64000
        assert issued.user_id == 3
        assert issued.order_id is None

    def test_gateway_down(self, client, db, make_product, monkeypatch):
        product = make_product()

        async def failing_create_order(amount, currency, receipt, notes=None):
            raise UpstreamFailure("Payment gateway unavailable, please retry")

        monkeypatch.setattr(gateway_client, "create_order", failing_create_order)
        response = client.post("/orders/create-payment", json={
            "items": [{"product_id": product.id, "size": "M", "color": "Indigo", "quantity": 1}],
        })
        assert response.status_code == 503
        assert db.query(models.GatewayOrder).count() == 0

    def test_payment_failed_is_acknowledged(self, client):
        response = client.post("/orders/payment-failed", json={"gateway_order_id": "order_x"})
        assert response.status_code == 200
        assert response.json() == {"status": "acknowledged"}
