"""Integration tests for the billing API via TestClient."""

from contextlib import asynccontextmanager

import pytest
from fastapi import FastAPI, Request
from fastapi.testclient import TestClient
from protean import current_domain
from protean.integrations.fastapi import register_exception_handlers

from billing.api.routes import routers
from billing.domain import billing
from billing.invoice import payment as billing_payment
from billing.invoice.invoice import Invoice
from billing.outbound.outbox import MessageStatus, OutboundMessage, messages_for


@pytest.fixture()
def client(engine):
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await engine.start(background=False)
        try:
            yield
        finally:
            await engine.stop()

    app = FastAPI(lifespan=lifespan)
    app.state.engine = engine

    @app.middleware("http")
    async def domain_context_middleware(request: Request, call_next):
        with billing.domain_context():
            return await call_next(request)

    for router in routers:
        app.include_router(router)
    register_exception_handlers(app)

    with TestClient(app) as client:
        yield client


def _setup_customer(client, customer_id="cust-api-001"):
    response = client.post("/customers", json={"customer_id": customer_id, "email": "api@example.com"})
    assert response.status_code == 201
    response = client.put(f"/customers/{customer_id}/payment-method", json={"payment_method": "pm_card_visa"})
    assert response.status_code == 200
    return customer_id


def _register_plan(client, **overrides):
    body = {"name": "Family", "tier": "family", "price": 1999} | overrides
    response = client.post("/plans", json=body)
    assert response.status_code == 201
    return response.json()["id"]


def _subscribe(client, plan_id, customer_id="cust-api-001"):
    response = client.post("/subscriptions", json={"customer_id": customer_id, "plan_id": plan_id})
    assert response.status_code == 201
    return response.json()["id"]


class TestWebhookEndpoint:
    def test_bad_signature_is_400(self, client, signed_event):
        body, _ = signed_event("payment_intent.succeeded", {"id": "pi_1"})
        response = client.post(
            "/webhooks/processor",
            content=body,
            headers={"Stripe-Signature": "t=1,v1=deadbeef", "Content-Type": "application/json"},
        )
        assert response.status_code == 400

    def test_missing_signature_is_400(self, client, signed_event):
        body, _ = signed_event("payment_intent.succeeded", {"id": "pi_1"})
        response = client.post("/webhooks/processor", content=body)
        assert response.status_code == 400

    def test_payment_webhook_is_applied_once(self, client, gateway, signed_event):
        _setup_customer(client)
        subscription_id = _subscribe(client, _register_plan(client))
        charge = gateway.charges()[0]
        body, header = signed_event(
            "payment_intent.succeeded",
            {"id": "pi_api", "object": "payment_intent", "metadata": charge["metadata"]},
            event_id="evt_api_paid",
        )

        first = client.post("/webhooks/processor", content=body, headers={"Stripe-Signature": header})
        second = client.post("/webhooks/processor", content=body, headers={"Stripe-Signature": header})

        assert first.status_code == 200
        assert first.json() == {"outcome": "applied"}
        assert second.json() == {"outcome": "duplicate"}
        state = client.get(f"/subscriptions/{subscription_id}").json()
        assert state["invoices"][0]["status"] == "paid"

    def test_failed_commit_is_503_and_redelivery_applies(self, client, gateway, signed_event, monkeypatch):
        _setup_customer(client)
        subscription_id = _subscribe(client, _register_plan(client))
        charge = gateway.charges()[0]
        body, header = signed_event(
            "payment_intent.succeeded",
            {"id": "pi_api", "object": "payment_intent", "metadata": charge["metadata"]},
            event_id="evt_api_retry",
        )

        def lost_connection(*args, **kwargs):
            raise RuntimeError("connection reset by database")

        monkeypatch.setattr(billing_payment, "apply_payment", lost_connection)
        failed = client.post("/webhooks/processor", content=body, headers={"Stripe-Signature": header})
        monkeypatch.undo()
        retried = client.post("/webhooks/processor", content=body, headers={"Stripe-Signature": header})

        assert failed.status_code == 503
        assert retried.status_code == 200
        assert retried.json() == {"outcome": "applied"}
        state = client.get(f"/subscriptions/{subscription_id}").json()
        assert state["invoices"][0]["status"] == "paid"

    def test_signed_body_that_is_not_utf8_is_400(self, client, config, sign_payload):
        body = b'{"id": "evt_bin", "type": "payment_intent.succeeded", "note": "\xff\xfe"}'
        response = client.post(
            "/webhooks/processor",
            content=body,
            headers={"Stripe-Signature": sign_payload(body, config.webhook_secret)},
        )
        assert response.status_code == 400

    def test_unknown_event_is_acknowledged(self, client, signed_event):
        body, header = signed_event("invoice.finalized", {"id": "in_1"})
        response = client.post("/webhooks/processor", content=body, headers={"Stripe-Signature": header})
        assert response.status_code == 200
        assert response.json() == {"outcome": "ignored"}


class TestSubscriptionEndpoints:
    def test_create_and_read_subscription(self, client):
        _setup_customer(client)
        plan_id = _register_plan(client, name="Student", tier="student", price=999, trial_days=14)

        subscription_id = _subscribe(client, plan_id)
        response = client.get(f"/subscriptions/{subscription_id}")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "trialing"
        assert data["plan_id"] == plan_id
        assert data["invoices"] == []

    def test_second_live_subscription_is_400(self, client):
        _setup_customer(client)
        plan_id = _register_plan(client)
        _subscribe(client, plan_id)

        response = client.post("/subscriptions", json={"customer_id": "cust-api-001", "plan_id": plan_id})
        assert response.status_code == 400

    def test_unknown_subscription_is_404(self, client):
        assert client.get("/subscriptions/sub-missing").status_code == 404

    def test_cancel_then_cancel_again_is_409(self, client):
        _setup_customer(client)
        subscription_id = _subscribe(client, _register_plan(client))

        response = client.post(f"/subscriptions/{subscription_id}/cancel", json={"mode": "immediate"})
        assert response.status_code == 200
        assert response.json() == {"outcome": "applied"}

        response = client.post(f"/subscriptions/{subscription_id}/cancel", json={"mode": "immediate"})
        assert response.status_code == 409

    def test_invalid_cancel_mode_is_422(self, client):
        response = client.post("/subscriptions/sub-1/cancel", json={"mode": "sometime"})
        assert response.status_code == 422

    def test_plan_change_to_same_plan_is_409(self, client):
        _setup_customer(client)
        plan_id = _register_plan(client)
        subscription_id = _subscribe(client, plan_id)

        response = client.post(f"/subscriptions/{subscription_id}/plan", json={"new_plan_id": plan_id})
        assert response.status_code == 409

    def test_collect_while_active_is_409(self, client):
        _setup_customer(client)
        subscription_id = _subscribe(client, _register_plan(client))
        response = client.post(f"/subscriptions/{subscription_id}/collect", json={})
        assert response.status_code == 409

    def test_refund_of_unpaid_invoice_is_400(self, client):
        _setup_customer(client)
        subscription_id = _subscribe(client, _register_plan(client))
        invoice = current_domain.repository_for(Invoice).for_subscription(subscription_id)[0]

        response = client.post(f"/subscriptions/{subscription_id}/refunds", json={"invoice_id": str(invoice.id)})
        assert response.status_code == 400


class TestOutboundEndpoints:
    def test_requeue_dead_message(self, client, bus, config):
        bus.fail_next(config.publish_max_attempts)
        _setup_customer(client)
        subscription_id = _subscribe(client, _register_plan(client, trial_days=7))

        message = messages_for(subscription_id)[0]
        repo = current_domain.repository_for(OutboundMessage)
        message.status = MessageStatus.DEAD.value
        repo.add(message)

        response = client.post(f"/outbound/{message.idempotency_key}/requeue")

        assert response.status_code == 200
        assert response.json()["status"] == "pending"
        assert response.json()["attempts"] == 0
