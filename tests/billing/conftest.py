"""Shared fixtures for the billing test suite."""

import asyncio
import hashlib
import hmac
import json
import time
from datetime import UTC, datetime, timedelta
from uuid import uuid4

import pytest
from protean import current_domain

from billing.config import BillingConfig, use_config
from billing.customer.provisioning import ProvisionCustomer, SetDefaultPaymentMethod
from billing.domain import billing
from billing.engine import BillingEngine
from billing.gateway.fake_adapter import FakeGateway
from billing.outbound.bus.fake_adapter import FakeMessageBus
from billing.plan.registration import RegisterPlan
from billing.subscription.creation import CreateSubscription

T0 = datetime(2026, 1, 1, tzinfo=UTC)


def _sign(payload: str | bytes, secret: str, timestamp: int | None = None) -> str:
    """Build a ``Stripe-Signature`` header for ``payload``, as the processor would."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    body = payload if isinstance(payload, bytes) else payload.encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), f"{timestamp}.".encode() + body, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


class FakeClock:
    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def config():
    return BillingConfig(worker_count=4, external_call_timeout=1.0)


@pytest.fixture(autouse=True)
def _bound_config(config):
    with use_config(config):
        yield


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def plans():
    """Catalogue used across the suite; prices in cents."""
    catalogue = {
        "student": {"name": "Student", "tier": "student", "price": 999, "trial_days": 14},
        "family": {"name": "Family", "tier": "family", "price": 1999},
        "school": {"name": "School", "tier": "school", "price": 3999},
        "freemium": {"name": "Freemium", "tier": "freemium", "price": 0},
    }
    return {
        key: current_domain.process(RegisterPlan(plan_id=f"plan-{key}", **attributes), asynchronous=False)
        for key, attributes in catalogue.items()
    }


@pytest.fixture
def customer():
    current_domain.process(ProvisionCustomer(customer_id="cust-001", email="ada@example.com"), asynchronous=False)
    current_domain.process(
        SetDefaultPaymentMethod(customer_id="cust-001", payment_method="pm_card_visa", processor_customer_ref="cus_001"),
        asynchronous=False,
    )
    return "cust-001"


@pytest.fixture
def subscribe(plans, customer):
    """Create a subscription directly through the domain (no engine, no external calls)."""

    def _subscribe(plan: str = "family", at: datetime = T0, customer_id: str = customer, subscription_id=None):
        command = CreateSubscription(
            customer_id=customer_id,
            plan_id=plans[plan],
            subscription_id=subscription_id or f"sub-{uuid4().hex[:8]}",
            started_at=at,
        )
        return current_domain.process(command, asynchronous=False)

    return _subscribe


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def bus():
    return FakeMessageBus()


@pytest.fixture
def engine(config, gateway, bus, clock):
    return BillingEngine(billing, config, gateway=gateway, bus=bus, clock=clock)


@pytest.fixture
def drive(engine):
    """Run ``scenario(engine)`` on a fresh event loop with the worker pool started."""

    def _drive(scenario):
        async def _run():
            await engine.start(background=False)
            try:
                return await scenario(engine)
            finally:
                await engine.stop()

        return asyncio.run(_run())

    return _drive


@pytest.fixture
def sign_payload():
    return _sign


@pytest.fixture
def signed_event(config, clock, sign_payload):
    """Build a signed processor delivery: returns ``(body, signature_header)``."""

    def _signed_event(event_type: str, obj: dict, event_id: str | None = None, created: datetime | None = None):
        body = json.dumps(
            {
                "id": event_id or f"evt_{uuid4().hex[:16]}",
                "object": "event",
                "type": event_type,
                "created": int((created or clock()).timestamp()),
                "data": {"object": obj},
            }
        )
        return body, sign_payload(body, config.webhook_secret)

    return _signed_event
