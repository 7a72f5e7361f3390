"""Shared BDD fixtures and step definitions for the billing lifecycle."""

import pytest
from protean import current_domain
from pytest_bdd import given, parsers, then, when

from billing.invoice.invoice import Invoice
from billing.subscription.creation import CreateSubscription
from billing.subscription.subscription import Subscription


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------
@pytest.fixture()
def outcomes():
    """Ingestion outcomes collected by When steps."""
    return []


@pytest.fixture()
def charge_object():
    """Payment intent as the processor reports it for a charge the engine submitted."""

    def _charge_object(charge: dict, **fields) -> dict:
        return {"id": f"pi_{charge['idempotency_key']}", "object": "payment_intent", "metadata": charge["metadata"], **fields}

    return _charge_object


@pytest.fixture()
def plan_ids(plans):
    return {key.capitalize(): plan_id for key, plan_id in plans.items()}


# ---------------------------------------------------------------------------
# Shared steps
# ---------------------------------------------------------------------------
@given("a customer with a default payment method", target_fixture="customer_id")
def customer_with_payment_method(customer):
    return customer


@when(parsers.cfparse('the customer subscribes to the "{plan}" plan'), target_fixture="subscription_id")
def subscribe_through_engine(drive, clock, customer_id, plan_ids, plan):
    async def scenario(engine):
        return await engine.dispatch(CreateSubscription(customer_id=customer_id, plan_id=plan_ids[plan], started_at=clock()))

    return drive(scenario)


@when(parsers.cfparse("the scheduler ticks {days:d} days later"))
def tick_later(drive, clock, days):
    clock.advance(days=days)

    async def scenario(engine):
        return await engine.tick()

    drive(scenario)


@when("the processor reports the latest charge failed")
def latest_charge_failed(drive, gateway, signed_event, charge_object, outcomes):
    failure = charge_object(gateway.charges()[-1], last_payment_error={"code": "card_declined"})

    async def scenario(engine):
        return await engine.ingest_webhook(*signed_event("payment_intent.payment_failed", failure))

    outcomes.append(drive(scenario))


@then(parsers.cfparse('the subscription is "{status}"'))
def subscription_status_is(subscription_id, status):
    assert current_domain.repository_for(Subscription).get(subscription_id).status == status


@then(parsers.cfparse('the subscription has {count:d} invoice with status "{status}"'))
@then(parsers.cfparse('the subscription has {count:d} invoices with status "{status}"'))
def invoices_with_status(subscription_id, count, status):
    invoices = current_domain.repository_for(Invoice).for_subscription(subscription_id)
    assert len(invoices) == count
    assert all(invoice.status == status for invoice in invoices)
