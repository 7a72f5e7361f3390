"""BDD tests for dunning, grace and expiry."""

from protean import current_domain
from pytest_bdd import parsers, scenarios, when

from billing.invoice.invoice import Invoice
from billing.subscription.subscription import Subscription

scenarios("features/dunning.feature")


def _retry_due_at(subscription_id, config, number):
    invoice = current_domain.repository_for(Invoice).for_subscription(subscription_id)[0]
    return invoice.first_failed_at + config.retry_offsets[number - 1]


def _tick_at(drive, clock, at):
    clock.now = at

    async def scenario(engine):
        return await engine.tick()

    return drive(scenario)


@when(parsers.cfparse("dunning retry {number:d} is due and the processor reports it {result}"))
def retry_due(
    drive, clock, config, gateway, signed_event, charge_object, outcomes, subscription_id, number, result
):
    _tick_at(drive, clock, _retry_due_at(subscription_id, config, number))
    charge = gateway.charges()[-1]
    assert charge["metadata"]["attempt_number"] == str(number + 1)

    if result == "failed":
        event = signed_event("payment_intent.payment_failed", charge_object(charge, last_payment_error={"code": "card_declined"}))
    else:
        event = signed_event("payment_intent.succeeded", charge_object(charge))

    async def scenario(engine):
        return await engine.ingest_webhook(*event)

    outcomes.append(drive(scenario))


@when("the scheduler ticks at the grace deadline")
def tick_at_grace_deadline(drive, clock, subscription_id):
    deadline = current_domain.repository_for(Subscription).get(subscription_id).grace_deadline
    _tick_at(drive, clock, deadline)
