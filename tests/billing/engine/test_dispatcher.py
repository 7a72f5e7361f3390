import asyncio
from datetime import UTC, datetime, timedelta

import pytest
from protean import current_domain
from protean.exceptions import ObjectNotFoundError

from billing.customer.customer import Customer
from billing.customer.provisioning import ProvisionCustomer, SetDefaultPaymentMethod
from billing.invoice.invoice import Invoice, InvoiceStatus
from billing.subscription.creation import CreateSubscription
from billing.subscription.subscription import Subscription, SubscriptionStatus

T0 = datetime(2026, 1, 1, tzinfo=UTC)


def _second_customer():
    current_domain.process(ProvisionCustomer(customer_id="cust-002"), asynchronous=False)
    current_domain.process(
        SetDefaultPaymentMethod(customer_id="cust-002", payment_method="pm_card_mastercard"), asynchronous=False
    )


class TestDispatcherLifecycle:
    def test_submit_requires_running_dispatcher(self, engine):
        async def scenario():
            with pytest.raises(RuntimeError):
                engine.dispatcher.submit(ProvisionCustomer(customer_id="cust-x"))

        asyncio.run(scenario())

    def test_errors_reach_the_caller(self, drive, plans):
        async def scenario(engine):
            with pytest.raises(ObjectNotFoundError):
                await engine.dispatch(CreateSubscription(customer_id="nobody", plan_id=plans["family"], started_at=T0))

        drive(scenario)

    def test_drain_waits_for_submitted_commands(self, drive):
        async def scenario(engine):
            futures = [engine.dispatcher.submit(ProvisionCustomer(customer_id=f"cust-{n}")) for n in range(10)]
            await engine.dispatcher.drain()
            return all(future.done() for future in futures)

        assert drive(scenario) is True
        assert len(current_domain.repository_for(Customer)._dao.query.all().items) == 10


class TestSerialization:
    def test_same_key_applies_in_submission_order(self, drive, customer):
        async def scenario(engine):
            futures = [
                engine.dispatcher.submit(SetDefaultPaymentMethod(customer_id=customer, payment_method=f"pm_{n}"))
                for n in range(20)
            ]
            await asyncio.gather(*futures)

        drive(scenario)
        assert current_domain.repository_for(Customer).get(customer).default_payment_method == "pm_19"

    def test_slow_unit_does_not_block_other_units(self, drive, gateway, plans, customer):
        _second_customer()

        async def scenario(engine):
            gate = gateway.hold("sub-slow")
            slow = asyncio.create_task(
                engine.dispatch(
                    CreateSubscription(
                        customer_id=customer, plan_id=plans["family"], subscription_id="sub-slow", started_at=T0
                    )
                )
            )
            await asyncio.sleep(0.01)

            fast = await asyncio.wait_for(
                engine.dispatch(
                    CreateSubscription(
                        customer_id="cust-002", plan_id=plans["family"], subscription_id="sub-fast", started_at=T0
                    )
                ),
                timeout=0.5,
            )
            queued_behind = asyncio.create_task(
                engine.dispatch(SetDefaultPaymentMethod(customer_id=customer, payment_method="pm_new"))
            )
            await asyncio.sleep(0.01)
            blocked = not slow.done() and not queued_behind.done()

            gate.set()
            await asyncio.gather(slow, queued_behind)
            return fast, blocked

        fast, blocked = drive(scenario)

        assert fast == "sub-fast"
        assert blocked is True
        invoices = current_domain.repository_for(Invoice).for_subscription("sub-slow")
        assert invoices[0].status == InvoiceStatus.OPEN.value
        assert current_domain.repository_for(Customer).get(customer).default_payment_method == "pm_new"


class TestTick:
    def test_tick_waits_for_fanned_out_sweeps(self, drive, clock, plans, customer):
        async def scenario(engine):
            subscription_id = await engine.dispatch(
                CreateSubscription(customer_id=customer, plan_id=plans["student"], started_at=T0)
            )
            clock.advance(days=14)
            result = await engine.tick()
            return subscription_id, result

        subscription_id, result = drive(scenario)

        assert result.subscription_ids == [subscription_id]
        assert all(sweep.done() for sweep in result.sweeps)
        subscription = current_domain.repository_for(Subscription).get(subscription_id)
        assert subscription.status == SubscriptionStatus.ACTIVE.value

    def test_tick_without_due_work(self, drive, clock):
        async def scenario(engine):
            return await engine.tick(T0 + timedelta(days=1))

        result = drive(scenario)
        assert result.subscription_ids == []
        assert result.sweeps == []
