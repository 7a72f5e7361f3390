from datetime import UTC, datetime, timedelta

import pytest
from protean import current_domain
from protean.exceptions import ValidationError

from billing.audit.audit import AuditAction, trail_for
from billing.invoice.invoice import ChargeState, Invoice, InvoiceKind
from billing.invoice.payment import RecordPaymentFailure
from billing.invoice.submission import RecordChargeSubmitted
from billing.outbound.outbox import messages_for
from billing.plan.registration import RegisterPlan
from billing.subscription.plan_change import ChangePlan
from billing.subscription.subscription import Subscription
from billing.subscription.sweep import RunSubscriptionSweep

T0 = datetime(2026, 1, 1, tzinfo=UTC)
HALFWAY = T0 + timedelta(days=15, hours=12)  # 31-day January period


def _process(command):
    return current_domain.process(command, asynchronous=False)


def _subscription(subscription_id):
    return current_domain.repository_for(Subscription).get(subscription_id)


def _invoices(subscription_id):
    return current_domain.repository_for(Invoice).for_subscription(subscription_id)


class TestUpgrade:
    def test_bills_prorated_difference(self, subscribe, plans):
        subscription_id = subscribe("family")

        result = _process(ChangePlan(subscription_id=subscription_id, new_plan_id=plans["school"], requested_at=HALFWAY))

        assert result == "applied"
        assert _subscription(subscription_id).plan_id == plans["school"]
        proration = _invoices(subscription_id)[-1]
        assert proration.kind == InvoiceKind.PRORATION.value
        assert proration.amount == 1000
        assert proration.charge_state == ChargeState.QUEUED.value
        assert proration.period_end == datetime(2026, 2, 1, tzinfo=UTC)

    def test_publishes_plan_changed(self, subscribe, plans):
        subscription_id = subscribe("family")
        _process(ChangePlan(subscription_id=subscription_id, new_plan_id=plans["school"], requested_at=HALFWAY))

        message = messages_for(subscription_id)[-1]
        assert message.topic == "payments.plan_changed"
        assert message.body["old_plan_id"] == plans["family"]
        assert message.body["adjustment"] == 1000

    def test_change_at_period_start_bills_full_difference(self, subscribe, plans):
        subscription_id = subscribe("family")
        _process(ChangePlan(subscription_id=subscription_id, new_plan_id=plans["school"], requested_at=T0))
        assert _invoices(subscription_id)[-1].amount == 2000


class TestDowngrade:
    def test_grants_credit_instead_of_invoice(self, subscribe, plans):
        subscription_id = subscribe("school")

        _process(ChangePlan(subscription_id=subscription_id, new_plan_id=plans["family"], requested_at=HALFWAY))

        subscription = _subscription(subscription_id)
        assert subscription.credit_balance == 1000
        assert [i.kind for i in _invoices(subscription_id)] == [InvoiceKind.INITIAL.value]
        credits = [e for e in trail_for(subscription_id) if e.action == AuditAction.CREDIT_GRANTED.value]
        assert [e.amount for e in credits] == [1000]

    def test_credit_is_consumed_by_next_renewal(self, subscribe, plans):
        subscription_id = subscribe("school")
        _process(ChangePlan(subscription_id=subscription_id, new_plan_id=plans["family"], requested_at=HALFWAY))

        _process(RunSubscriptionSweep(subscription_id=subscription_id, as_of=datetime(2026, 2, 1, tzinfo=UTC)))

        renewal = _invoices(subscription_id)[-1]
        assert renewal.kind == InvoiceKind.RENEWAL.value
        assert renewal.amount == 999
        assert _subscription(subscription_id).credit_balance == 0
        applied = [e for e in trail_for(subscription_id) if e.action == AuditAction.CREDIT_APPLIED.value]
        assert [e.amount for e in applied] == [1000]


class TestChangePlanGuards:
    def test_same_plan_is_rejected(self, subscribe, plans):
        subscription_id = subscribe("family")
        result = _process(ChangePlan(subscription_id=subscription_id, new_plan_id=plans["family"], requested_at=HALFWAY))
        assert result == "rejected"
        assert len(_invoices(subscription_id)) == 1

    def test_rejected_while_past_due(self, subscribe, plans):
        subscription_id = subscribe("family")
        invoice = _invoices(subscription_id)[0]
        _process(
            RecordChargeSubmitted(
                subscription_id=subscription_id, invoice_id=str(invoice.id), attempt_number=1, charge_id="pi_1", submitted_at=T0
            )
        )
        _process(
            RecordPaymentFailure(subscription_id=subscription_id, invoice_id=str(invoice.id), attempt_number=1, occurred_at=T0)
        )

        result = _process(ChangePlan(subscription_id=subscription_id, new_plan_id=plans["school"], requested_at=HALFWAY))

        assert result == "rejected"
        assert _subscription(subscription_id).plan_id == plans["family"]

    def test_unknown_plan_is_rejected(self, subscribe):
        subscription_id = subscribe("family")
        assert _process(ChangePlan(subscription_id=subscription_id, new_plan_id="plan-missing", requested_at=HALFWAY)) == "rejected"

    def test_currency_mismatch_is_invalid(self, subscribe):
        subscription_id = subscribe("family")
        euro = _process(RegisterPlan(plan_id="plan-family-eur", name="Family EUR", tier="family", price=1899, currency="eur"))
        with pytest.raises(ValidationError):
            _process(ChangePlan(subscription_id=subscription_id, new_plan_id=euro, requested_at=HALFWAY))

    def test_duplicate_delivery_applies_once(self, subscribe, plans):
        subscription_id = subscribe("family")
        command = dict(
            subscription_id=subscription_id,
            new_plan_id=plans["school"],
            requested_at=HALFWAY,
            ledger_key="bus:delivery-1",
        )
        assert _process(ChangePlan(**command)) == "applied"
        assert _process(ChangePlan(**command)) == "duplicate"
        assert len(_invoices(subscription_id)) == 2
