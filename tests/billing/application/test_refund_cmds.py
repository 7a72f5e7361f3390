from datetime import UTC, datetime, timedelta

import pytest
from protean import current_domain
from protean.exceptions import ValidationError

from billing.audit.audit import AuditAction, trail_for
from billing.invoice.invoice import Invoice
from billing.invoice.payment import MarkInvoicePaid
from billing.invoice.submission import RecordChargeSubmitted
from billing.outbound.outbox import messages_for
from billing.refund.refund import Refund, RefundStatus
from billing.refund.refunding import (
    CompleteRefund,
    FailRefund,
    RecordRefundSubmissionFailure,
    RecordRefundSubmitted,
    RequestRefund,
)
from billing.subscription.cancellation import CancelSubscription
from billing.subscription.subscription import Subscription
from billing.subscription.sweep import RunSubscriptionSweep, Tick

T0 = datetime(2026, 1, 1, tzinfo=UTC)


def _process(command):
    return current_domain.process(command, asynchronous=False)


def _refund(refund_id):
    return current_domain.repository_for(Refund).get(refund_id)


@pytest.fixture
def paid_invoice(subscribe):
    subscription_id = subscribe("family")
    invoice = current_domain.repository_for(Invoice).for_subscription(subscription_id)[0]
    _process(
        RecordChargeSubmitted(
            subscription_id=subscription_id, invoice_id=str(invoice.id), attempt_number=1, charge_id="pi_1", submitted_at=T0
        )
    )
    _process(
        MarkInvoicePaid(subscription_id=subscription_id, invoice_id=str(invoice.id), attempt_number=1, occurred_at=T0)
    )
    return subscription_id, str(invoice.id)


@pytest.fixture
def submitted_refund(paid_invoice):
    subscription_id, invoice_id = paid_invoice
    refund_id = _process(
        RequestRefund(subscription_id=subscription_id, invoice_id=invoice_id, amount=500, requested_at=T0 + timedelta(days=2))
    )
    _process(RecordRefundSubmitted(subscription_id=subscription_id, refund_id=refund_id, processor_refund_id="re_1"))
    return subscription_id, refund_id


class TestRequestRefund:
    def test_queues_refund_for_paid_invoice(self, paid_invoice):
        subscription_id, invoice_id = paid_invoice
        refund_id = _process(
            RequestRefund(subscription_id=subscription_id, invoice_id=invoice_id, amount=500, reason="requested_by_customer")
        )

        refund = _refund(refund_id)
        assert refund.status == RefundStatus.QUEUED.value
        assert refund.amount == 500
        assert refund.charge_id == "pi_1"
        assert AuditAction.REFUND_REQUESTED.value in [e.action for e in trail_for(subscription_id)]

    def test_defaults_to_refundable_remainder(self, paid_invoice):
        subscription_id, invoice_id = paid_invoice
        _process(RequestRefund(subscription_id=subscription_id, invoice_id=invoice_id, amount=500))
        refund_id = _process(RequestRefund(subscription_id=subscription_id, invoice_id=invoice_id))
        assert _refund(refund_id).amount == 1499

    def test_cannot_exceed_invoice_amount(self, paid_invoice):
        subscription_id, invoice_id = paid_invoice
        _process(RequestRefund(subscription_id=subscription_id, invoice_id=invoice_id, amount=1500))
        with pytest.raises(ValidationError):
            _process(RequestRefund(subscription_id=subscription_id, invoice_id=invoice_id, amount=500))

    def test_unpaid_invoice_cannot_be_refunded(self, subscribe):
        subscription_id = subscribe("family")
        invoice = current_domain.repository_for(Invoice).for_subscription(subscription_id)[0]
        with pytest.raises(ValidationError):
            _process(RequestRefund(subscription_id=subscription_id, invoice_id=str(invoice.id), amount=100))

    def test_invoice_of_another_subscription_is_invalid(self, paid_invoice):
        _, invoice_id = paid_invoice
        with pytest.raises(ValidationError):
            _process(RequestRefund(subscription_id="sub-other", invoice_id=invoice_id, amount=100))


class TestRefundOutcomes:
    def test_completion_publishes_refund_succeeded(self, submitted_refund):
        subscription_id, refund_id = submitted_refund

        result = _process(
            CompleteRefund(
                subscription_id=subscription_id,
                refund_id=refund_id,
                processor_refund_id="re_1",
                occurred_at=T0 + timedelta(days=3),
                ledger_key="processor:evt_refund",
            )
        )

        assert result == "applied"
        assert _refund(refund_id).status == RefundStatus.SUCCEEDED.value
        message = messages_for(subscription_id)[-1]
        assert message.topic == "payments.refund_succeeded"
        assert message.body["amount"] == 500

    def test_duplicate_completion_is_absorbed(self, submitted_refund):
        subscription_id, refund_id = submitted_refund
        command = dict(subscription_id=subscription_id, refund_id=refund_id, ledger_key="processor:evt_refund")
        _process(CompleteRefund(**command))
        assert _process(CompleteRefund(**command)) == "duplicate"
        assert [m.topic for m in messages_for(subscription_id)].count("payments.refund_succeeded") == 1

    def test_failure_is_recorded(self, submitted_refund):
        subscription_id, refund_id = submitted_refund
        assert _process(FailRefund(subscription_id=subscription_id, refund_id=refund_id, reason="expired_card")) == "applied"

        refund = _refund(refund_id)
        assert refund.status == RefundStatus.FAILED.value
        assert refund.failure_reason == "expired_card"
        assert AuditAction.REFUND_FAILED.value in [e.action for e in trail_for(subscription_id)]

    def test_completion_after_failure_is_rejected(self, submitted_refund):
        subscription_id, refund_id = submitted_refund
        _process(FailRefund(subscription_id=subscription_id, refund_id=refund_id))
        assert _process(CompleteRefund(subscription_id=subscription_id, refund_id=refund_id)) == "rejected"

    def test_refund_on_canceled_subscription_keeps_it_canceled(self, submitted_refund):
        subscription_id, refund_id = submitted_refund
        _process(CancelSubscription(subscription_id=subscription_id, requested_at=T0 + timedelta(days=2)))
        seq = current_domain.repository_for(Subscription).get(subscription_id).transition_seq

        _process(CompleteRefund(subscription_id=subscription_id, refund_id=refund_id))

        subscription = current_domain.repository_for(Subscription).get(subscription_id)
        assert subscription.status == "canceled"
        assert subscription.transition_seq == seq + 1


class TestRefundSubmissionBackoff:
    def test_failure_waits_then_resumes_on_sweep(self, paid_invoice, config):
        subscription_id, invoice_id = paid_invoice
        refund_id = _process(RequestRefund(subscription_id=subscription_id, invoice_id=invoice_id, amount=300))
        failed_at = T0 + timedelta(days=1)

        _process(
            RecordRefundSubmissionFailure(
                subscription_id=subscription_id, refund_id=refund_id, reason="timeout", failed_at=failed_at
            )
        )
        refund = _refund(refund_id)
        assert refund.status == RefundStatus.RETRY_WAIT.value
        assert refund.next_submission_at == failed_at + config.backoff_base

        due = failed_at + config.backoff_base
        assert subscription_id in _process(Tick(as_of=due))
        _process(RunSubscriptionSweep(subscription_id=subscription_id, as_of=due))
        assert _refund(refund_id).status == RefundStatus.QUEUED.value

    def test_fails_for_good_after_max_submissions(self, paid_invoice, config):
        subscription_id, invoice_id = paid_invoice
        refund_id = _process(RequestRefund(subscription_id=subscription_id, invoice_id=invoice_id, amount=300))

        for n in range(config.max_refund_submissions):
            at = T0 + timedelta(hours=n)
            _process(RunSubscriptionSweep(subscription_id=subscription_id, as_of=at + timedelta(days=1)))
            _process(
                RecordRefundSubmissionFailure(subscription_id=subscription_id, refund_id=refund_id, reason="timeout", failed_at=at)
            )

        refund = _refund(refund_id)
        assert refund.status == RefundStatus.FAILED.value
        assert refund.failure_reason == "submission_failed: timeout"
