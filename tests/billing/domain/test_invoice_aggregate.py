"""Tests for the Invoice aggregate: charge submission and dunning."""

from datetime import UTC, datetime, timedelta
from types import SimpleNamespace

import pytest

from billing.config import DEFAULT_RETRY_OFFSETS
from billing.errors import InvalidTransition
from billing.invoice.events import InvoiceCreated, InvoiceOpened, InvoicePaid, InvoicePaymentFailed
from billing.invoice.invoice import (
    AttemptOutcome,
    ChargeState,
    DunningOutcome,
    Invoice,
    InvoiceKind,
    InvoiceStatus,
    RetryStatus,
)

T0 = datetime(2026, 1, 1, tzinfo=UTC)
GRACE = timedelta(days=7)
SUBSCRIPTION = SimpleNamespace(id="sub-001", customer_id="cust-001", currency="usd")


def _invoice(amount=1999, kind=InvoiceKind.RENEWAL, discriminator="2026-02-01"):
    return Invoice.issue(SUBSCRIPTION, kind, amount, discriminator, T0, T0, T0 + timedelta(days=31))


def _fail(invoice, attempt_number, at):
    return invoice.record_failure(attempt_number, "card_declined", DEFAULT_RETRY_OFFSETS, GRACE, at)


def _retry_and_fail(invoice, at):
    retry = invoice.due_retry(at)
    assert retry is not None
    attempt_number = invoice.submit_retry(retry, at)
    return _fail(invoice, attempt_number, at)


class TestIssue:
    def test_natural_id_is_deterministic(self):
        first = Invoice.natural_id("sub-001", InvoiceKind.RENEWAL, "2026-02-01")
        assert first == Invoice.natural_id("sub-001", InvoiceKind.RENEWAL, "2026-02-01")
        assert first != Invoice.natural_id("sub-001", InvoiceKind.PRORATION, "2026-02-01")
        assert first != Invoice.natural_id("sub-002", InvoiceKind.RENEWAL, "2026-02-01")

    def test_issue_queues_first_charge(self):
        invoice = _invoice()
        assert invoice.status == InvoiceStatus.DRAFT.value
        assert invoice.charge_state == ChargeState.QUEUED.value
        assert invoice.pending_attempt == 1
        assert isinstance(invoice._events[0], InvoiceCreated)

    def test_zero_amount_is_paid_without_a_charge(self):
        invoice = _invoice(amount=0)
        assert invoice.status == InvoiceStatus.PAID.value
        assert invoice.charge_state == ChargeState.IDLE.value
        assert invoice.attempts == []
        assert isinstance(invoice._events[-1], InvoicePaid)


class TestSubmission:
    def test_accepted_submission_opens_invoice(self):
        invoice = _invoice()
        assert invoice.record_submission(1, "pi_123", T0) is True

        assert invoice.status == InvoiceStatus.OPEN.value
        assert invoice.charge_state == ChargeState.SUBMITTED.value
        assert invoice.charge_id == "pi_123"
        assert isinstance(invoice._events[-1], InvoiceOpened)

    def test_stale_submission_result_is_ignored(self):
        invoice = _invoice()
        invoice.record_submission(1, "pi_123", T0)
        assert invoice.record_submission(1, "pi_123", T0) is False

    def test_submission_failure_waits_with_backoff(self):
        invoice = _invoice()
        exhausted = invoice.record_submission_failure(5, timedelta(seconds=30), T0)

        assert exhausted is False
        assert invoice.status == InvoiceStatus.DRAFT.value
        assert invoice.charge_state == ChargeState.RETRY_WAIT.value
        assert invoice.next_submission_at == T0 + timedelta(seconds=30)
        assert invoice.next_action_at() == invoice.next_submission_at

    def test_resume_only_after_backoff(self):
        invoice = _invoice()
        invoice.record_submission_failure(5, timedelta(seconds=30), T0)

        assert invoice.resume_submission(T0 + timedelta(seconds=10)) is False
        assert invoice.resume_submission(T0 + timedelta(seconds=30)) is True
        assert invoice.charge_state == ChargeState.QUEUED.value
        assert invoice.pending_attempt == 1

    def test_submissions_exhaust_after_limit(self):
        invoice = _invoice()
        results = [invoice.record_submission_failure(3, timedelta(seconds=30), T0) for _ in range(3)]
        assert results == [False, False, True]
        assert invoice.charge_state == ChargeState.IDLE.value


class TestDunning:
    def test_first_failure_starts_schedule(self):
        invoice = _invoice()
        assert _fail(invoice, 1, T0) == DunningOutcome.STARTED

        retries = invoice.sorted_retries()
        assert [r.due_at for r in retries] == [T0 + offset for offset in DEFAULT_RETRY_OFFSETS]
        assert all(r.status == RetryStatus.SCHEDULED.value for r in retries)
        assert invoice.next_retry_at == T0 + timedelta(days=1)
        assert invoice.first_failed_at == T0
        assert isinstance(invoice._events[-1], InvoicePaymentFailed)

    def test_retry_not_due_before_offset(self):
        invoice = _invoice()
        _fail(invoice, 1, T0)
        assert invoice.due_retry(T0 + timedelta(hours=23)) is None

    def test_only_one_retry_in_flight(self):
        invoice = _invoice()
        _fail(invoice, 1, T0)
        retry = invoice.due_retry(T0 + timedelta(days=1))
        invoice.submit_retry(retry, T0 + timedelta(days=1))

        assert invoice.due_retry(T0 + timedelta(days=30)) is None
        assert invoice.next_action_at() == T0 + timedelta(days=1)

    def test_exhausted_after_third_retry_fails(self):
        invoice = _invoice()
        _fail(invoice, 1, T0)

        outcomes = [
            _retry_and_fail(invoice, T0 + timedelta(days=1)),
            _retry_and_fail(invoice, T0 + timedelta(days=3)),
        ]
        assert outcomes == [DunningOutcome.RETRYING, DunningOutcome.RETRYING]
        assert invoice.grace_deadline is None

        last = T0 + timedelta(days=7)
        assert _retry_and_fail(invoice, last) == DunningOutcome.EXHAUSTED
        assert invoice.grace_deadline == last + GRACE
        assert invoice.next_retry_at is None
        assert [a.attempt_number for a in invoice.sorted_attempts()] == [1, 2, 3, 4]

    def test_success_cancels_remaining_retries(self):
        invoice = _invoice()
        _fail(invoice, 1, T0)
        retry = invoice.due_retry(T0 + timedelta(days=1))
        attempt_number = invoice.submit_retry(retry, T0 + timedelta(days=1))
        invoice.record_paid(attempt_number, "pi_2", T0 + timedelta(days=1))

        statuses = [r.status for r in invoice.sorted_retries()]
        assert statuses == [RetryStatus.SUCCEEDED.value, RetryStatus.CANCELED.value, RetryStatus.CANCELED.value]
        assert invoice.status == InvoiceStatus.PAID.value

    def test_same_attempt_cannot_fail_twice(self):
        invoice = _invoice()
        _fail(invoice, 1, T0)
        with pytest.raises(InvalidTransition):
            _fail(invoice, 1, T0)


class TestPaidIsFinal:
    def _paid(self):
        invoice = _invoice()
        invoice.record_paid(1, "pi_123", T0)
        return invoice

    def test_records_successful_attempt(self):
        invoice = self._paid()
        assert [a.outcome for a in invoice.attempts] == [AttemptOutcome.SUCCEEDED.value]
        assert invoice.paid_at == T0

    def test_cannot_be_paid_again(self):
        with pytest.raises(InvalidTransition):
            self._paid().record_paid(1, "pi_123", T0)

    def test_cannot_fail(self):
        with pytest.raises(InvalidTransition):
            _fail(self._paid(), 2, T0)

    def test_cannot_be_voided_or_written_off(self):
        invoice = self._paid()
        with pytest.raises(InvalidTransition):
            invoice.void(T0)
        with pytest.raises(InvalidTransition):
            invoice.mark_uncollectible(T0)


class TestClosing:
    def test_never_submitted_invoice_is_voided(self):
        invoice = _invoice()
        invoice.void(T0)
        assert invoice.status == InvoiceStatus.VOID.value
        assert invoice.charge_state == ChargeState.IDLE.value

    def test_submitted_invoice_cannot_be_voided(self):
        invoice = _invoice()
        invoice.record_submission(1, "pi_123", T0)
        with pytest.raises(InvalidTransition):
            invoice.void(T0)

    def test_uncollectible_invoice_can_still_be_paid(self):
        invoice = _invoice()
        _fail(invoice, 1, T0)
        invoice.mark_uncollectible(T0 + timedelta(days=20))
        invoice.record_paid(None, "pi_late", T0 + timedelta(days=21))
        assert invoice.status == InvoiceStatus.PAID.value

    def test_uncollectible_cancels_scheduled_retries(self):
        invoice = _invoice()
        _fail(invoice, 1, T0)
        invoice.mark_uncollectible(T0)
        assert all(r.status == RetryStatus.CANCELED.value for r in invoice.retries)
        assert invoice.next_action_at() is None
