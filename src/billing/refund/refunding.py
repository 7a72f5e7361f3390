"""Refund lifecycle — commands and handler."""

from datetime import UTC, datetime

import structlog
from protean import handle
from protean.exceptions import ObjectNotFoundError, ValidationError
from protean.fields import DateTime, Identifier, Integer, String
from protean.utils.globals import current_domain

from billing.audit.audit import AuditAction, audit
from billing.config import current_config
from billing.domain import billing
from billing.errors import InvalidTransition
from billing.invoice.invoice import Invoice, InvoiceStatus
from billing.ledger.inbound_event import LedgerOutcome
from billing.ledger.store import applied, duplicate, is_settled, reject
from billing.refund.refund import Refund, RefundStatus
from billing.subscription.lifecycle import load_subscription, save

logger = structlog.get_logger(__name__)


def refunds_for(subscription_id: str) -> list[Refund]:
    repo = current_domain.repository_for(Refund)
    return repo._dao.query.filter(subscription_id=subscription_id).limit(None).all().items


def pending_refunds(subscription_id: str) -> list[Refund]:
    return [
        refund
        for refund in refunds_for(subscription_id)
        if RefundStatus(refund.status) in (RefundStatus.QUEUED, RefundStatus.RETRY_WAIT)
    ]


def refunded_total(invoice_id: str) -> int:
    refunds = current_domain.repository_for(Refund)._dao.query.filter(invoice_id=invoice_id).limit(None).all().items
    return sum(refund.amount for refund in refunds if RefundStatus(refund.status) != RefundStatus.FAILED)


@billing.command(part_of="Refund")
class RequestRefund:
    subscription_id = Identifier(required=True)
    invoice_id = Identifier(required=True)
    amount = Integer(min_value=1)  # defaults to the refundable remainder
    reason = String(max_length=500)
    refund_id = Identifier()
    requested_at = DateTime()


@billing.command(part_of="Refund")
class RecordRefundSubmitted:
    subscription_id = Identifier(required=True)
    refund_id = Identifier(required=True)
    processor_refund_id = String(required=True, max_length=255)


@billing.command(part_of="Refund")
class RecordRefundSubmissionFailure:
    subscription_id = Identifier(required=True)
    refund_id = Identifier(required=True)
    reason = String(max_length=500)
    failed_at = DateTime()


@billing.command(part_of="Refund")
class CompleteRefund:
    subscription_id = Identifier(required=True)
    refund_id = Identifier(required=True)
    processor_refund_id = String(max_length=255)
    occurred_at = DateTime()
    ledger_key = String(max_length=300)


@billing.command(part_of="Refund")
class FailRefund:
    subscription_id = Identifier(required=True)
    refund_id = Identifier(required=True)
    reason = String(max_length=500)
    occurred_at = DateTime()
    ledger_key = String(max_length=300)


@billing.command_handler(part_of=Refund)
class RefundCommandHandler:
    @handle(RequestRefund)
    def request_refund(self, command):
        at = command.requested_at or datetime.now(UTC)
        invoice = current_domain.repository_for(Invoice).get(command.invoice_id)
        if str(invoice.subscription_id) != str(command.subscription_id):
            raise ValidationError({"invoice_id": ["Invoice does not belong to this subscription"]})
        if InvoiceStatus(invoice.status) != InvoiceStatus.PAID or not invoice.amount:
            raise ValidationError({"invoice_id": ["Only paid invoices with a charge can be refunded"]})

        already_refunded = refunded_total(str(invoice.id))
        amount = command.amount or invoice.amount - already_refunded
        refund = Refund.request(invoice, amount, command.reason, at, already_refunded, command.refund_id)
        current_domain.repository_for(Refund).add(refund)
        audit(
            str(invoice.subscription_id),
            AuditAction.REFUND_REQUESTED,
            amount=refund.amount,
            currency=refund.currency,
            invoice_id=str(invoice.id),
            recorded_at=at,
            refund_id=str(refund.id),
            reason=command.reason,
        )
        logger.info("Refund requested", refund_id=str(refund.id), invoice_id=str(invoice.id), amount=amount)
        return str(refund.id)

    @handle(RecordRefundSubmitted)
    def record_refund_submitted(self, command):
        repo = current_domain.repository_for(Refund)
        refund = repo.get(command.refund_id)
        if not refund.record_submission(command.processor_refund_id):
            return LedgerOutcome.IGNORED.value
        repo.add(refund)
        return applied(None)

    @handle(RecordRefundSubmissionFailure)
    def record_refund_submission_failure(self, command):
        at = command.failed_at or datetime.now(UTC)
        config = current_config()
        repo = current_domain.repository_for(Refund)
        refund = repo.get(command.refund_id)
        retry_in = config.backoff((refund.submission_failures or 0) + 1)
        failed = refund.record_submission_failure(
            command.reason or "unknown", config.max_refund_submissions, retry_in, at
        )
        if failed:
            audit(
                str(refund.subscription_id),
                AuditAction.REFUND_FAILED,
                amount=refund.amount,
                currency=refund.currency,
                invoice_id=str(refund.invoice_id),
                recorded_at=at,
                refund_id=str(refund.id),
                reason=refund.failure_reason,
            )
        logger.warning("Refund submission failed", refund_id=command.refund_id, failed=failed, reason=command.reason)
        repo.add(refund)
        return applied(None)

    @handle(CompleteRefund)
    def complete_refund(self, command):
        if is_settled(command.ledger_key):
            return duplicate(command.ledger_key, refund_id=command.refund_id)

        at = command.occurred_at or datetime.now(UTC)
        repo = current_domain.repository_for(Refund)
        try:
            refund = repo.get(command.refund_id)
            subscription = load_subscription(str(refund.subscription_id))
            refund.complete(command.processor_refund_id, at)
        except (InvalidTransition, ObjectNotFoundError) as exc:
            return reject(command.ledger_key, exc, refund_id=command.refund_id)

        subscription.note_refund(refund, at)
        audit(
            str(subscription.id),
            AuditAction.REFUND_COMPLETED,
            amount=refund.amount,
            currency=refund.currency,
            invoice_id=str(refund.invoice_id),
            recorded_at=at,
            refund_id=str(refund.id),
        )
        repo.add(refund)
        save(subscription)
        return applied(command.ledger_key)

    @handle(FailRefund)
    def fail_refund(self, command):
        if is_settled(command.ledger_key):
            return duplicate(command.ledger_key, refund_id=command.refund_id)

        at = command.occurred_at or datetime.now(UTC)
        repo = current_domain.repository_for(Refund)
        try:
            refund = repo.get(command.refund_id)
            refund.fail(command.reason, at)
        except (InvalidTransition, ObjectNotFoundError) as exc:
            return reject(command.ledger_key, exc, refund_id=command.refund_id)

        audit(
            str(refund.subscription_id),
            AuditAction.REFUND_FAILED,
            amount=refund.amount,
            currency=refund.currency,
            invoice_id=str(refund.invoice_id),
            recorded_at=at,
            refund_id=str(refund.id),
            reason=command.reason,
        )
        repo.add(refund)
        return applied(command.ledger_key)
