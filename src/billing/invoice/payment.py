"""Invoice payment outcomes — commands and handler.

``MarkInvoicePaid``, ``RecordPaymentFailure`` and ``RecordPaymentPending``
are produced by the event normalizer from processor webhooks;
``CollectOpenInvoice`` is requested through the API while a subscription
is past due or in grace.
"""

from datetime import UTC, datetime

import structlog
from protean import handle
from protean.exceptions import ObjectNotFoundError
from protean.fields import DateTime, Identifier, Integer, String
from protean.utils.globals import current_domain

from billing.audit.audit import AuditAction, audit
from billing.config import current_config
from billing.domain import billing
from billing.errors import InvalidTransition
from billing.invoice.collection import apply_payment, apply_payment_failure
from billing.invoice.invoice import AttemptOutcome, ChargeState, Invoice
from billing.ledger.store import applied, duplicate, is_settled, reject
from billing.subscription.lifecycle import load_subscription, outstanding_invoices, save
from billing.subscription.subscription import SubscriptionStatus

logger = structlog.get_logger(__name__)


@billing.command(part_of="Invoice")
class MarkInvoicePaid:
    subscription_id = Identifier(required=True)
    invoice_id = Identifier(required=True)
    attempt_number = Integer()
    charge_id = String(max_length=255)
    occurred_at = DateTime()
    ledger_key = String(max_length=300)


@billing.command(part_of="Invoice")
class RecordPaymentFailure:
    subscription_id = Identifier(required=True)
    invoice_id = Identifier(required=True)
    attempt_number = Integer()
    reason = String(max_length=500, default="payment_failed")
    occurred_at = DateTime()
    ledger_key = String(max_length=300)


@billing.command(part_of="Invoice")
class RecordPaymentPending:
    subscription_id = Identifier(required=True)
    invoice_id = Identifier(required=True)
    attempt_number = Integer()
    occurred_at = DateTime()
    ledger_key = String(max_length=300)


@billing.command(part_of="Invoice")
class CollectOpenInvoice:
    """Attempt collection outside the dunning schedule (e.g. after a card update)."""

    subscription_id = Identifier(required=True)
    invoice_id = Identifier()
    requested_at = DateTime()


@billing.command_handler(part_of=Invoice)
class InvoicePaymentHandler:
    @handle(MarkInvoicePaid)
    def mark_invoice_paid(self, command):
        if is_settled(command.ledger_key):
            return duplicate(command.ledger_key, invoice_id=command.invoice_id)

        at = command.occurred_at or datetime.now(UTC)
        try:
            subscription = load_subscription(command.subscription_id)
            invoice = current_domain.repository_for(Invoice).get(command.invoice_id)
            closed = apply_payment(subscription, invoice, command.attempt_number, command.charge_id, at)
        except (InvalidTransition, ObjectNotFoundError) as exc:
            return reject(command.ledger_key, exc, invoice_id=command.invoice_id)

        save(subscription, invoice, *closed)
        return applied(command.ledger_key)

    @handle(RecordPaymentFailure)
    def record_payment_failure(self, command):
        if is_settled(command.ledger_key):
            return duplicate(command.ledger_key, invoice_id=command.invoice_id)

        at = command.occurred_at or datetime.now(UTC)
        try:
            subscription = load_subscription(command.subscription_id)
            invoice = current_domain.repository_for(Invoice).get(command.invoice_id)
            attempt_number = command.attempt_number or invoice.pending_attempt or 1
            apply_payment_failure(
                subscription,
                invoice,
                attempt_number,
                command.reason or "payment_failed",
                current_config(),
                at,
            )
        except (InvalidTransition, ObjectNotFoundError) as exc:
            return reject(command.ledger_key, exc, invoice_id=command.invoice_id)

        save(subscription, invoice)
        return applied(command.ledger_key)

    @handle(RecordPaymentPending)
    def record_payment_pending(self, command):
        if is_settled(command.ledger_key):
            return duplicate(command.ledger_key, invoice_id=command.invoice_id)

        at = command.occurred_at or datetime.now(UTC)
        try:
            subscription = load_subscription(command.subscription_id)
            invoice = current_domain.repository_for(Invoice).get(command.invoice_id)
            attempt_number = command.attempt_number or invoice.pending_attempt or 1
            invoice.record_pending(attempt_number, at)
        except (InvalidTransition, ObjectNotFoundError) as exc:
            return reject(command.ledger_key, exc, invoice_id=command.invoice_id)

        audit(
            str(subscription.id),
            AuditAction.ATTEMPT_RECORDED,
            amount=invoice.amount,
            currency=invoice.currency,
            invoice_id=str(invoice.id),
            recorded_at=at,
            attempt_number=attempt_number,
            outcome=AttemptOutcome.PENDING.value,
        )
        save(subscription, invoice)
        return applied(command.ledger_key)

    @handle(CollectOpenInvoice)
    def collect_open_invoice(self, command):
        at = command.requested_at or datetime.now(UTC)
        subscription = load_subscription(command.subscription_id)
        try:
            if SubscriptionStatus(subscription.status) not in (SubscriptionStatus.PAST_DUE, SubscriptionStatus.GRACE):
                raise InvalidTransition("Subscription", subscription.status, "collect an open invoice")

            candidates = [
                invoice
                for invoice in outstanding_invoices(subscription)
                if ChargeState(invoice.charge_state) == ChargeState.IDLE
                and (command.invoice_id is None or str(invoice.id) == str(command.invoice_id))
            ]
            if not candidates:
                raise InvalidTransition("Invoice", "no collectible invoice", "collect")
            invoice = candidates[0]
            attempt_number = invoice.queue_charge(at)
        except InvalidTransition as exc:
            return reject(None, exc, subscription_id=command.subscription_id)

        logger.info(
            "Manual collection queued",
            subscription_id=command.subscription_id,
            invoice_id=str(invoice.id),
            attempt_number=attempt_number,
        )
        save(subscription, invoice)
        return applied(None)
