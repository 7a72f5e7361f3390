"""Shared steps of the subscription and invoice command handlers.

Everything here runs inside the unit of work of the calling handler, so the
aggregate changes, audit entries and staged outbound messages of one command
commit together.
"""

from datetime import datetime

from protean.exceptions import ObjectNotFoundError
from protean.utils.globals import current_domain

from billing.audit.audit import AuditAction, audit
from billing.invoice.invoice import Invoice, InvoiceKind, InvoiceStatus
from billing.outbound.outbox import stage_transitions
from billing.plan.plan import Plan
from billing.subscription.scheduling import next_action_for
from billing.subscription.subscription import Subscription


def load_subscription(subscription_id: str) -> Subscription:
    return current_domain.repository_for(Subscription).get(subscription_id)


def load_plan(plan_id: str) -> Plan:
    return current_domain.repository_for(Plan).get(plan_id)


def outstanding_invoices(subscription, *touched) -> list[Invoice]:
    """Outstanding invoices, preferring the in-memory copies this handler changed."""
    invoices = {
        str(invoice.id): invoice
        for invoice in current_domain.repository_for(Invoice).outstanding_for(str(subscription.id))
    }
    for invoice in touched:
        invoices[str(invoice.id)] = invoice
    return sorted(
        (invoice for invoice in invoices.values() if invoice.is_outstanding),
        key=lambda invoice: invoice.created_at,
    )


def save(subscription, *invoices) -> None:
    """Reschedule, stage outbound messages and persist."""
    subscription.schedule(next_action_for(subscription, outstanding_invoices(subscription, *invoices)))
    stage_transitions(subscription)

    invoice_repo = current_domain.repository_for(Invoice)
    for invoice in invoices:
        invoice_repo.add(invoice)
    current_domain.repository_for(Subscription).add(subscription)


def issue_invoice(
    subscription,
    kind: InvoiceKind,
    amount: int,
    discriminator: str,
    at: datetime,
    period_start: datetime | None = None,
    period_end: datetime | None = None,
    apply_credit: bool = True,
) -> tuple[Invoice, int, bool]:
    """Issue an invoice once per natural key.

    Returns the invoice, the credit applied to it and whether it was created
    by this call.
    """
    invoice_id = Invoice.natural_id(str(subscription.id), kind, discriminator)
    try:
        return current_domain.repository_for(Invoice).get(invoice_id), 0, False
    except ObjectNotFoundError:
        pass

    credit = subscription.consume_credit(amount) if apply_credit else 0
    invoice = Invoice.issue(subscription, kind, amount - credit, discriminator, at, period_start, period_end)
    audit(
        str(subscription.id),
        AuditAction.INVOICE_CREATED,
        amount=invoice.amount,
        currency=invoice.currency,
        invoice_id=str(invoice.id),
        recorded_at=at,
        kind=kind.value,
        gross_amount=amount,
    )
    if credit:
        audit(
            str(subscription.id),
            AuditAction.CREDIT_APPLIED,
            amount=credit,
            currency=invoice.currency,
            invoice_id=str(invoice.id),
            recorded_at=at,
            remaining_credit=subscription.credit_balance,
        )
    return invoice, credit, True


def settle_if_free(subscription, invoice, at: datetime) -> None:
    """Zero-amount invoices are paid at issue time without a charge."""
    if InvoiceStatus(invoice.status) != InvoiceStatus.PAID or invoice.attempts:
        return
    audit(
        str(subscription.id),
        AuditAction.INVOICE_PAID,
        amount=0,
        currency=invoice.currency,
        invoice_id=str(invoice.id),
        recorded_at=at,
        charged=False,
    )
    subscription.note_payment(invoice, None, None, at)


def close_outstanding(subscription, invoices, at: datetime) -> None:
    """Stop collecting on a subscription that ended."""
    for invoice in invoices:
        if not invoice.is_outstanding:
            continue
        if invoice.never_submitted:
            invoice.void(at)
            action = AuditAction.INVOICE_VOIDED
        else:
            invoice.mark_uncollectible(at)
            action = AuditAction.INVOICE_UNCOLLECTIBLE
        audit(
            str(subscription.id),
            action,
            amount=invoice.amount,
            currency=invoice.currency,
            invoice_id=str(invoice.id),
            recorded_at=at,
            subscription_status=subscription.status,
        )
