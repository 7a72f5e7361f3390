"""Payment outcome application shared by the invoice and sweep handlers."""

from datetime import datetime

import structlog

from billing.audit.audit import AuditAction, audit
from billing.config import BillingConfig
from billing.invoice.invoice import DunningOutcome, Invoice
from billing.subscription.lifecycle import close_outstanding, outstanding_invoices
from billing.subscription.subscription import SubscriptionStatus

logger = structlog.get_logger(__name__)


def apply_payment(
    subscription, invoice: Invoice, attempt_number: int | None, charge_id: str | None, at: datetime
) -> list[Invoice]:
    """Record a payment; returns the other invoices closed because the payment came after the grace deadline."""
    invoice.record_paid(attempt_number, charge_id, at)
    audit(
        str(subscription.id),
        AuditAction.INVOICE_PAID,
        amount=invoice.amount,
        currency=invoice.currency,
        invoice_id=str(invoice.id),
        recorded_at=at,
        attempt_number=attempt_number,
        charge_id=charge_id,
    )

    others = [other for other in outstanding_invoices(subscription, invoice) if str(other.id) != str(invoice.id)]
    still_dunning = any(other.in_dunning for other in others)
    lapsed = (
        SubscriptionStatus(subscription.status) == SubscriptionStatus.GRACE
        and subscription.grace_deadline is not None
        and subscription.grace_deadline <= at
    )
    subscription.note_payment(invoice, attempt_number, charge_id, at, recovers=not (still_dunning or lapsed))

    closed = []
    if lapsed:
        subscription.expire(str(invoice.id), at)
        close_outstanding(subscription, others, at)
        closed = others
        logger.warning(
            "Payment received after grace deadline",
            invoice_id=str(invoice.id),
            subscription_id=str(subscription.id),
            grace_deadline=subscription.grace_deadline.isoformat(),
        )

    logger.info(
        "Invoice paid",
        invoice_id=str(invoice.id),
        subscription_id=str(subscription.id),
        attempt_number=attempt_number,
        subscription_status=subscription.status,
    )
    return closed


def apply_payment_failure(
    subscription,
    invoice: Invoice,
    attempt_number: int,
    reason: str,
    config: BillingConfig,
    at: datetime,
) -> DunningOutcome:
    outcome = invoice.record_failure(attempt_number, reason, config.retry_offsets, config.grace_period, at)
    audit(
        str(subscription.id),
        AuditAction.ATTEMPT_RECORDED,
        amount=invoice.amount,
        currency=invoice.currency,
        invoice_id=str(invoice.id),
        recorded_at=at,
        attempt_number=attempt_number,
        outcome="failed",
        reason=reason,
        dunning=outcome.value,
    )

    if subscription.is_terminal:
        logger.info(
            "Payment failure recorded for ended subscription",
            invoice_id=str(invoice.id),
            subscription_id=str(subscription.id),
            subscription_status=subscription.status,
        )
        return outcome

    subscription.note_payment_failure(invoice, attempt_number, reason, invoice.next_retry_at, at)
    status = SubscriptionStatus(subscription.status)
    if outcome == DunningOutcome.STARTED and status == SubscriptionStatus.ACTIVE:
        subscription.mark_past_due(str(invoice.id), at)
    elif outcome == DunningOutcome.EXHAUSTED and status == SubscriptionStatus.PAST_DUE:
        subscription.enter_grace(str(invoice.id), invoice.grace_deadline, at)

    logger.info(
        "Payment failed",
        invoice_id=str(invoice.id),
        subscription_id=str(subscription.id),
        attempt_number=attempt_number,
        dunning=outcome.value,
        subscription_status=subscription.status,
    )
    return outcome
