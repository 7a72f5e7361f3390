"""Mid-period plan change — command and handler.

The prorated difference between the two plans for the rest of the period is
either billed on a ``proration`` invoice (upgrade) or kept as credit on the
subscription and consumed by the next invoice (downgrade).
"""

from datetime import UTC, datetime

import structlog
from protean import handle
from protean.exceptions import ObjectNotFoundError, ValidationError
from protean.fields import DateTime, Identifier, String

from billing.audit.audit import AuditAction, audit
from billing.domain import billing
from billing.errors import InvalidTransition
from billing.invoice.invoice import Invoice, InvoiceKind
from billing.ledger.store import applied, duplicate, is_settled, reject
from billing.proration import prorate
from billing.subscription.lifecycle import issue_invoice, load_plan, load_subscription, save, settle_if_free
from billing.subscription.subscription import Subscription

logger = structlog.get_logger(__name__)


@billing.command(part_of="Subscription")
class ChangePlan:
    subscription_id = Identifier(required=True)
    new_plan_id = Identifier(required=True)
    requested_at = DateTime()
    ledger_key = String(max_length=300)


@billing.command_handler(part_of=Subscription)
class ChangePlanHandler:
    @handle(ChangePlan)
    def change_plan(self, command):
        if is_settled(command.ledger_key):
            return duplicate(command.ledger_key, subscription_id=command.subscription_id)

        at = command.requested_at or datetime.now(UTC)
        try:
            subscription = load_subscription(command.subscription_id)
            old_plan = load_plan(subscription.plan_id)
            new_plan = load_plan(command.new_plan_id)
        except ObjectNotFoundError as exc:
            return reject(command.ledger_key, exc, subscription_id=command.subscription_id)

        elapsed = subscription.elapsed(at)
        try:
            adjustment = prorate(old_plan, new_plan, elapsed)
        except ValueError as exc:
            raise ValidationError({"new_plan_id": [str(exc)]}) from exc

        discriminator = str((subscription.transition_seq or 0) + 1)
        invoice_id = Invoice.natural_id(str(subscription.id), InvoiceKind.PRORATION, discriminator) if adjustment > 0 else None
        try:
            credit = subscription.change_plan(new_plan, adjustment, invoice_id, at)
        except InvalidTransition as exc:
            return reject(command.ledger_key, exc, subscription_id=command.subscription_id)

        invoices = []
        if adjustment > 0:
            invoice, _, created = issue_invoice(
                subscription,
                InvoiceKind.PRORATION,
                adjustment,
                discriminator,
                at,
                at,
                subscription.current_period_end,
            )
            if created:
                settle_if_free(subscription, invoice, at)
            invoices.append(invoice)
        elif credit:
            audit(
                str(subscription.id),
                AuditAction.CREDIT_GRANTED,
                amount=credit,
                currency=subscription.currency,
                recorded_at=at,
                old_plan_id=str(old_plan.id),
                new_plan_id=str(new_plan.id),
                credit_balance=subscription.credit_balance,
            )

        logger.info(
            "Plan changed",
            subscription_id=str(subscription.id),
            old_plan_id=str(old_plan.id),
            new_plan_id=str(new_plan.id),
            elapsed=float(elapsed),
            adjustment=adjustment,
        )
        save(subscription, *invoices)
        return applied(command.ledger_key)
