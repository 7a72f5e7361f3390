"""Subscription creation — command and handler."""

from datetime import UTC, datetime

import structlog
from protean import handle
from protean.exceptions import ValidationError
from protean.fields import DateTime, Identifier
from protean.utils.globals import current_domain

from billing.customer.customer import Customer
from billing.domain import billing
from billing.invoice.invoice import InvoiceKind
from billing.subscription.lifecycle import issue_invoice, load_plan, save, settle_if_free
from billing.subscription.subscription import LIVE_STATUSES, Subscription

logger = structlog.get_logger(__name__)


@billing.command(part_of="Subscription")
class CreateSubscription:
    customer_id = Identifier(required=True)
    plan_id = Identifier(required=True)
    subscription_id = Identifier()
    started_at = DateTime()


@billing.command_handler(part_of=Subscription)
class CreateSubscriptionHandler:
    @handle(CreateSubscription)
    def create_subscription(self, command):
        at = command.started_at or datetime.now(UTC)
        customer = current_domain.repository_for(Customer).get(command.customer_id)
        if not customer.active:
            raise ValidationError({"customer_id": ["Customer is inactive"]})

        plan = load_plan(command.plan_id)
        repo = current_domain.repository_for(Subscription)
        live = repo._dao.query.filter(customer_id=command.customer_id, status__in=LIVE_STATUSES).limit(None).all()
        if any(sub.product_line == plan.product_line for sub in live.items):
            raise ValidationError(
                {"customer_id": [f"Customer already has a live subscription for {plan.product_line}"]}
            )

        subscription = Subscription.start(command.customer_id, plan, at, command.subscription_id)
        invoices = []
        if not plan.has_trial:
            invoice, _, created = issue_invoice(
                subscription,
                InvoiceKind.INITIAL,
                plan.price,
                subscription.current_period_start.isoformat(),
                at,
                subscription.current_period_start,
                subscription.current_period_end,
            )
            if created:
                settle_if_free(subscription, invoice, at)
            invoices.append(invoice)

        save(subscription, *invoices)
        logger.info(
            "Subscription created",
            subscription_id=str(subscription.id),
            customer_id=command.customer_id,
            plan_id=command.plan_id,
            status=subscription.status,
        )
        return str(subscription.id)
