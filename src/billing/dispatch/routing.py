"""Routing of internal commands onto serialization units."""

from typing import assert_never

from billing.customer.provisioning import DeactivateCustomer, ProvisionCustomer, ProvisionTenant, SetDefaultPaymentMethod
from billing.invoice.payment import CollectOpenInvoice, MarkInvoicePaid, RecordPaymentFailure, RecordPaymentPending
from billing.invoice.submission import RecordChargeSubmissionFailure, RecordChargeSubmitted
from billing.plan.registration import RegisterPlan
from billing.refund.refunding import (
    CompleteRefund,
    FailRefund,
    RecordRefundSubmissionFailure,
    RecordRefundSubmitted,
    RequestRefund,
)
from billing.subscription.cancellation import CancelSubscription
from billing.subscription.creation import CreateSubscription
from billing.subscription.plan_change import ChangePlan
from billing.subscription.sweep import RunSubscriptionSweep, Tick

SCHEDULER_KEY = "scheduler"

BillingCommand = (
    ProvisionCustomer
    | SetDefaultPaymentMethod
    | DeactivateCustomer
    | ProvisionTenant
    | RegisterPlan
    | CreateSubscription
    | CancelSubscription
    | ChangePlan
    | Tick
    | RunSubscriptionSweep
    | MarkInvoicePaid
    | RecordPaymentFailure
    | RecordPaymentPending
    | CollectOpenInvoice
    | RecordChargeSubmitted
    | RecordChargeSubmissionFailure
    | RequestRefund
    | RecordRefundSubmitted
    | RecordRefundSubmissionFailure
    | CompleteRefund
    | FailRefund
)


def routing_key(command: BillingCommand) -> str:
    """Serialization unit for ``command``.

    Everything that touches a subscription or its invoices and refunds is
    keyed by subscription id. Subscription creation is keyed by customer so
    that the one-live-subscription-per-product-line check cannot race.
    """
    match command:
        case ProvisionCustomer() | SetDefaultPaymentMethod() | DeactivateCustomer() | CreateSubscription():
            return f"customer:{command.customer_id}"
        case ProvisionTenant():
            return f"tenant:{command.tenant_id}"
        case RegisterPlan():
            return f"plan:{command.plan_id or 'new'}"
        case Tick():
            return SCHEDULER_KEY
        case (
            CancelSubscription()
            | ChangePlan()
            | RunSubscriptionSweep()
            | MarkInvoicePaid()
            | RecordPaymentFailure()
            | RecordPaymentPending()
            | CollectOpenInvoice()
            | RecordChargeSubmitted()
            | RecordChargeSubmissionFailure()
            | RequestRefund()
            | RecordRefundSubmitted()
            | RecordRefundSubmissionFailure()
            | CompleteRefund()
            | FailRefund()
        ):
            return f"subscription:{command.subscription_id}"
        case _:
            assert_never(command)


def affected_subscription(command: BillingCommand, result) -> str | None:
    """Subscription whose post-commit work follows ``command``."""
    if isinstance(command, CreateSubscription):
        return result if isinstance(result, str) else None
    return getattr(command, "subscription_id", None)


def effective_time(command: BillingCommand):
    """The moment a command describes, when it carries one."""
    for name in ("as_of", "occurred_at", "requested_at", "started_at", "submitted_at", "failed_at"):
        value = getattr(command, name, None)
        if value is not None:
            return value
    return None
