"""Domain events for the Subscription aggregate.

Every event marks one completed transition and carries the transition
sequence it was raised with. The outbox turns each of them into exactly one
outbound message keyed by ``<subscription_id>:<transition_seq>``.
"""

from protean.fields import Boolean, DateTime, Identifier, Integer, String

from billing.domain import billing


@billing.event(part_of="Subscription")
class SubscriptionCreated:
    """A subscription was started, in trial or directly active."""

    __version__ = 1

    subscription_id = Identifier(required=True)
    customer_id = Identifier(required=True)
    plan_id = Identifier(required=True)
    transition_seq = Integer(required=True)
    amount = Integer(default=0)
    currency = String(max_length=3)
    occurred_at = DateTime(required=True)
    status = String(required=True)
    product_line = String()
    trial_end = DateTime()
    period_start = DateTime()
    period_end = DateTime()


@billing.event(part_of="Subscription")
class SubscriptionActivated:
    """A subscription became active (trial ended or payment recovered)."""

    __version__ = 1

    subscription_id = Identifier(required=True)
    customer_id = Identifier(required=True)
    plan_id = Identifier(required=True)
    transition_seq = Integer(required=True)
    amount = Integer(default=0)
    currency = String(max_length=3)
    occurred_at = DateTime(required=True)
    reason = String(required=True)
    period_start = DateTime()
    period_end = DateTime()


@billing.event(part_of="Subscription")
class SubscriptionRenewed:
    """The current period ended and a renewal invoice was issued."""

    __version__ = 1

    subscription_id = Identifier(required=True)
    customer_id = Identifier(required=True)
    plan_id = Identifier(required=True)
    transition_seq = Integer(required=True)
    amount = Integer(default=0)
    currency = String(max_length=3)
    occurred_at = DateTime(required=True)
    invoice_id = Identifier(required=True)
    period_start = DateTime(required=True)
    period_end = DateTime(required=True)
    credit_applied = Integer(default=0)


@billing.event(part_of="Subscription")
class SubscriptionPastDue:
    """An invoice payment failed and dunning started."""

    __version__ = 1

    subscription_id = Identifier(required=True)
    customer_id = Identifier(required=True)
    plan_id = Identifier(required=True)
    transition_seq = Integer(required=True)
    amount = Integer(default=0)
    currency = String(max_length=3)
    occurred_at = DateTime(required=True)
    invoice_id = Identifier(required=True)


@billing.event(part_of="Subscription")
class SubscriptionGraceStarted:
    """All dunning retries failed; service continues until the deadline."""

    __version__ = 1

    subscription_id = Identifier(required=True)
    customer_id = Identifier(required=True)
    plan_id = Identifier(required=True)
    transition_seq = Integer(required=True)
    amount = Integer(default=0)
    currency = String(max_length=3)
    occurred_at = DateTime(required=True)
    invoice_id = Identifier(required=True)
    grace_deadline = DateTime(required=True)


@billing.event(part_of="Subscription")
class SubscriptionCancelScheduled:
    """Cancellation was requested for the end of the current period."""

    __version__ = 1

    subscription_id = Identifier(required=True)
    customer_id = Identifier(required=True)
    plan_id = Identifier(required=True)
    transition_seq = Integer(required=True)
    amount = Integer(default=0)
    currency = String(max_length=3)
    occurred_at = DateTime(required=True)
    effective_at = DateTime()
    reason = String()


@billing.event(part_of="Subscription")
class SubscriptionCanceled:
    """The subscription was canceled."""

    __version__ = 1

    subscription_id = Identifier(required=True)
    customer_id = Identifier(required=True)
    plan_id = Identifier(required=True)
    transition_seq = Integer(required=True)
    amount = Integer(default=0)
    currency = String(max_length=3)
    occurred_at = DateTime(required=True)
    reason = String()
    scheduled = Boolean(default=False)


@billing.event(part_of="Subscription")
class SubscriptionExpired:
    """The grace period elapsed without payment."""

    __version__ = 1

    subscription_id = Identifier(required=True)
    customer_id = Identifier(required=True)
    plan_id = Identifier(required=True)
    transition_seq = Integer(required=True)
    amount = Integer(default=0)
    currency = String(max_length=3)
    occurred_at = DateTime(required=True)
    reason = String(default="expired")
    invoice_id = Identifier()


@billing.event(part_of="Subscription")
class PlanChanged:
    """The subscription moved to another plan mid-period."""

    __version__ = 1

    subscription_id = Identifier(required=True)
    customer_id = Identifier(required=True)
    plan_id = Identifier(required=True)
    transition_seq = Integer(required=True)
    amount = Integer(default=0)
    currency = String(max_length=3)
    occurred_at = DateTime(required=True)
    old_plan_id = Identifier(required=True)
    adjustment = Integer(required=True)
    credit_granted = Integer(default=0)
    invoice_id = Identifier()


@billing.event(part_of="Subscription")
class PaymentSucceeded:
    """An invoice of the subscription was paid."""

    __version__ = 1

    subscription_id = Identifier(required=True)
    customer_id = Identifier(required=True)
    plan_id = Identifier(required=True)
    transition_seq = Integer(required=True)
    amount = Integer(default=0)
    currency = String(max_length=3)
    occurred_at = DateTime(required=True)
    invoice_id = Identifier(required=True)
    attempt_number = Integer()
    charge_id = String()
    status = String()


@billing.event(part_of="Subscription")
class PaymentFailed:
    """A payment attempt for an invoice of the subscription failed."""

    __version__ = 1

    subscription_id = Identifier(required=True)
    customer_id = Identifier(required=True)
    plan_id = Identifier(required=True)
    transition_seq = Integer(required=True)
    amount = Integer(default=0)
    currency = String(max_length=3)
    occurred_at = DateTime(required=True)
    invoice_id = Identifier(required=True)
    attempt_number = Integer()
    reason = String()
    next_retry_at = DateTime()


@billing.event(part_of="Subscription")
class RefundSucceeded:
    """A refund against an invoice of the subscription completed."""

    __version__ = 1

    subscription_id = Identifier(required=True)
    customer_id = Identifier(required=True)
    plan_id = Identifier(required=True)
    transition_seq = Integer(required=True)
    amount = Integer(default=0)
    currency = String(max_length=3)
    occurred_at = DateTime(required=True)
    refund_id = Identifier(required=True)
    invoice_id = Identifier(required=True)
