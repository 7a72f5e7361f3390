"""Subscription aggregate — the lifecycle state machine.

State Machine:
    TRIALING → ACTIVE (trial end) / CANCELED
    ACTIVE → ACTIVE (renewal, plan change) / PAST_DUE / CANCELED
    PAST_DUE → ACTIVE (retry succeeds) / GRACE (retries exhausted) / CANCELED
    GRACE → ACTIVE (payment before deadline) / EXPIRED / CANCELED
    CANCELED, EXPIRED: terminal

Cancel-at-period-end is an orthogonal flag rather than a state: the
subscription keeps serving (and accepting plan changes) until the period
end sweep completes the cancellation.

Every completed transition increments ``transition_seq`` and raises exactly
one event carrying it. Payments and refunds recorded against a terminal
subscription still raise their financial event but never change its state.
"""

from datetime import UTC, datetime
from enum import Enum
from fractions import Fraction

from protean.fields import Boolean, DateTime, Identifier, Integer, String

from billing.domain import billing
from billing.errors import InvalidTransition
from billing.proration import elapsed_fraction
from billing.subscription.events import (
    PaymentFailed,
    PaymentSucceeded,
    PlanChanged,
    RefundSucceeded,
    SubscriptionActivated,
    SubscriptionCanceled,
    SubscriptionCancelScheduled,
    SubscriptionCreated,
    SubscriptionExpired,
    SubscriptionGraceStarted,
    SubscriptionPastDue,
    SubscriptionRenewed,
)


class SubscriptionStatus(Enum):
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    GRACE = "grace"
    CANCELED = "canceled"
    EXPIRED = "expired"


class CancelMode(Enum):
    IMMEDIATE = "immediate"
    AT_PERIOD_END = "at_period_end"


TERMINAL_STATUSES = {SubscriptionStatus.CANCELED, SubscriptionStatus.EXPIRED}
LIVE_STATUSES = [status.value for status in SubscriptionStatus if status not in TERMINAL_STATUSES]

_VALID_TRANSITIONS = {
    SubscriptionStatus.TRIALING: {SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELED},
    SubscriptionStatus.ACTIVE: {SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE, SubscriptionStatus.CANCELED},
    SubscriptionStatus.PAST_DUE: {SubscriptionStatus.ACTIVE, SubscriptionStatus.GRACE, SubscriptionStatus.CANCELED},
    SubscriptionStatus.GRACE: {SubscriptionStatus.ACTIVE, SubscriptionStatus.EXPIRED, SubscriptionStatus.CANCELED},
    SubscriptionStatus.CANCELED: set(),  # Terminal
    SubscriptionStatus.EXPIRED: set(),  # Terminal
}


@billing.aggregate
class Subscription:
    customer_id = Identifier(required=True)
    plan_id = Identifier(required=True)
    product_line = String(max_length=50, default="learning")
    currency = String(max_length=3, default="usd")
    status = String(choices=SubscriptionStatus, default=SubscriptionStatus.ACTIVE.value)
    current_period_start = DateTime()
    current_period_end = DateTime()
    trial_end = DateTime()
    cancel_at_period_end = Boolean(default=False)
    grace_deadline = DateTime()
    credit_balance = Integer(default=0)  # minor units
    transition_seq = Integer(default=0)
    next_action_at = DateTime()
    cancel_reason = String(max_length=255)
    canceled_at = DateTime()
    created_at = DateTime()
    updated_at = DateTime()

    @classmethod
    def start(cls, customer_id: str, plan, at: datetime | None = None, subscription_id: str | None = None):
        """Start a subscription on ``plan``: trialing when it has a trial, else active."""
        now = at or datetime.now(UTC)
        attributes = {
            "customer_id": customer_id,
            "plan_id": str(plan.id),
            "product_line": plan.product_line,
            "currency": plan.currency,
            "current_period_start": now,
            "created_at": now,
            "updated_at": now,
        }
        if subscription_id:
            attributes["id"] = subscription_id

        if plan.has_trial:
            trial_end = plan.trial_end(now)
            attributes.update(
                status=SubscriptionStatus.TRIALING.value,
                trial_end=trial_end,
                current_period_end=trial_end,
            )
        else:
            attributes.update(status=SubscriptionStatus.ACTIVE.value, current_period_end=plan.period_end(now))

        subscription = cls(**attributes)
        subscription._advance(
            SubscriptionCreated,
            now,
            amount=plan.price,
            status=subscription.status,
            product_line=subscription.product_line,
            trial_end=subscription.trial_end,
            period_start=subscription.current_period_start,
            period_end=subscription.current_period_end,
        )
        return subscription

    # -------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------
    @property
    def is_terminal(self) -> bool:
        return SubscriptionStatus(self.status) in TERMINAL_STATUSES

    def _assert_can_transition(self, target_status: SubscriptionStatus, attempted: str) -> None:
        current = SubscriptionStatus(self.status)
        if target_status not in _VALID_TRANSITIONS.get(current, set()):
            raise InvalidTransition("Subscription", current.value, attempted)

    def _assert_live(self, attempted: str) -> None:
        if self.is_terminal:
            raise InvalidTransition("Subscription", self.status, attempted)

    def _advance(self, event_cls, at: datetime, amount: int = 0, currency: str | None = None, **fields) -> None:
        self.transition_seq = (self.transition_seq or 0) + 1
        self.updated_at = at
        self.raise_(
            event_cls(
                subscription_id=str(self.id),
                customer_id=str(self.customer_id),
                plan_id=str(self.plan_id),
                transition_seq=self.transition_seq,
                amount=amount,
                currency=currency or self.currency,
                occurred_at=at,
                **fields,
            )
        )

    def elapsed(self, at: datetime) -> Fraction:
        return elapsed_fraction(self.current_period_start, self.current_period_end, at)

    def schedule(self, next_action_at: datetime | None) -> None:
        self.next_action_at = None if self.is_terminal else next_action_at

    def consume_credit(self, amount: int) -> int:
        """Apply available credit against ``amount``; returns the credit used."""
        used = min(self.credit_balance or 0, max(amount, 0))
        self.credit_balance = (self.credit_balance or 0) - used
        return used

    # -------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------
    def activate(self, plan, at: datetime) -> None:
        """End the trial and open the first paid period."""
        self._assert_can_transition(SubscriptionStatus.ACTIVE, "activate")
        if SubscriptionStatus(self.status) != SubscriptionStatus.TRIALING:
            raise InvalidTransition("Subscription", self.status, "activate")

        period_start = self.trial_end or at
        self.status = SubscriptionStatus.ACTIVE.value
        self.current_period_start = period_start
        self.current_period_end = plan.period_end(period_start)
        self._advance(
            SubscriptionActivated,
            at,
            amount=plan.price,
            reason="trial_ended",
            period_start=self.current_period_start,
            period_end=self.current_period_end,
        )

    def begin_renewal(self, invoice, credit_applied: int, at: datetime) -> None:
        """The current period ended; ``invoice`` bills the next one."""
        if SubscriptionStatus(self.status) != SubscriptionStatus.ACTIVE:
            raise InvalidTransition("Subscription", self.status, "renew")
        self._advance(
            SubscriptionRenewed,
            at,
            amount=invoice.amount,
            invoice_id=str(invoice.id),
            period_start=invoice.period_start,
            period_end=invoice.period_end,
            credit_applied=credit_applied,
        )

    def note_payment(self, invoice, attempt_number: int | None, charge_id: str | None, at: datetime, recovers: bool = True) -> None:
        """Record that ``invoice`` was paid, extending the period it covers."""
        current = SubscriptionStatus(self.status)
        recovering = recovers and current in (SubscriptionStatus.PAST_DUE, SubscriptionStatus.GRACE)
        if recovering:
            self.status = SubscriptionStatus.ACTIVE.value
            self.grace_deadline = None

        if (
            not self.is_terminal
            and invoice.period_end
            and self.current_period_end
            and invoice.period_end > self.current_period_end
        ):
            self.current_period_start = invoice.period_start
            self.current_period_end = invoice.period_end

        self._advance(
            PaymentSucceeded,
            at,
            amount=invoice.amount,
            currency=invoice.currency,
            invoice_id=str(invoice.id),
            attempt_number=attempt_number,
            charge_id=charge_id,
            status=self.status,
        )
        if recovering:
            self._advance(
                SubscriptionActivated,
                at,
                reason="payment_recovered",
                period_start=self.current_period_start,
                period_end=self.current_period_end,
            )

    def note_payment_failure(
        self, invoice, attempt_number: int | None, reason: str, next_retry_at: datetime | None, at: datetime
    ) -> None:
        self._assert_live("record a payment failure")
        self._advance(
            PaymentFailed,
            at,
            amount=invoice.amount,
            currency=invoice.currency,
            invoice_id=str(invoice.id),
            attempt_number=attempt_number,
            reason=reason,
            next_retry_at=next_retry_at,
        )

    def mark_past_due(self, invoice_id: str, at: datetime) -> None:
        self._assert_can_transition(SubscriptionStatus.PAST_DUE, "become past due")
        self.status = SubscriptionStatus.PAST_DUE.value
        self._advance(SubscriptionPastDue, at, invoice_id=invoice_id)

    def enter_grace(self, invoice_id: str, deadline: datetime, at: datetime) -> None:
        self._assert_can_transition(SubscriptionStatus.GRACE, "enter grace")
        self.status = SubscriptionStatus.GRACE.value
        self.grace_deadline = deadline
        self._advance(SubscriptionGraceStarted, at, invoice_id=invoice_id, grace_deadline=deadline)

    def expire(self, invoice_id: str | None, at: datetime) -> None:
        self._assert_can_transition(SubscriptionStatus.EXPIRED, "expire")
        self.status = SubscriptionStatus.EXPIRED.value
        self.canceled_at = at
        self.cancel_reason = "expired"
        self.next_action_at = None
        self._advance(SubscriptionExpired, at, reason="expired", invoice_id=invoice_id)

    def cancel(self, mode: CancelMode, reason: str | None, at: datetime) -> None:
        if mode == CancelMode.IMMEDIATE:
            self._assert_can_transition(SubscriptionStatus.CANCELED, "cancel")
            self.status = SubscriptionStatus.CANCELED.value
            self.canceled_at = at
            self.cancel_reason = reason
            self.next_action_at = None
            self._advance(SubscriptionCanceled, at, reason=reason, scheduled=False)
            return

        self._assert_live("schedule cancellation")
        if self.cancel_at_period_end:
            raise InvalidTransition("Subscription", "cancel_scheduled", "schedule cancellation")
        self.cancel_at_period_end = True
        self.cancel_reason = reason
        self._advance(SubscriptionCancelScheduled, at, effective_at=self.current_period_end, reason=reason)

    def complete_scheduled_cancellation(self, at: datetime) -> None:
        if not self.cancel_at_period_end:
            raise InvalidTransition("Subscription", self.status, "complete a cancellation that was not scheduled")
        self._assert_can_transition(SubscriptionStatus.CANCELED, "cancel at period end")
        self.status = SubscriptionStatus.CANCELED.value
        self.canceled_at = at
        self.next_action_at = None
        self._advance(SubscriptionCanceled, at, reason=self.cancel_reason or "period_end", scheduled=True)

    def change_plan(self, new_plan, adjustment: int, invoice_id: str | None, at: datetime) -> int:
        """Move to ``new_plan``; a negative ``adjustment`` becomes credit. Returns the credit granted."""
        if SubscriptionStatus(self.status) != SubscriptionStatus.ACTIVE:
            raise InvalidTransition("Subscription", self.status, "change plan")
        if str(new_plan.id) == str(self.plan_id):
            raise InvalidTransition("Subscription", f"on plan {self.plan_id}", "change to the same plan")

        old_plan_id = str(self.plan_id)
        credit = -adjustment if adjustment < 0 else 0
        self.plan_id = str(new_plan.id)
        self.credit_balance = (self.credit_balance or 0) + credit
        self._advance(
            PlanChanged,
            at,
            amount=max(adjustment, 0),
            old_plan_id=old_plan_id,
            adjustment=adjustment,
            credit_granted=credit,
            invoice_id=invoice_id,
        )
        return credit

    def note_refund(self, refund, at: datetime) -> None:
        self._advance(
            RefundSucceeded,
            at,
            amount=refund.amount,
            currency=refund.currency,
            refund_id=str(refund.id),
            invoice_id=str(refund.invoice_id),
        )
