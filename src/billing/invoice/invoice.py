"""Invoice aggregate — charges, payment attempts and the dunning schedule.

State Machine:
    DRAFT → OPEN (first charge submitted) / PAID / UNCOLLECTIBLE / VOID
    OPEN → PAID / UNCOLLECTIBLE / VOID
    UNCOLLECTIBLE → PAID (late payment is an external fact)
    PAID, VOID: terminal

Charge submission runs alongside the status:
    IDLE → QUEUED → SUBMITTED → IDLE (outcome recorded)
    QUEUED → RETRY_WAIT → QUEUED (submission error, bounded backoff)

Invoice ids are derived from the subscription and the period or transition
they bill, so issuing the same invoice twice yields the same record.
"""

from datetime import datetime, timedelta
from enum import Enum
from uuid import UUID, uuid5

from protean.fields import DateTime, HasMany, Identifier, Integer, String

from billing.domain import billing
from billing.errors import InvalidTransition
from billing.invoice.events import (
    InvoiceCreated,
    InvoiceMarkedUncollectible,
    InvoiceOpened,
    InvoicePaid,
    InvoicePaymentFailed,
    InvoiceVoided,
)

INVOICE_NAMESPACE = UUID("6f1c9a52-3d4e-5b7a-9c2f-1e8d0b4a7c63")


class InvoiceKind(Enum):
    INITIAL = "initial"
    RENEWAL = "renewal"
    PRORATION = "proration"


class InvoiceStatus(Enum):
    DRAFT = "draft"
    OPEN = "open"
    PAID = "paid"
    UNCOLLECTIBLE = "uncollectible"
    VOID = "void"


class ChargeState(Enum):
    IDLE = "idle"
    QUEUED = "queued"
    SUBMITTED = "submitted"
    RETRY_WAIT = "retry_wait"


class AttemptOutcome(Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PENDING = "pending"


class RetryStatus(Enum):
    SCHEDULED = "scheduled"
    SUBMITTED = "submitted"
    FAILED = "failed"
    SUCCEEDED = "succeeded"
    CANCELED = "canceled"


class DunningOutcome(Enum):
    STARTED = "started"  # first failure, retries scheduled
    RETRYING = "retrying"  # a retry failed, more remain
    EXHAUSTED = "exhausted"  # the last retry failed
    UNSCHEDULED = "unscheduled"  # a manual collection attempt failed


_VALID_TRANSITIONS = {
    InvoiceStatus.DRAFT: {InvoiceStatus.OPEN, InvoiceStatus.PAID, InvoiceStatus.UNCOLLECTIBLE, InvoiceStatus.VOID},
    InvoiceStatus.OPEN: {InvoiceStatus.PAID, InvoiceStatus.UNCOLLECTIBLE, InvoiceStatus.VOID},
    InvoiceStatus.UNCOLLECTIBLE: {InvoiceStatus.PAID},
    InvoiceStatus.PAID: set(),  # Terminal
    InvoiceStatus.VOID: set(),  # Terminal
}

OUTSTANDING_STATUSES = {InvoiceStatus.DRAFT, InvoiceStatus.OPEN}


@billing.entity(part_of="Invoice")
class PaymentAttempt:
    """One observed outcome of a charge. Never modified once recorded."""

    attempt_number = Integer(required=True, min_value=1)
    outcome = String(choices=AttemptOutcome, required=True)
    failure_reason = String(max_length=500)
    charge_id = String(max_length=255)
    scheduled_retry_at = DateTime()
    recorded_at = DateTime(required=True)


@billing.entity(part_of="Invoice")
class DunningRetry:
    retry_number = Integer(required=True, min_value=1)
    due_at = DateTime(required=True)
    status = String(choices=RetryStatus, default=RetryStatus.SCHEDULED.value)
    attempt_number = Integer()


@billing.aggregate
class Invoice:
    subscription_id = Identifier(required=True)
    customer_id = Identifier(required=True)
    kind = String(choices=InvoiceKind, required=True)
    amount = Integer(required=True, min_value=0)  # minor units
    currency = String(max_length=3, required=True)
    status = String(choices=InvoiceStatus, default=InvoiceStatus.DRAFT.value)
    period_start = DateTime()
    period_end = DateTime()
    due_at = DateTime()
    charge_state = String(choices=ChargeState, default=ChargeState.IDLE.value)
    pending_attempt = Integer()
    next_attempt_number = Integer(default=1)
    submission_failures = Integer(default=0)
    next_submission_at = DateTime()
    charge_id = String(max_length=255)
    first_failed_at = DateTime()
    grace_deadline = DateTime()
    attempts = HasMany(PaymentAttempt)
    retries = HasMany(DunningRetry)
    paid_at = DateTime()
    created_at = DateTime()
    updated_at = DateTime()

    @staticmethod
    def natural_id(subscription_id: str, kind: InvoiceKind, discriminator: str) -> str:
        return str(uuid5(INVOICE_NAMESPACE, f"{subscription_id}:{kind.value}:{discriminator}"))

    @classmethod
    def issue(
        cls,
        subscription,
        kind: InvoiceKind,
        amount: int,
        discriminator: str,
        at: datetime,
        period_start: datetime | None = None,
        period_end: datetime | None = None,
    ):
        """Create an invoice and queue its first charge; zero amounts are paid on the spot."""
        invoice = cls(
            id=cls.natural_id(str(subscription.id), kind, discriminator),
            subscription_id=str(subscription.id),
            customer_id=str(subscription.customer_id),
            kind=kind.value,
            amount=amount,
            currency=subscription.currency,
            status=InvoiceStatus.DRAFT.value,
            period_start=period_start,
            period_end=period_end,
            due_at=at,
            created_at=at,
            updated_at=at,
        )
        invoice.raise_(
            InvoiceCreated(
                invoice_id=str(invoice.id),
                subscription_id=str(subscription.id),
                kind=kind.value,
                amount=amount,
                currency=invoice.currency,
                created_at=at,
            )
        )
        if amount == 0:
            invoice._settle_paid(None, None, at)
        else:
            invoice.queue_charge(at)
        return invoice

    # -------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------
    def _assert_can_transition(self, target_status: InvoiceStatus, attempted: str) -> None:
        current = InvoiceStatus(self.status)
        if target_status not in _VALID_TRANSITIONS.get(current, set()):
            raise InvalidTransition("Invoice", current.value, attempted)

    @property
    def is_outstanding(self) -> bool:
        return InvoiceStatus(self.status) in OUTSTANDING_STATUSES

    @property
    def in_dunning(self) -> bool:
        return self.is_outstanding and bool(self.retries)

    def sorted_retries(self) -> list:
        return sorted(self.retries, key=lambda retry: retry.retry_number)

    def sorted_attempts(self) -> list:
        return sorted(self.attempts, key=lambda attempt: (attempt.attempt_number, attempt.recorded_at))

    def is_pending(self, attempt_number: int) -> bool:
        return attempt_number == self.pending_attempt and ChargeState(self.charge_state) in (
            ChargeState.QUEUED,
            ChargeState.RETRY_WAIT,
        )

    def _attempt_settled(self, attempt_number: int | None) -> bool:
        return any(
            attempt.attempt_number == attempt_number
            and attempt.outcome in (AttemptOutcome.SUCCEEDED.value, AttemptOutcome.FAILED.value)
            for attempt in self.attempts
        )

    def _record_attempt(self, attempt_number: int, outcome: AttemptOutcome, at: datetime, **fields):
        attempt = PaymentAttempt(attempt_number=attempt_number, outcome=outcome.value, recorded_at=at, **fields)
        self.add_attempts(attempt)
        return attempt

    def _clear_charge(self) -> None:
        self.charge_state = ChargeState.IDLE.value
        self.next_submission_at = None

    def _cancel_scheduled_retries(self) -> None:
        for retry in self.retries:
            if retry.status == RetryStatus.SCHEDULED.value:
                retry.status = RetryStatus.CANCELED.value

    # -------------------------------------------------------------------
    # Charge submission
    # -------------------------------------------------------------------
    def queue_charge(self, at: datetime) -> int:
        """Queue a charge under the next attempt number and return that number."""
        if not (self.is_outstanding or InvoiceStatus(self.status) == InvoiceStatus.UNCOLLECTIBLE):
            raise InvalidTransition("Invoice", self.status, "queue a charge")
        if ChargeState(self.charge_state) != ChargeState.IDLE:
            raise InvalidTransition("Invoice", f"charge {self.charge_state}", "queue a charge")

        attempt_number = self.next_attempt_number or 1
        self.pending_attempt = attempt_number
        self.next_attempt_number = attempt_number + 1
        self.charge_state = ChargeState.QUEUED.value
        self.submission_failures = 0
        self.next_submission_at = None
        self.updated_at = at
        return attempt_number

    def record_submission(self, attempt_number: int, charge_id: str, at: datetime) -> bool:
        """The processor accepted the charge request. Returns False for stale results."""
        if not self.is_pending(attempt_number):
            return False

        self.charge_state = ChargeState.SUBMITTED.value
        self.next_submission_at = None
        self.charge_id = charge_id
        self.updated_at = at
        if InvoiceStatus(self.status) == InvoiceStatus.DRAFT:
            self._assert_can_transition(InvoiceStatus.OPEN, "open")
            self.status = InvoiceStatus.OPEN.value
            self.raise_(
                InvoiceOpened(
                    invoice_id=str(self.id),
                    subscription_id=str(self.subscription_id),
                    attempt_number=attempt_number,
                    opened_at=at,
                )
            )
        return True

    def record_submission_failure(self, max_submissions: int, retry_in: timedelta, at: datetime) -> bool:
        """The charge request errored or timed out. Returns True once submissions are exhausted."""
        self.submission_failures = (self.submission_failures or 0) + 1
        self.updated_at = at
        if self.submission_failures >= max_submissions:
            self._clear_charge()
            return True

        self.charge_state = ChargeState.RETRY_WAIT.value
        self.next_submission_at = at + retry_in
        return False

    def resume_submission(self, at: datetime) -> bool:
        """Re-queue a charge whose backoff elapsed, keeping its attempt number."""
        if ChargeState(self.charge_state) != ChargeState.RETRY_WAIT:
            return False
        if self.next_submission_at and self.next_submission_at > at:
            return False
        self.charge_state = ChargeState.QUEUED.value
        self.next_submission_at = None
        self.updated_at = at
        return True

    # -------------------------------------------------------------------
    # Outcomes
    # -------------------------------------------------------------------
    def _settle_paid(self, attempt_number: int | None, charge_id: str | None, at: datetime) -> None:
        self.status = InvoiceStatus.PAID.value
        self.paid_at = at
        self.updated_at = at
        self.charge_id = charge_id or self.charge_id
        self._clear_charge()
        self.raise_(
            InvoicePaid(
                invoice_id=str(self.id),
                subscription_id=str(self.subscription_id),
                amount=self.amount,
                attempt_number=attempt_number,
                paid_at=at,
            )
        )

    def record_paid(self, attempt_number: int | None, charge_id: str | None, at: datetime) -> None:
        self._assert_can_transition(InvoiceStatus.PAID, "mark paid")
        self._record_attempt(attempt_number or self.pending_attempt or 1, AttemptOutcome.SUCCEEDED, at, charge_id=charge_id)

        for retry in self.retries:
            if retry.status == RetryStatus.SUBMITTED.value:
                retry.status = RetryStatus.SUCCEEDED.value
        self._cancel_scheduled_retries()
        self.grace_deadline = None
        self._settle_paid(attempt_number, charge_id, at)

    def record_pending(self, attempt_number: int, at: datetime) -> None:
        if InvoiceStatus(self.status) in (InvoiceStatus.PAID, InvoiceStatus.VOID):
            raise InvalidTransition("Invoice", self.status, "record a pending payment")
        if self._attempt_settled(attempt_number):
            raise InvalidTransition("Invoice", f"attempt {attempt_number} settled", "record a pending payment")

        self._record_attempt(attempt_number, AttemptOutcome.PENDING, at)
        self.updated_at = at
        if InvoiceStatus(self.status) == InvoiceStatus.DRAFT:
            self.status = InvoiceStatus.OPEN.value

    def record_failure(
        self,
        attempt_number: int,
        reason: str,
        retry_offsets: tuple[timedelta, ...],
        grace_period: timedelta,
        at: datetime,
    ) -> DunningOutcome:
        """Record a failed attempt and advance the dunning schedule."""
        if InvoiceStatus(self.status) in (InvoiceStatus.PAID, InvoiceStatus.VOID):
            raise InvalidTransition("Invoice", self.status, "record a payment failure")
        if self._attempt_settled(attempt_number):
            raise InvalidTransition("Invoice", f"attempt {attempt_number} settled", "record a payment failure")

        if attempt_number == self.pending_attempt:
            self._clear_charge()
        self.updated_at = at

        next_retry_at = None
        if not self.retries:
            self.first_failed_at = at
            for number, offset in enumerate(retry_offsets, start=1):
                self.add_retries(DunningRetry(retry_number=number, due_at=at + offset))
            next_retry_at = at + retry_offsets[0]
            outcome = DunningOutcome.STARTED
        else:
            retry = next((r for r in self.retries if r.attempt_number == attempt_number), None)
            if retry is None:
                outcome = DunningOutcome.UNSCHEDULED
            else:
                retry.status = RetryStatus.FAILED.value
                upcoming = next((r for r in self.sorted_retries() if r.status == RetryStatus.SCHEDULED.value), None)
                if upcoming is None:
                    self.grace_deadline = at + grace_period
                    outcome = DunningOutcome.EXHAUSTED
                else:
                    next_retry_at = upcoming.due_at
                    outcome = DunningOutcome.RETRYING

        self._record_attempt(
            attempt_number,
            AttemptOutcome.FAILED,
            at,
            failure_reason=reason[:500] if reason else None,
            scheduled_retry_at=next_retry_at,
        )
        self.raise_(
            InvoicePaymentFailed(
                invoice_id=str(self.id),
                subscription_id=str(self.subscription_id),
                attempt_number=attempt_number,
                reason=reason,
                next_retry_at=next_retry_at,
                failed_at=at,
            )
        )
        return outcome

    @property
    def next_retry_at(self) -> datetime | None:
        upcoming = next((r for r in self.sorted_retries() if r.status == RetryStatus.SCHEDULED.value), None)
        return upcoming.due_at if upcoming else None

    # -------------------------------------------------------------------
    # Dunning
    # -------------------------------------------------------------------
    def due_retry(self, at: datetime):
        """The next scheduled retry, once it is due and the previous one has failed."""
        if not self.is_outstanding or ChargeState(self.charge_state) != ChargeState.IDLE:
            return None
        retries = self.sorted_retries()
        if any(retry.status == RetryStatus.SUBMITTED.value for retry in retries):
            return None
        upcoming = next((r for r in retries if r.status == RetryStatus.SCHEDULED.value), None)
        if upcoming is None or upcoming.due_at > at:
            return None
        return upcoming

    def submit_retry(self, retry, at: datetime) -> int:
        attempt_number = self.queue_charge(at)
        retry.status = RetryStatus.SUBMITTED.value
        retry.attempt_number = attempt_number
        return attempt_number

    def next_action_at(self) -> datetime | None:
        """Earliest time a sweep has work to do on this invoice."""
        if not self.is_outstanding:
            return None
        state = ChargeState(self.charge_state)
        if state == ChargeState.QUEUED:
            return self.updated_at
        if state == ChargeState.RETRY_WAIT:
            return self.next_submission_at
        if state == ChargeState.IDLE and not any(r.status == RetryStatus.SUBMITTED.value for r in self.retries):
            return self.next_retry_at
        return None

    # -------------------------------------------------------------------
    # Closing
    # -------------------------------------------------------------------
    def mark_uncollectible(self, at: datetime) -> None:
        self._assert_can_transition(InvoiceStatus.UNCOLLECTIBLE, "mark uncollectible")
        self.status = InvoiceStatus.UNCOLLECTIBLE.value
        self._cancel_scheduled_retries()
        self._clear_charge()
        self.updated_at = at
        self.raise_(
            InvoiceMarkedUncollectible(
                invoice_id=str(self.id),
                subscription_id=str(self.subscription_id),
                marked_at=at,
            )
        )

    @property
    def never_submitted(self) -> bool:
        return (
            InvoiceStatus(self.status) == InvoiceStatus.DRAFT
            and ChargeState(self.charge_state) == ChargeState.QUEUED
            and not self.submission_failures
            and not self.attempts
        )

    def void(self, at: datetime) -> None:
        self._assert_can_transition(InvoiceStatus.VOID, "void")
        if not self.never_submitted:
            raise InvalidTransition("Invoice", f"charge {self.charge_state}", "void")
        self.status = InvoiceStatus.VOID.value
        self._cancel_scheduled_retries()
        self._clear_charge()
        self.updated_at = at
        self.raise_(
            InvoiceVoided(
                invoice_id=str(self.id),
                subscription_id=str(self.subscription_id),
                voided_at=at,
            )
        )
