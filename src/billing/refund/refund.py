"""Refund aggregate — money returned against a paid invoice.

State Machine:
    QUEUED → SUBMITTED → SUCCEEDED / FAILED
    QUEUED → RETRY_WAIT → QUEUED (submission error, bounded backoff)
    QUEUED / RETRY_WAIT → FAILED (submissions exhausted)

Like charges, refunds are submitted after commit and confirmed later by a
processor webhook.
"""

from datetime import datetime, timedelta
from enum import Enum

from protean.exceptions import ValidationError
from protean.fields import DateTime, Identifier, Integer, String

from billing.domain import billing
from billing.errors import InvalidTransition
from billing.refund.events import RefundCompleted, RefundFailed, RefundRequested


class RefundStatus(Enum):
    QUEUED = "queued"
    SUBMITTED = "submitted"
    RETRY_WAIT = "retry_wait"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


_VALID_TRANSITIONS = {
    RefundStatus.QUEUED: {RefundStatus.SUBMITTED, RefundStatus.RETRY_WAIT, RefundStatus.SUCCEEDED, RefundStatus.FAILED},
    RefundStatus.RETRY_WAIT: {RefundStatus.QUEUED, RefundStatus.SUCCEEDED, RefundStatus.FAILED},
    RefundStatus.SUBMITTED: {RefundStatus.SUCCEEDED, RefundStatus.FAILED},
    RefundStatus.SUCCEEDED: set(),  # Terminal
    RefundStatus.FAILED: set(),  # Terminal
}


@billing.aggregate
class Refund:
    invoice_id = Identifier(required=True)
    subscription_id = Identifier(required=True)
    charge_id = String(max_length=255)
    amount = Integer(required=True, min_value=1)
    currency = String(max_length=3, required=True)
    reason = String(max_length=500)
    status = String(choices=RefundStatus, default=RefundStatus.QUEUED.value)
    submission_failures = Integer(default=0)
    next_submission_at = DateTime()
    processor_refund_id = String(max_length=255)
    failure_reason = String(max_length=500)
    requested_at = DateTime()
    completed_at = DateTime()

    @classmethod
    def request(cls, invoice, amount: int, reason: str | None, at: datetime, already_refunded: int = 0, refund_id: str | None = None):
        remaining = invoice.amount - already_refunded
        if amount <= 0 or amount > remaining:
            raise ValidationError({"amount": [f"Refund amount must be between 1 and {remaining}"]})

        attributes = {
            "invoice_id": str(invoice.id),
            "subscription_id": str(invoice.subscription_id),
            "charge_id": invoice.charge_id,
            "amount": amount,
            "currency": invoice.currency,
            "reason": reason,
            "status": RefundStatus.QUEUED.value,
            "requested_at": at,
        }
        if refund_id:
            attributes["id"] = refund_id

        refund = cls(**attributes)
        refund.raise_(
            RefundRequested(
                refund_id=str(refund.id),
                invoice_id=str(invoice.id),
                subscription_id=str(invoice.subscription_id),
                amount=amount,
                currency=invoice.currency,
                reason=reason,
                requested_at=at,
            )
        )
        return refund

    def _assert_can_transition(self, target_status: RefundStatus, attempted: str) -> None:
        current = RefundStatus(self.status)
        if target_status not in _VALID_TRANSITIONS.get(current, set()):
            raise InvalidTransition("Refund", current.value, attempted)

    @property
    def is_settled(self) -> bool:
        return RefundStatus(self.status) in (RefundStatus.SUCCEEDED, RefundStatus.FAILED)

    def record_submission(self, processor_refund_id: str) -> bool:
        if RefundStatus(self.status) != RefundStatus.QUEUED:
            return False
        self.status = RefundStatus.SUBMITTED.value
        self.processor_refund_id = processor_refund_id
        self.next_submission_at = None
        return True

    def record_submission_failure(self, reason: str, max_submissions: int, retry_in: timedelta, at: datetime) -> bool:
        """Returns True when the refund failed for good."""
        if RefundStatus(self.status) != RefundStatus.QUEUED:
            return False
        self.submission_failures = (self.submission_failures or 0) + 1
        if self.submission_failures >= max_submissions:
            self.fail(f"submission_failed: {reason}", at)
            return True
        self.status = RefundStatus.RETRY_WAIT.value
        self.next_submission_at = at + retry_in
        return False

    def resume_submission(self, at: datetime) -> bool:
        if RefundStatus(self.status) != RefundStatus.RETRY_WAIT:
            return False
        if self.next_submission_at and self.next_submission_at > at:
            return False
        self.status = RefundStatus.QUEUED.value
        self.next_submission_at = None
        return True

    def complete(self, processor_refund_id: str | None, at: datetime) -> None:
        self._assert_can_transition(RefundStatus.SUCCEEDED, "complete")
        self.status = RefundStatus.SUCCEEDED.value
        self.processor_refund_id = processor_refund_id or self.processor_refund_id
        self.completed_at = at
        self.raise_(
            RefundCompleted(
                refund_id=str(self.id),
                invoice_id=str(self.invoice_id),
                amount=self.amount,
                completed_at=at,
            )
        )

    def fail(self, reason: str | None, at: datetime) -> None:
        self._assert_can_transition(RefundStatus.FAILED, "fail")
        self.status = RefundStatus.FAILED.value
        self.failure_reason = reason
        self.completed_at = at
        self.next_submission_at = None
        self.raise_(
            RefundFailed(
                refund_id=str(self.id),
                invoice_id=str(self.invoice_id),
                reason=reason,
                failed_at=at,
            )
        )
