"""Event normalizer — maps processor events onto internal commands.

Only events carrying the engine's metadata (set on every charge and refund
it submits) can be mapped. Anything else, including event types this engine
does not know yet, normalizes to ``Ignored`` and is acknowledged.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime

from protean.exceptions import ValidationError

from billing.errors import VerificationFailure
from billing.invoice.payment import MarkInvoicePaid, RecordPaymentFailure, RecordPaymentPending
from billing.refund.refunding import CompleteRefund, FailRefund
from billing.subscription.cancellation import CancelSubscription
from billing.subscription.subscription import CancelMode


@dataclass(frozen=True)
class ProcessorEvent:
    event_id: str
    event_type: str
    created: datetime
    data: dict = field(default_factory=dict)

    @classmethod
    def from_payload(cls, event: dict) -> "ProcessorEvent":
        created = event.get("created")
        try:
            occurred = datetime.fromtimestamp(created, UTC) if created else datetime.now(UTC)
        except (OverflowError, OSError, ValueError) as exc:
            raise VerificationFailure(f"Event created is out of range: {created}") from exc
        return cls(
            event_id=event["id"],
            event_type=event["type"],
            created=occurred,
            data=(event.get("data") or {}).get("object") or {},
        )

    @property
    def metadata(self) -> dict:
        metadata = self.data.get("metadata") or {}
        if not isinstance(metadata, dict):
            raise ValidationError({"metadata": ["Metadata must be an object"]})
        return metadata


@dataclass(frozen=True)
class Ignored:
    reason: str


NormalizedCommand = (
    MarkInvoicePaid | RecordPaymentFailure | RecordPaymentPending | CompleteRefund | FailRefund | CancelSubscription
)


def _attempt_number(metadata: dict) -> int | None:
    value = metadata.get("attempt_number")
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError({"attempt_number": [f"Not a number: {value!r}"]}) from None


def _failure_reason(data: dict) -> str:
    error = data.get("last_payment_error") or {}
    return error.get("decline_code") or error.get("code") or error.get("message") or "payment_failed"


class EventNormalizer:
    def normalize(self, event: ProcessorEvent, ledger_key: str) -> NormalizedCommand | Ignored:
        metadata = event.metadata
        subscription_id = metadata.get("subscription_id")
        if not subscription_id:
            return Ignored(f"{event.event_type} carries no subscription metadata")

        match event.event_type:
            case "payment_intent.succeeded" | "payment_intent.payment_failed" | "payment_intent.processing":
                return self._payment(event, subscription_id, ledger_key)
            case "refund.updated" | "refund.failed":
                return self._refund(event, subscription_id, ledger_key)
            case "customer.subscription.deleted":
                return CancelSubscription(
                    subscription_id=subscription_id,
                    mode=CancelMode.IMMEDIATE.value,
                    reason="processor_deleted",
                    requested_at=event.created,
                    ledger_key=ledger_key,
                )
            case _:
                return Ignored(f"Unhandled event type {event.event_type}")

    def _payment(self, event: ProcessorEvent, subscription_id: str, ledger_key: str):
        metadata = event.metadata
        invoice_id = metadata.get("invoice_id")
        if not invoice_id:
            return Ignored(f"{event.event_type} carries no invoice metadata")

        common = {
            "subscription_id": subscription_id,
            "invoice_id": invoice_id,
            "attempt_number": _attempt_number(metadata),
            "occurred_at": event.created,
            "ledger_key": ledger_key,
        }
        match event.event_type:
            case "payment_intent.succeeded":
                return MarkInvoicePaid(charge_id=event.data.get("id"), **common)
            case "payment_intent.payment_failed":
                return RecordPaymentFailure(reason=_failure_reason(event.data), **common)
            case _:
                return RecordPaymentPending(**common)

    def _refund(self, event: ProcessorEvent, subscription_id: str, ledger_key: str):
        refund_id = event.metadata.get("refund_id")
        if not refund_id:
            return Ignored(f"{event.event_type} carries no refund metadata")

        status = event.data.get("status")
        if event.event_type == "refund.failed" or status in ("failed", "canceled"):
            return FailRefund(
                subscription_id=subscription_id,
                refund_id=refund_id,
                reason=event.data.get("failure_reason") or status or "refund_failed",
                occurred_at=event.created,
                ledger_key=ledger_key,
            )
        if status == "succeeded":
            return CompleteRefund(
                subscription_id=subscription_id,
                refund_id=refund_id,
                processor_refund_id=event.data.get("id"),
                occurred_at=event.created,
                ledger_key=ledger_key,
            )
        return Ignored(f"Refund {refund_id} is still {status}")
