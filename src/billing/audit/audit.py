"""AuditEntry aggregate — append-only trail of financial transitions.

Entries are written by command handlers in the same unit of work as the
change they describe and are never modified afterwards.
"""

import json
from datetime import UTC, datetime
from enum import Enum

from protean.fields import DateTime, Identifier, Integer, String, Text
from protean.utils.globals import current_domain

from billing.domain import billing


class AuditAction(Enum):
    INVOICE_CREATED = "invoice_created"
    INVOICE_PAID = "invoice_paid"
    INVOICE_UNCOLLECTIBLE = "invoice_uncollectible"
    INVOICE_VOIDED = "invoice_voided"
    ATTEMPT_RECORDED = "attempt_recorded"
    CREDIT_GRANTED = "credit_granted"
    CREDIT_APPLIED = "credit_applied"
    REFUND_REQUESTED = "refund_requested"
    REFUND_COMPLETED = "refund_completed"
    REFUND_FAILED = "refund_failed"


@billing.aggregate
class AuditEntry:
    subscription_id = Identifier(required=True)
    invoice_id = Identifier()
    action = String(choices=AuditAction, required=True)
    amount = Integer(default=0)
    currency = String(max_length=3)
    details = Text()  # JSON
    recorded_at = DateTime(required=True)

    @classmethod
    def record(
        cls,
        subscription_id: str,
        action: AuditAction,
        amount: int = 0,
        currency: str | None = None,
        invoice_id: str | None = None,
        recorded_at: datetime | None = None,
        **details,
    ):
        return cls(
            subscription_id=subscription_id,
            invoice_id=invoice_id,
            action=action.value,
            amount=amount,
            currency=currency,
            details=json.dumps(details, default=str, sort_keys=True),
            recorded_at=recorded_at or datetime.now(UTC),
        )

    @property
    def detail_dict(self) -> dict:
        return json.loads(self.details) if self.details else {}


def audit(subscription_id: str, action: AuditAction, **kwargs) -> AuditEntry:
    """Append an entry inside the running unit of work."""
    entry = AuditEntry.record(subscription_id, action, **kwargs)
    current_domain.repository_for(AuditEntry).add(entry)
    return entry


def trail_for(subscription_id: str) -> list[AuditEntry]:
    repo = current_domain.repository_for(AuditEntry)
    entries = repo._dao.query.filter(subscription_id=subscription_id).limit(None).all().items
    return sorted(entries, key=lambda entry: entry.recorded_at)
