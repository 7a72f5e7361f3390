"""InboundEvent aggregate — the idempotency ledger.

One record per external event identifier (processor webhook id or bus
delivery id). A record is written as ``received`` before the event is
applied and is settled with a terminal outcome in the same unit of work as
the state change it caused.
"""

from datetime import UTC, datetime
from enum import Enum

from protean.fields import Boolean, DateTime, String

from billing.domain import billing


class EventSource(Enum):
    PROCESSOR = "processor"
    BUS = "bus"


class LedgerOutcome(Enum):
    RECEIVED = "received"
    APPLIED = "applied"
    REJECTED = "rejected"
    IGNORED = "ignored"


def ledger_key(source: str, external_id: str) -> str:
    return f"{source}:{external_id}"


@billing.aggregate
class InboundEvent:
    ledger_key = String(identifier=True, max_length=300)
    source = String(choices=EventSource, required=True)
    external_id = String(required=True, max_length=255)
    event_type = String(max_length=255)
    outcome = String(choices=LedgerOutcome, default=LedgerOutcome.RECEIVED.value)
    terminal = Boolean(default=False)
    received_at = DateTime()
    processed_at = DateTime()

    @classmethod
    def receive(cls, source: str, external_id: str, event_type: str | None, received_at: datetime | None = None):
        return cls(
            ledger_key=ledger_key(source, external_id),
            source=source,
            external_id=external_id,
            event_type=event_type,
            outcome=LedgerOutcome.RECEIVED.value,
            terminal=False,
            received_at=received_at or datetime.now(UTC),
        )

    def settle(self, outcome: LedgerOutcome, at: datetime | None = None) -> bool:
        """Record the terminal outcome. Returns False when already settled."""
        if self.terminal:
            return False
        if outcome == LedgerOutcome.RECEIVED:
            raise ValueError("A ledger entry cannot be settled as received")
        self.outcome = outcome.value
        self.terminal = True
        self.processed_at = at or datetime.now(UTC)
        return True
