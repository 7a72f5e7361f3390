"""Idempotency store — dedup gate in front of normalization.

``begin()`` classifies a delivery before any work is done. Handlers call
``is_settled()`` and ``settle()`` inside their unit of work, which makes the
ledger update atomic with the state change and closes the race between two
concurrent deliveries of the same event.
"""

from datetime import UTC, datetime
from enum import Enum

import structlog
from protean.domain import Domain
from protean.exceptions import ObjectNotFoundError
from protean.utils.globals import current_domain

from billing.ledger.inbound_event import InboundEvent, LedgerOutcome, ledger_key

logger = structlog.get_logger(__name__)


class LedgerStatus(Enum):
    NEW = "new"
    RESUMED = "resumed"
    DUPLICATE = "duplicate"


class IdempotencyStore:
    def __init__(self, domain: Domain) -> None:
        self._domain = domain

    def begin(
        self,
        source: str,
        external_id: str,
        event_type: str | None = None,
        received_at: datetime | None = None,
    ) -> tuple[str, LedgerStatus]:
        key = ledger_key(source, external_id)
        with self._domain.domain_context():
            repo = current_domain.repository_for(InboundEvent)
            try:
                entry = repo.get(key)
            except ObjectNotFoundError:
                repo.add(InboundEvent.receive(source, external_id, event_type, received_at))
                return key, LedgerStatus.NEW

        if entry.terminal:
            logger.info("Duplicate delivery absorbed", ledger_key=key, outcome=entry.outcome)
            return key, LedgerStatus.DUPLICATE

        logger.warning("Resuming unsettled delivery", ledger_key=key)
        return key, LedgerStatus.RESUMED

    def settle(self, key: str, outcome: LedgerOutcome) -> None:
        """Settle a delivery that produced no command (e.g. unknown event types)."""
        with self._domain.domain_context():
            settle(key, outcome)

    def outcome(self, key: str) -> str | None:
        with self._domain.domain_context():
            try:
                return current_domain.repository_for(InboundEvent).get(key).outcome
            except ObjectNotFoundError:
                return None


def is_settled(key: str | None) -> bool:
    """True when ``key`` already carries a terminal outcome."""
    if not key:
        return False
    try:
        return current_domain.repository_for(InboundEvent).get(key).terminal
    except ObjectNotFoundError:
        return False


def settle(key: str | None, outcome: LedgerOutcome) -> None:
    """Mark ``key`` terminal. No-op for commands that did not come from a delivery."""
    if not key:
        return
    repo = current_domain.repository_for(InboundEvent)
    try:
        entry = repo.get(key)
    except ObjectNotFoundError:
        source, _, external_id = key.partition(":")
        entry = InboundEvent.receive(source, external_id, None)
    if entry.settle(outcome, datetime.now(UTC)):
        repo.add(entry)


def reject(key: str | None, error: Exception, **context) -> str:
    """Acknowledge a command that is inapplicable to the current state."""
    logger.warning("Command rejected", ledger_key=key, reason=str(error), **context)
    settle(key, LedgerOutcome.REJECTED)
    return LedgerOutcome.REJECTED.value


def duplicate(key: str | None, **context) -> str:
    logger.info("Duplicate command absorbed", ledger_key=key, **context)
    return LedgerStatus.DUPLICATE.value


def applied(key: str | None) -> str:
    settle(key, LedgerOutcome.APPLIED)
    return LedgerOutcome.APPLIED.value
