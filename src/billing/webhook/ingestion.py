"""Webhook ingestion: verify, deduplicate, normalize, dispatch."""

from collections.abc import Callable
from datetime import UTC, datetime

import structlog
from protean.exceptions import ValidationError

from billing.errors import PersistenceFailure
from billing.ledger.inbound_event import EventSource, LedgerOutcome
from billing.ledger.store import IdempotencyStore, LedgerStatus
from billing.webhook.normalizer import EventNormalizer, Ignored, ProcessorEvent
from billing.webhook.verifier import WebhookVerifier

logger = structlog.get_logger(__name__)


class WebhookIngestor:
    def __init__(
        self,
        verifier: WebhookVerifier,
        store: IdempotencyStore,
        normalizer: EventNormalizer,
        dispatcher,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.verifier = verifier
        self.store = store
        self.normalizer = normalizer
        self.dispatcher = dispatcher
        self.clock = clock or (lambda: datetime.now(UTC))

    async def ingest(self, payload: bytes | str, signature: str | None) -> str:
        """Process one delivery and return its outcome.

        ``VerificationFailure`` and ``PersistenceFailure`` propagate; every
        other outcome means the delivery can be acknowledged.
        """
        event = ProcessorEvent.from_payload(self.verifier.verify(payload, signature))
        log = logger.bind(event_id=event.event_id, event_type=event.event_type)

        try:
            key, status = self.store.begin(EventSource.PROCESSOR.value, event.event_id, event.event_type, self.clock())
        except Exception as exc:
            raise PersistenceFailure(f"Ledger write failed for {event.event_id}: {exc}") from exc

        if status == LedgerStatus.DUPLICATE:
            return LedgerStatus.DUPLICATE.value

        try:
            command = self.normalizer.normalize(event, key)
        except ValidationError as exc:
            log.warning("Malformed processor event", errors=exc.messages)
            self.store.settle(key, LedgerOutcome.REJECTED)
            return LedgerOutcome.REJECTED.value

        if isinstance(command, Ignored):
            log.info("Processor event ignored", reason=command.reason)
            self.store.settle(key, LedgerOutcome.IGNORED)
            return LedgerOutcome.IGNORED.value

        outcome = await self.dispatcher.dispatch(command)
        log.info("Processor event processed", ledger_key=key, outcome=outcome)
        return outcome
