"""Outbound publisher — delivers staged outbox messages to the bus.

Messages of one subscription are published in transition order; the first
failure stops that subscription's batch so a later transition never
overtakes an earlier one. Failed messages are retried by scheduler ticks
with bounded backoff and parked as ``dead`` after ``publish_max_attempts``.
"""

import asyncio
from collections import defaultdict
from collections.abc import Callable
from datetime import UTC, datetime

import structlog
from protean.domain import Domain
from protean.utils.globals import current_domain

from billing.config import BillingConfig
from billing.errors import ExternalCallFailure
from billing.outbound.bus.port import MessageBus
from billing.outbound.outbox import MessageStatus, OutboundMessage

logger = structlog.get_logger(__name__)


def _sequence(message: OutboundMessage) -> int:
    return int(message.idempotency_key.rsplit(":", 1)[1])


class OutboundPublisher:
    def __init__(
        self,
        domain: Domain,
        bus: MessageBus,
        config: BillingConfig,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.domain = domain
        self.bus = bus
        self.config = config
        self.clock = clock or (lambda: datetime.now(UTC))
        self._in_flight: set[str] = set()

    def _pending(self, **filters) -> list[OutboundMessage]:
        with self.domain.domain_context():
            repo = current_domain.repository_for(OutboundMessage)
            return repo._dao.query.filter(status=MessageStatus.PENDING.value, **filters).limit(None).all().items

    async def publish_pending(self, subscription_id: str) -> int:
        """First delivery attempt for everything a subscription has staged."""
        messages = sorted(self._pending(subscription_id=subscription_id), key=_sequence)
        return await self._publish_in_order(messages)

    async def retry_due(self, as_of: datetime | None = None) -> int:
        """Retry pending messages whose backoff has elapsed."""
        now = as_of or self.clock()
        due = [m for m in self._pending() if m.next_attempt_at is None or m.next_attempt_at <= now]
        by_subscription = defaultdict(list)
        for message in due:
            by_subscription[str(message.subscription_id)].append(message)

        published = 0
        for messages in by_subscription.values():
            published += await self._publish_in_order(sorted(messages, key=_sequence))
        return published

    async def _publish_in_order(self, messages: list[OutboundMessage]) -> int:
        published = 0
        for message in messages:
            if not await self._attempt(message):
                break
            published += 1
        return published

    async def _attempt(self, message: OutboundMessage) -> bool:
        key = message.idempotency_key
        if key in self._in_flight:
            return False

        self._in_flight.add(key)
        try:
            with self.domain.domain_context():
                status = current_domain.repository_for(OutboundMessage).get(key).status
            if status != MessageStatus.PENDING.value:
                return status == MessageStatus.PUBLISHED.value

            try:
                await asyncio.wait_for(
                    self.bus.publish(message.topic, message.body, key),
                    timeout=self.config.external_call_timeout,
                )
            except (ExternalCallFailure, TimeoutError) as exc:
                self._record(key, error=str(exc) or exc.__class__.__name__)
                return False
            self._record(key)
            return True
        finally:
            self._in_flight.discard(key)

    def _record(self, key: str, error: str | None = None) -> None:
        now = self.clock()
        with self.domain.domain_context():
            repo = current_domain.repository_for(OutboundMessage)
            message = repo.get(key)
            if error is None:
                message.mark_published(now)
                logger.info("Message published", topic=message.topic, idempotency_key=key)
            else:
                message.mark_failed(
                    error,
                    self.config.backoff(message.attempts + 1),
                    self.config.publish_max_attempts,
                    now,
                )
                log = logger.error if message.status == MessageStatus.DEAD.value else logger.warning
                log(
                    "Message publish failed",
                    topic=message.topic,
                    idempotency_key=key,
                    attempts=message.attempts,
                    status=message.status,
                    error=error,
                )
            repo.add(message)

    def requeue_dead(self, key: str) -> OutboundMessage:
        with self.domain.domain_context():
            repo = current_domain.repository_for(OutboundMessage)
            message = repo.get(key)
            message.requeue(self.clock())
            repo.add(message)
            return message
