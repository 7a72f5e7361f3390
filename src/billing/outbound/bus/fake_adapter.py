"""In-memory message bus for development and testing."""

import asyncio
from collections.abc import AsyncIterator

from billing.errors import ExternalCallFailure
from billing.outbound.bus.port import Delivery, MessageBus


class FakeMessageBus(MessageBus):
    def __init__(self) -> None:
        self.published: list[dict] = []
        self.acked: list[str] = []
        self.failures_remaining: int = 0
        self.failure_reason: str = "bus unavailable"
        self._inbox: asyncio.Queue[Delivery] | None = None

    def fail_next(self, count: int, reason: str = "bus unavailable") -> None:
        """Reject the next ``count`` publish calls."""
        self.failures_remaining = count
        self.failure_reason = reason

    def topic(self, name: str) -> list[dict]:
        return [message for message in self.published if message["topic"] == name]

    async def publish(self, topic: str, payload: dict, idempotency_key: str) -> None:
        if self.failures_remaining > 0:
            self.failures_remaining -= 1
            raise ExternalCallFailure("publish", self.failure_reason)
        self.published.append({"topic": topic, "payload": payload, "idempotency_key": idempotency_key})

    def _queue(self) -> asyncio.Queue[Delivery]:
        if self._inbox is None:
            self._inbox = asyncio.Queue()
        return self._inbox

    async def inject(self, topic: str, delivery_id: str, payload: dict) -> None:
        """Simulate an upstream service publishing to ``topic``."""
        await self._queue().put(Delivery(topic=topic, delivery_id=delivery_id, payload=payload, receipt=delivery_id))

    async def deliveries(self, topics: tuple[str, ...]) -> AsyncIterator[Delivery]:
        queue = self._queue()
        while True:
            delivery = await queue.get()
            if delivery.topic in topics:
                yield delivery

    async def ack(self, delivery: Delivery) -> None:
        self.acked.append(delivery.delivery_id)
