"""Message bus port (abstract interface)."""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field


@dataclass(frozen=True)
class Delivery:
    """One consumed message; ``delivery_id`` is unique per message, not per redelivery."""

    topic: str
    delivery_id: str
    payload: dict = field(default_factory=dict)
    receipt: str | None = None  # transport handle used for acknowledgement


class MessageBus(ABC):
    @abstractmethod
    async def publish(self, topic: str, payload: dict, idempotency_key: str) -> None:
        """Publish ``payload``; raises ``ExternalCallFailure`` when the bus rejects it."""
        ...

    @abstractmethod
    def deliveries(self, topics: tuple[str, ...]) -> AsyncIterator[Delivery]:
        """Async iterator over messages consumed from ``topics``."""
        ...

    @abstractmethod
    async def ack(self, delivery: Delivery) -> None:
        ...

    async def close(self) -> None:  # noqa: B027
        return None
