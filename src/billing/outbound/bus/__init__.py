"""Message bus factory: Redis Streams when a URL is configured, in-memory otherwise."""

from billing.config import BillingConfig
from billing.outbound.bus.fake_adapter import FakeMessageBus
from billing.outbound.bus.port import Delivery, MessageBus
from billing.outbound.bus.redis_adapter import RedisStreamBus

__all__ = ["Delivery", "FakeMessageBus", "MessageBus", "RedisStreamBus", "build_bus"]


def build_bus(config: BillingConfig) -> MessageBus:
    if config.redis_url:
        return RedisStreamBus(config.redis_url, group=config.consumer_group)
    return FakeMessageBus()
