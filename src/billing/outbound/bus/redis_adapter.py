"""Redis Streams message bus.

Each topic is a stream consumed through a consumer group. An entry stays in
the group's pending list until it is acknowledged: on startup this consumer
re-reads its own pending entries, and entries left idle by any consumer for
``reclaim_idle_ms`` are claimed with XAUTOCLAIM and delivered again. Read
errors are logged and retried with backoff instead of ending consumption.
"""

import asyncio
import json
import socket
import time
from collections.abc import AsyncIterator

import redis.asyncio as redis
import structlog
from redis.exceptions import RedisError, ResponseError

from billing.errors import ExternalCallFailure
from billing.outbound.bus.port import Delivery, MessageBus

logger = structlog.get_logger(__name__)

STREAM_MAXLEN = 100_000
READ_COUNT = 50


class RedisStreamBus(MessageBus):
    def __init__(
        self,
        url: str,
        group: str = "billing",
        consumer: str | None = None,
        block_ms: int = 5000,
        reclaim_idle_ms: int = 60_000,
        retry_delay: float = 1.0,
        max_retry_delay: float = 30.0,
    ) -> None:
        self.redis = redis.from_url(url, decode_responses=True)
        self.group = group
        self.consumer = consumer or socket.gethostname()
        self.block_ms = block_ms
        self.reclaim_idle_ms = reclaim_idle_ms
        self.retry_delay = retry_delay
        self.max_retry_delay = max_retry_delay

    async def publish(self, topic: str, payload: dict, idempotency_key: str) -> None:
        try:
            await self.redis.xadd(
                topic,
                {
                    "idempotency_key": idempotency_key,
                    "delivery_id": idempotency_key,
                    "payload": json.dumps(payload, default=str),
                },
                maxlen=STREAM_MAXLEN,
            )
        except RedisError as exc:
            raise ExternalCallFailure("publish", str(exc)) from exc

    async def _ensure_groups(self, topics: tuple[str, ...]) -> None:
        for topic in topics:
            try:
                await self.redis.xgroup_create(topic, self.group, id="0", mkstream=True)
            except ResponseError as exc:
                if "BUSYGROUP" not in str(exc):
                    raise

    async def _read_pending(self, cursors: dict[str, str]) -> list:
        """Page through this consumer's pending entries; exhausted topics drop out of ``cursors``."""
        batches = await self.redis.xreadgroup(self.group, self.consumer, dict(cursors), count=READ_COUNT)
        for topic, messages in batches or []:
            if messages:
                cursors[topic] = messages[-1][0]
            else:
                cursors.pop(topic, None)
        return batches or []

    async def _reclaim(self, topics: tuple[str, ...]) -> list:
        """Claim entries other consumers left idle past ``reclaim_idle_ms``."""
        batches = []
        for topic in topics:
            start = "0-0"
            while True:
                response = await self.redis.xautoclaim(
                    topic, self.group, self.consumer, self.reclaim_idle_ms, start_id=start, count=READ_COUNT
                )
                start, messages = response[0], response[1]
                if messages:
                    batches.append((topic, messages))
                if not messages or start in ("0-0", b"0-0"):
                    break
        return batches

    async def _to_delivery(self, topic: str, message_id: str | None, fields: dict | None) -> Delivery | None:
        if message_id is None:
            return None
        if not fields:
            # Trimmed from the stream while still pending.
            await self.redis.xack(topic, self.group, message_id)
            return None
        try:
            payload = json.loads(fields.get("payload") or "{}")
        except json.JSONDecodeError:
            logger.warning("Dropping malformed message", topic=topic, message_id=message_id)
            await self.redis.xack(topic, self.group, message_id)
            return None
        return Delivery(
            topic=topic,
            delivery_id=fields.get("delivery_id") or message_id,
            payload=payload,
            receipt=message_id,
        )

    async def deliveries(self, topics: tuple[str, ...]) -> AsyncIterator[Delivery]:
        pending = {topic: "0" for topic in topics}
        groups_ready = False
        delay = self.retry_delay
        next_reclaim = time.monotonic() + self.reclaim_idle_ms / 1000
        while True:
            try:
                if not groups_ready:
                    await self._ensure_groups(topics)
                    groups_ready = True
                if pending:
                    batches = await self._read_pending(pending)
                elif time.monotonic() >= next_reclaim:
                    next_reclaim = time.monotonic() + self.reclaim_idle_ms / 1000
                    batches = await self._reclaim(topics)
                else:
                    batches = await self.redis.xreadgroup(
                        self.group, self.consumer, {topic: ">" for topic in topics}, count=READ_COUNT, block=self.block_ms
                    )
                deliveries = []
                for topic, messages in batches or []:
                    for message_id, fields in messages:
                        delivery = await self._to_delivery(topic, message_id, fields)
                        if delivery is not None:
                            deliveries.append(delivery)
            except RedisError as exc:
                logger.warning("Stream read failed", group=self.group, error=str(exc), retry_in=delay)
                await asyncio.sleep(delay)
                delay = min(delay * 2, self.max_retry_delay)
                continue

            delay = self.retry_delay
            for delivery in deliveries:
                yield delivery

    async def ack(self, delivery: Delivery) -> None:
        try:
            await self.redis.xack(delivery.topic, self.group, delivery.receipt or delivery.delivery_id)
        except RedisError as exc:
            raise ExternalCallFailure("ack", str(exc)) from exc

    async def close(self) -> None:
        await self.redis.aclose()
