"""Composition root of the lifecycle engine.

``BillingEngine`` wires the idempotency store, webhook ingestion, the
dispatcher with its submitter and publisher, the scheduler and the inbound
consumer around one Protean domain and one ``BillingConfig``.
"""

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime

import structlog
from protean.domain import Domain

from billing.config import BillingConfig
from billing.dispatch.dispatcher import Dispatcher, TickResult
from billing.dispatch.scheduler import Scheduler
from billing.dispatch.submitter import ChargeSubmitter
from billing.gateway import PaymentGateway, build_gateway
from billing.inbound.consumer import InboundMessageConsumer
from billing.ledger.store import IdempotencyStore
from billing.outbound.bus import MessageBus, build_bus
from billing.outbound.publisher import OutboundPublisher
from billing.subscription.sweep import Tick
from billing.webhook.ingestion import WebhookIngestor
from billing.webhook.normalizer import EventNormalizer
from billing.webhook.verifier import WebhookVerifier

logger = structlog.get_logger(__name__)


class BillingEngine:
    def __init__(
        self,
        domain: Domain,
        config: BillingConfig,
        gateway: PaymentGateway | None = None,
        bus: MessageBus | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.domain = domain
        self.config = config
        self.clock = clock or (lambda: datetime.now(UTC))
        self.gateway = gateway or build_gateway(config)
        self.bus = bus or build_bus(config)

        self.store = IdempotencyStore(domain)
        self.publisher = OutboundPublisher(domain, self.bus, config, self.clock)
        self.submitter = ChargeSubmitter(domain, self.gateway, config, self.clock)
        self.dispatcher = Dispatcher(domain, config, self.submitter, self.publisher, self.clock)
        self.scheduler = Scheduler(self.dispatcher, config, self.clock)
        self.ingestor = WebhookIngestor(
            WebhookVerifier(config.webhook_secret, config.webhook_tolerance_seconds),
            self.store,
            EventNormalizer(),
            self.dispatcher,
            self.clock,
        )
        self.consumer = InboundMessageConsumer(self.bus, self.store, self.dispatcher, config)
        self._consumer_task: asyncio.Task | None = None

    async def start(self, background: bool = True) -> None:
        """Start the worker pool; with ``background`` also the scheduler and inbound consumer."""
        await self.dispatcher.start()
        if background:
            self.scheduler.start()
            self._consumer_task = asyncio.create_task(self.consumer.run(), name="billing-consumer")
        logger.info("Billing engine started", background=background)

    async def stop(self) -> None:
        await self.scheduler.stop()
        if self._consumer_task is not None:
            self._consumer_task.cancel()
            await asyncio.gather(self._consumer_task, return_exceptions=True)
            self._consumer_task = None
        await self.dispatcher.stop()
        await self.bus.close()
        logger.info("Billing engine stopped")

    async def dispatch(self, command):
        return await self.dispatcher.dispatch(command)

    async def ingest_webhook(self, payload: bytes | str, signature: str | None) -> str:
        return await self.ingestor.ingest(payload, signature)

    async def tick(self, as_of: datetime | None = None) -> TickResult:
        """Run one scheduler tick and wait for the sweeps it fans out."""
        return await self.dispatcher.dispatch(Tick(as_of=as_of or self.clock()))

    async def __aenter__(self) -> "BillingEngine":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()
