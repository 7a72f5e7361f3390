"""Inbound bus consumer — upstream domain events into billing commands.

Each delivery is keyed by its delivery id in the idempotency ledger (source
``bus``). A delivery is acknowledged once it has a terminal outcome; a
persistence failure leaves it unacknowledged so the bus redelivers it.
"""

import structlog
from protean.exceptions import ObjectNotFoundError, ValidationError
from pydantic import ValidationError as ContractError

from billing.config import BillingConfig
from billing.customer.provisioning import ProvisionCustomer, ProvisionTenant
from billing.errors import ExternalCallFailure, PersistenceFailure
from billing.inbound.contracts import PlanChangeRequested, SchoolRegistered, UserCreated
from billing.ledger.inbound_event import EventSource, LedgerOutcome
from billing.ledger.store import IdempotencyStore, LedgerStatus
from billing.outbound.bus.port import Delivery, MessageBus
from billing.subscription.plan_change import ChangePlan

logger = structlog.get_logger(__name__)


def translate(delivery: Delivery, ledger_key: str):
    """Map a delivery onto a command; ``None`` for topics billing does not consume."""
    match delivery.topic:
        case "users.user_created":
            user = UserCreated.model_validate(delivery.payload)
            return ProvisionCustomer(
                customer_id=user.user_id,
                tenant_id=user.tenant_id,
                tenant_type=user.tenant_type,
                email=user.email,
                ledger_key=ledger_key,
            )
        case "billing.plan_changed":
            change = PlanChangeRequested.model_validate(delivery.payload)
            return ChangePlan(
                subscription_id=change.subscription_id,
                new_plan_id=change.plan_id,
                requested_at=change.changed_at,
                ledger_key=ledger_key,
            )
        case "schools.school_registered":
            school = SchoolRegistered.model_validate(delivery.payload)
            return ProvisionTenant(
                tenant_id=school.school_id,
                display_name=school.name,
                ledger_key=ledger_key,
            )
        case _:
            return None


class InboundMessageConsumer:
    def __init__(self, bus: MessageBus, store: IdempotencyStore, dispatcher, config: BillingConfig) -> None:
        self.bus = bus
        self.store = store
        self.dispatcher = dispatcher
        self.config = config

    async def handle(self, delivery: Delivery) -> str:
        """Apply one delivery and acknowledge it unless the local commit failed."""
        log = logger.bind(topic=delivery.topic, delivery_id=delivery.delivery_id)
        try:
            key, status = self.store.begin(EventSource.BUS.value, delivery.delivery_id, delivery.topic)
        except Exception as exc:
            raise PersistenceFailure(f"Ledger write failed for {delivery.delivery_id}: {exc}") from exc

        if status == LedgerStatus.DUPLICATE:
            await self.bus.ack(delivery)
            return LedgerStatus.DUPLICATE.value

        try:
            command = translate(delivery, key)
        except (ContractError, ValidationError) as exc:
            log.warning("Malformed inbound message", error=str(exc))
            return await self._settle(delivery, key, LedgerOutcome.REJECTED)

        if command is None:
            log.info("Inbound topic not consumed")
            return await self._settle(delivery, key, LedgerOutcome.IGNORED)

        try:
            outcome = await self.dispatcher.dispatch(command)
        except (ValidationError, ObjectNotFoundError) as exc:
            log.warning("Inbound message rejected", error=str(exc))
            return await self._settle(delivery, key, LedgerOutcome.REJECTED)

        await self.bus.ack(delivery)
        log.info("Inbound message processed", outcome=outcome)
        return outcome

    async def _settle(self, delivery: Delivery, key: str, outcome: LedgerOutcome) -> str:
        self.store.settle(key, outcome)
        await self.bus.ack(delivery)
        return outcome.value

    async def run(self) -> None:
        async for delivery in self.bus.deliveries(self.config.consumed_topics):
            try:
                await self.handle(delivery)
            except PersistenceFailure as exc:
                logger.error(
                    "Inbound message left unacknowledged",
                    topic=delivery.topic,
                    delivery_id=delivery.delivery_id,
                    error=str(exc),
                )
            except ExternalCallFailure as exc:
                # The outcome is committed; a redelivery settles as a duplicate.
                logger.warning(
                    "Inbound message acknowledgement failed",
                    topic=delivery.topic,
                    delivery_id=delivery.delivery_id,
                    error=str(exc),
                )
