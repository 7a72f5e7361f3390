"""OutboundMessage aggregate — transactional outbox.

Subscription events raised while a command is handled are staged here in the
same unit of work, one message per transition. The publisher delivers them
after commit and retries failures with bounded backoff until the message is
published or parked as ``dead``.
"""

import json
from datetime import UTC, datetime, timedelta
from enum import Enum

from protean.fields import DateTime, Identifier, Integer, String, Text
from protean.utils.globals import current_domain

from billing.domain import billing
from billing.subscription.events import (
    PaymentFailed,
    PaymentSucceeded,
    PlanChanged,
    RefundSucceeded,
    SubscriptionActivated,
    SubscriptionCanceled,
    SubscriptionCancelScheduled,
    SubscriptionCreated,
    SubscriptionExpired,
    SubscriptionGraceStarted,
    SubscriptionPastDue,
    SubscriptionRenewed,
)

TOPICS = {
    PaymentSucceeded: "payments.payment_succeeded",
    PaymentFailed: "payments.payment_failed",
    SubscriptionCanceled: "payments.subscription_canceled",
    SubscriptionExpired: "payments.subscription_canceled",
    SubscriptionCreated: "payments.subscription_created",
    SubscriptionActivated: "payments.subscription_activated",
    SubscriptionRenewed: "payments.subscription_renewed",
    SubscriptionPastDue: "payments.subscription_past_due",
    SubscriptionGraceStarted: "payments.subscription_grace_started",
    SubscriptionCancelScheduled: "payments.subscription_cancel_scheduled",
    PlanChanged: "payments.plan_changed",
    RefundSucceeded: "payments.refund_succeeded",
}


class MessageStatus(Enum):
    PENDING = "pending"
    PUBLISHED = "published"
    DEAD = "dead"


@billing.aggregate
class OutboundMessage:
    idempotency_key = String(identifier=True, max_length=100)
    subscription_id = Identifier(required=True)
    topic = String(required=True, max_length=100)
    payload = Text(required=True)  # JSON
    status = String(choices=MessageStatus, default=MessageStatus.PENDING.value)
    attempts = Integer(default=0)
    next_attempt_at = DateTime()
    last_error = String(max_length=1000)
    created_at = DateTime()
    published_at = DateTime()

    @classmethod
    def stage(cls, topic: str, idempotency_key: str, subscription_id: str, payload: dict, at: datetime | None = None):
        now = at or datetime.now(UTC)
        return cls(
            idempotency_key=idempotency_key,
            subscription_id=subscription_id,
            topic=topic,
            payload=json.dumps(payload, default=str, sort_keys=True),
            status=MessageStatus.PENDING.value,
            attempts=0,
            next_attempt_at=now,
            created_at=now,
        )

    @property
    def body(self) -> dict:
        return json.loads(self.payload)

    def mark_published(self, at: datetime | None = None) -> None:
        self.status = MessageStatus.PUBLISHED.value
        self.attempts += 1
        self.published_at = at or datetime.now(UTC)
        self.next_attempt_at = None
        self.last_error = None

    def mark_failed(self, error: str, retry_in: timedelta, max_attempts: int, at: datetime | None = None) -> None:
        now = at or datetime.now(UTC)
        self.attempts += 1
        self.last_error = error[:1000]
        if self.attempts >= max_attempts:
            self.status = MessageStatus.DEAD.value
            self.next_attempt_at = None
        else:
            self.next_attempt_at = now + retry_in

    def requeue(self, at: datetime | None = None) -> None:
        """Bring a dead message back into the retry cycle."""
        if self.status != MessageStatus.DEAD.value:
            return
        self.status = MessageStatus.PENDING.value
        self.attempts = 0
        self.next_attempt_at = at or datetime.now(UTC)


def _payload(event, topic: str, key: str) -> dict:
    payload = {name: value for name, value in event.to_dict().items() if not name.startswith("_")}
    payload["topic"] = topic
    payload["idempotency_key"] = key
    return payload


def stage_transitions(subscription) -> list[OutboundMessage]:
    """Stage one outbound message for every event ``subscription`` raised so far."""
    repo = current_domain.repository_for(OutboundMessage)
    staged = []
    for event in subscription._events:
        topic = TOPICS.get(type(event))
        if topic is None:
            continue
        key = f"{subscription.id}:{event.transition_seq}"
        message = OutboundMessage.stage(topic, key, str(subscription.id), _payload(event, topic, key), event.occurred_at)
        repo.add(message)
        staged.append(message)
    return staged


def messages_for(subscription_id: str) -> list[OutboundMessage]:
    repo = current_domain.repository_for(OutboundMessage)
    messages = repo._dao.query.filter(subscription_id=subscription_id).limit(None).all().items
    return sorted(messages, key=lambda message: int(message.idempotency_key.rsplit(":", 1)[1]))
