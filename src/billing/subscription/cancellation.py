"""Subscription cancellation — command and handler.

Immediate cancellation ends the subscription now and stops collection on its
open invoices. Deferred cancellation only sets a flag; the sweep completes it
when the current period (or trial) ends.
"""

from datetime import UTC, datetime

from protean import handle
from protean.exceptions import ObjectNotFoundError
from protean.fields import DateTime, Identifier, String

from billing.domain import billing
from billing.errors import InvalidTransition
from billing.ledger.store import applied, duplicate, is_settled, reject
from billing.subscription.lifecycle import close_outstanding, load_subscription, outstanding_invoices, save
from billing.subscription.subscription import CancelMode, Subscription


@billing.command(part_of="Subscription")
class CancelSubscription:
    subscription_id = Identifier(required=True)
    mode = String(choices=CancelMode, default=CancelMode.IMMEDIATE.value)
    reason = String(max_length=255)
    requested_at = DateTime()
    ledger_key = String(max_length=300)


@billing.command_handler(part_of=Subscription)
class CancelSubscriptionHandler:
    @handle(CancelSubscription)
    def cancel_subscription(self, command):
        if is_settled(command.ledger_key):
            return duplicate(command.ledger_key, subscription_id=command.subscription_id)

        at = command.requested_at or datetime.now(UTC)
        mode = CancelMode(command.mode or CancelMode.IMMEDIATE.value)
        try:
            subscription = load_subscription(command.subscription_id)
            subscription.cancel(mode, command.reason, at)
        except (InvalidTransition, ObjectNotFoundError) as exc:
            return reject(command.ledger_key, exc, subscription_id=command.subscription_id)

        invoices = []
        if mode == CancelMode.IMMEDIATE:
            invoices = outstanding_invoices(subscription)
            close_outstanding(subscription, invoices, at)

        save(subscription, *invoices)
        return applied(command.ledger_key)
