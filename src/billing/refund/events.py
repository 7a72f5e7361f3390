"""Domain events for the Refund aggregate."""

from protean.fields import DateTime, Identifier, Integer, String

from billing.domain import billing


@billing.event(part_of="Refund")
class RefundRequested:
    __version__ = 1

    refund_id = Identifier(required=True)
    invoice_id = Identifier(required=True)
    subscription_id = Identifier(required=True)
    amount = Integer(required=True)
    currency = String(required=True)
    reason = String()
    requested_at = DateTime(required=True)


@billing.event(part_of="Refund")
class RefundCompleted:
    __version__ = 1

    refund_id = Identifier(required=True)
    invoice_id = Identifier(required=True)
    amount = Integer(required=True)
    completed_at = DateTime(required=True)


@billing.event(part_of="Refund")
class RefundFailed:
    __version__ = 1

    refund_id = Identifier(required=True)
    invoice_id = Identifier(required=True)
    reason = String()
    failed_at = DateTime(required=True)
