"""Domain events for the Invoice aggregate."""

from protean.fields import DateTime, Identifier, Integer, String

from billing.domain import billing


@billing.event(part_of="Invoice")
class InvoiceCreated:
    """An invoice was issued for a subscription period or plan change."""

    __version__ = 1

    invoice_id = Identifier(required=True)
    subscription_id = Identifier(required=True)
    kind = String(required=True)
    amount = Integer(required=True)
    currency = String(required=True)
    created_at = DateTime(required=True)


@billing.event(part_of="Invoice")
class InvoiceOpened:
    """The first charge for the invoice reached the processor."""

    __version__ = 1

    invoice_id = Identifier(required=True)
    subscription_id = Identifier(required=True)
    attempt_number = Integer(required=True)
    opened_at = DateTime(required=True)


@billing.event(part_of="Invoice")
class InvoicePaid:
    __version__ = 1

    invoice_id = Identifier(required=True)
    subscription_id = Identifier(required=True)
    amount = Integer(required=True)
    attempt_number = Integer()
    paid_at = DateTime(required=True)


@billing.event(part_of="Invoice")
class InvoicePaymentFailed:
    __version__ = 1

    invoice_id = Identifier(required=True)
    subscription_id = Identifier(required=True)
    attempt_number = Integer(required=True)
    reason = String()
    next_retry_at = DateTime()
    failed_at = DateTime(required=True)


@billing.event(part_of="Invoice")
class InvoiceMarkedUncollectible:
    __version__ = 1

    invoice_id = Identifier(required=True)
    subscription_id = Identifier(required=True)
    marked_at = DateTime(required=True)


@billing.event(part_of="Invoice")
class InvoiceVoided:
    __version__ = 1

    invoice_id = Identifier(required=True)
    subscription_id = Identifier(required=True)
    voided_at = DateTime(required=True)
