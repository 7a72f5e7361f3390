"""Repository for the Invoice aggregate."""

from billing.domain import billing
from billing.invoice.invoice import Invoice


@billing.repository(part_of=Invoice)
class InvoiceRepository:
    def for_subscription(self, subscription_id: str) -> list[Invoice]:
        """All invoices of a subscription, oldest first."""
        invoices = self._dao.query.filter(subscription_id=subscription_id).limit(None).all().items
        return sorted(invoices, key=lambda invoice: invoice.created_at)

    def outstanding_for(self, subscription_id: str) -> list[Invoice]:
        return [invoice for invoice in self.for_subscription(subscription_id) if invoice.is_outstanding]
