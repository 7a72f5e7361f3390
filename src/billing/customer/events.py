"""Domain events for the Customer and Tenant aggregates."""

from protean.fields import DateTime, Identifier, String

from billing.domain import billing


@billing.event(part_of="Customer")
class CustomerProvisioned:
    __version__ = 1

    customer_id = Identifier(required=True)
    tenant_id = Identifier()
    tenant_type = String(required=True)
    provisioned_at = DateTime(required=True)


@billing.event(part_of="Customer")
class PaymentMethodUpdated:
    __version__ = 1

    customer_id = Identifier(required=True)
    updated_at = DateTime(required=True)


@billing.event(part_of="Customer")
class CustomerDeactivated:
    __version__ = 1

    customer_id = Identifier(required=True)
    deactivated_at = DateTime(required=True)


@billing.event(part_of="Tenant")
class TenantProvisioned:
    __version__ = 1

    tenant_id = Identifier(required=True)
    tenant_type = String(required=True)
    display_name = String()
    provisioned_at = DateTime(required=True)
