"""Customer and Tenant aggregates — billing identities.

Customers are provisioned from ``users.user_created`` deliveries and tenants
(school billing contexts) from ``schools.school_registered``. Neither is ever
deleted; deactivation keeps the record for existing invoices.
"""

from datetime import UTC, datetime
from enum import Enum

from protean.exceptions import ValidationError
from protean.fields import Boolean, DateTime, Identifier, String

from billing.customer.events import (
    CustomerDeactivated,
    CustomerProvisioned,
    PaymentMethodUpdated,
    TenantProvisioned,
)
from billing.domain import billing


class TenantType(Enum):
    INDIVIDUAL = "individual"
    FAMILY = "family"
    SCHOOL = "school"


@billing.aggregate
class Customer:
    tenant_id = Identifier()
    tenant_type = String(choices=TenantType, default=TenantType.INDIVIDUAL.value)
    email = String(max_length=254)
    processor_customer_ref = String(max_length=255)
    default_payment_method = String(max_length=255)  # opaque processor token
    active = Boolean(default=True)
    created_at = DateTime()
    updated_at = DateTime()

    @classmethod
    def provision(
        cls,
        customer_id: str,
        tenant_type: str = TenantType.INDIVIDUAL.value,
        tenant_id: str | None = None,
        email: str | None = None,
        processor_customer_ref: str | None = None,
    ):
        now = datetime.now(UTC)
        customer = cls(
            id=customer_id,
            tenant_id=tenant_id,
            tenant_type=tenant_type,
            email=email,
            processor_customer_ref=processor_customer_ref,
            active=True,
            created_at=now,
            updated_at=now,
        )
        customer.raise_(
            CustomerProvisioned(
                customer_id=customer_id,
                tenant_id=tenant_id,
                tenant_type=tenant_type,
                provisioned_at=now,
            )
        )
        return customer

    @property
    def can_be_charged(self) -> bool:
        return bool(self.active and self.default_payment_method)

    def set_payment_method(self, payment_method: str, processor_customer_ref: str | None = None) -> None:
        if not self.active:
            raise ValidationError({"customer": ["Cannot update the payment method of an inactive customer"]})
        now = datetime.now(UTC)
        self.default_payment_method = payment_method
        if processor_customer_ref:
            self.processor_customer_ref = processor_customer_ref
        self.updated_at = now
        self.raise_(PaymentMethodUpdated(customer_id=str(self.id), updated_at=now))

    def deactivate(self) -> None:
        if not self.active:
            return
        now = datetime.now(UTC)
        self.active = False
        self.updated_at = now
        self.raise_(CustomerDeactivated(customer_id=str(self.id), deactivated_at=now))


@billing.aggregate
class Tenant:
    tenant_type = String(choices=TenantType, default=TenantType.SCHOOL.value)
    display_name = String(max_length=255)
    active = Boolean(default=True)
    created_at = DateTime()

    @classmethod
    def provision(cls, tenant_id: str, tenant_type: str, display_name: str | None = None):
        now = datetime.now(UTC)
        tenant = cls(
            id=tenant_id,
            tenant_type=tenant_type,
            display_name=display_name,
            active=True,
            created_at=now,
        )
        tenant.raise_(
            TenantProvisioned(
                tenant_id=tenant_id,
                tenant_type=tenant_type,
                display_name=display_name,
                provisioned_at=now,
            )
        )
        return tenant
