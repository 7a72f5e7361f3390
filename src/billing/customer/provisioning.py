"""Customer and tenant provisioning — commands and handlers.

Provisioning commands arrive from the message bus and carry the ledger key of
their delivery, so a redelivered message settles as a duplicate.
"""

import structlog
from protean import handle
from protean.exceptions import ObjectNotFoundError
from protean.fields import Identifier, String
from protean.utils.globals import current_domain

from billing.customer.customer import Customer, Tenant, TenantType
from billing.domain import billing
from billing.ledger.inbound_event import LedgerOutcome
from billing.ledger.store import is_settled, settle

logger = structlog.get_logger(__name__)


@billing.command(part_of="Customer")
class ProvisionCustomer:
    customer_id = Identifier(required=True)
    tenant_id = Identifier()
    tenant_type = String(max_length=20, default=TenantType.INDIVIDUAL.value)
    email = String(max_length=254)
    processor_customer_ref = String(max_length=255)
    ledger_key = String(max_length=300)


@billing.command(part_of="Customer")
class SetDefaultPaymentMethod:
    customer_id = Identifier(required=True)
    payment_method = String(required=True, max_length=255)
    processor_customer_ref = String(max_length=255)


@billing.command(part_of="Customer")
class DeactivateCustomer:
    customer_id = Identifier(required=True)


@billing.command(part_of="Tenant")
class ProvisionTenant:
    tenant_id = Identifier(required=True)
    tenant_type = String(max_length=20, default=TenantType.SCHOOL.value)
    display_name = String(max_length=255)
    ledger_key = String(max_length=300)


@billing.command_handler(part_of=Customer)
class CustomerCommandHandler:
    @handle(ProvisionCustomer)
    def provision_customer(self, command):
        if is_settled(command.ledger_key):
            return None

        repo = current_domain.repository_for(Customer)
        try:
            repo.get(command.customer_id)
        except ObjectNotFoundError:
            customer = Customer.provision(
                customer_id=command.customer_id,
                tenant_type=command.tenant_type or TenantType.INDIVIDUAL.value,
                tenant_id=command.tenant_id,
                email=command.email,
                processor_customer_ref=command.processor_customer_ref,
            )
            repo.add(customer)
            settle(command.ledger_key, LedgerOutcome.APPLIED)
            logger.info("Customer provisioned", customer_id=command.customer_id)
            return command.customer_id

        logger.info("Customer already provisioned", customer_id=command.customer_id)
        settle(command.ledger_key, LedgerOutcome.IGNORED)
        return command.customer_id

    @handle(SetDefaultPaymentMethod)
    def set_default_payment_method(self, command):
        repo = current_domain.repository_for(Customer)
        customer = repo.get(command.customer_id)
        customer.set_payment_method(command.payment_method, command.processor_customer_ref)
        repo.add(customer)

    @handle(DeactivateCustomer)
    def deactivate_customer(self, command):
        repo = current_domain.repository_for(Customer)
        customer = repo.get(command.customer_id)
        customer.deactivate()
        repo.add(customer)


@billing.command_handler(part_of=Tenant)
class TenantCommandHandler:
    @handle(ProvisionTenant)
    def provision_tenant(self, command):
        if is_settled(command.ledger_key):
            return None

        repo = current_domain.repository_for(Tenant)
        try:
            repo.get(command.tenant_id)
            outcome = LedgerOutcome.IGNORED
        except ObjectNotFoundError:
            repo.add(
                Tenant.provision(
                    tenant_id=command.tenant_id,
                    tenant_type=command.tenant_type or TenantType.SCHOOL.value,
                    display_name=command.display_name,
                )
            )
            outcome = LedgerOutcome.APPLIED
            logger.info("Tenant provisioned", tenant_id=command.tenant_id)

        settle(command.ledger_key, outcome)
        return command.tenant_id
