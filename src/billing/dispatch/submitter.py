"""Post-commit charge and refund submission.

Runs inside the subscription's serialization unit right after a command
commits. Queued charges and refunds are handed to the processor and the
result is applied back as a command, so a failed or timed-out call is
recorded durably and retried by the sweep.
"""

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime

import structlog
from protean.domain import Domain
from protean.exceptions import ObjectNotFoundError
from protean.utils.globals import current_domain

from billing.config import BillingConfig
from billing.customer.customer import Customer
from billing.errors import ExternalCallFailure
from billing.gateway.port import PaymentGateway, PaymentMethodRef
from billing.invoice.invoice import ChargeState, Invoice
from billing.invoice.payment import RecordPaymentFailure
from billing.invoice.submission import RecordChargeSubmissionFailure, RecordChargeSubmitted
from billing.refund.refund import Refund, RefundStatus
from billing.refund.refunding import RecordRefundSubmissionFailure, RecordRefundSubmitted

logger = structlog.get_logger(__name__)

NO_PAYMENT_METHOD = "no_default_payment_method"


class ChargeSubmitter:
    def __init__(
        self,
        domain: Domain,
        gateway: PaymentGateway,
        config: BillingConfig,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.domain = domain
        self.gateway = gateway
        self.config = config
        self.clock = clock or (lambda: datetime.now(UTC))

    def _queued(self, subscription_id: str) -> tuple[list[Invoice], list[Refund], PaymentMethodRef | None]:
        with self.domain.domain_context():
            invoices = (
                current_domain.repository_for(Invoice)
                ._dao.query.filter(subscription_id=subscription_id, charge_state=ChargeState.QUEUED.value)
                .limit(None)
                .all()
                .items
            )
            refunds = (
                current_domain.repository_for(Refund)
                ._dao.query.filter(subscription_id=subscription_id, status=RefundStatus.QUEUED.value)
                .limit(None)
                .all()
                .items
            )
            method = None
            if invoices:
                try:
                    customer = current_domain.repository_for(Customer).get(invoices[0].customer_id)
                except ObjectNotFoundError:
                    customer = None
                if customer is not None and customer.can_be_charged:
                    method = PaymentMethodRef(customer.default_payment_method, customer.processor_customer_ref)
        return invoices, refunds, method

    async def run(self, subscription_id: str, apply: Callable, at: datetime | None = None) -> int:
        """Submit everything queued for ``subscription_id``; returns the number of calls made."""
        invoices, refunds, method = self._queued(subscription_id)
        calls = 0
        for invoice in sorted(invoices, key=lambda inv: inv.created_at or datetime.min.replace(tzinfo=UTC)):
            if method is None:
                logger.warning("No chargeable payment method", subscription_id=subscription_id, invoice_id=str(invoice.id))
                apply(
                    RecordPaymentFailure(
                        subscription_id=subscription_id,
                        invoice_id=str(invoice.id),
                        attempt_number=invoice.pending_attempt,
                        reason=NO_PAYMENT_METHOD,
                        occurred_at=at or self.clock(),
                    )
                )
                continue
            await self._charge(invoice, method, apply, at)
            calls += 1

        for refund in refunds:
            await self._refund(refund, apply, at)
            calls += 1
        return calls

    async def _charge(self, invoice: Invoice, method: PaymentMethodRef, apply: Callable, at: datetime | None) -> None:
        attempt_number = invoice.pending_attempt
        common = {
            "subscription_id": str(invoice.subscription_id),
            "invoice_id": str(invoice.id),
            "attempt_number": attempt_number,
        }
        try:
            charge_id = await asyncio.wait_for(
                self.gateway.submit_charge(
                    method,
                    invoice.amount,
                    invoice.currency,
                    idempotency_key=f"{invoice.id}:{attempt_number}",
                    metadata={name: str(value) for name, value in common.items()},
                ),
                timeout=self.config.external_call_timeout,
            )
        except (ExternalCallFailure, TimeoutError) as exc:
            reason = str(exc) or "timeout"
            logger.warning("Charge submission errored", reason=reason, **common)
            apply(RecordChargeSubmissionFailure(reason=reason, failed_at=at or self.clock(), **common))
            return

        logger.info("Charge submitted", charge_id=charge_id, amount=invoice.amount, **common)
        apply(RecordChargeSubmitted(charge_id=charge_id, submitted_at=at or self.clock(), **common))

    async def _refund(self, refund: Refund, apply: Callable, at: datetime | None) -> None:
        metadata = {
            "subscription_id": str(refund.subscription_id),
            "invoice_id": str(refund.invoice_id),
            "refund_id": str(refund.id),
        }
        try:
            processor_refund_id = await asyncio.wait_for(
                self.gateway.submit_refund(
                    refund.charge_id,
                    refund.amount,
                    idempotency_key=f"refund:{refund.id}",
                    metadata=metadata,
                ),
                timeout=self.config.external_call_timeout,
            )
        except (ExternalCallFailure, TimeoutError) as exc:
            reason = str(exc) or "timeout"
            logger.warning("Refund submission errored", reason=reason, **metadata)
            apply(
                RecordRefundSubmissionFailure(
                    subscription_id=str(refund.subscription_id),
                    refund_id=str(refund.id),
                    reason=reason,
                    failed_at=at or self.clock(),
                )
            )
            return

        apply(
            RecordRefundSubmitted(
                subscription_id=str(refund.subscription_id),
                refund_id=str(refund.id),
                processor_refund_id=processor_refund_id,
            )
        )
