"""Payment processor port (abstract interface).

Charge and refund submission is asynchronous on both ends: the call only
hands the request to the processor and returns its submission id; the
outcome arrives later as a webhook. Adapters raise ``ExternalCallFailure``
for any transport or processor error.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass(frozen=True)
class PaymentMethodRef:
    """Opaque processor references for the customer's default payment method."""

    payment_method: str
    customer_ref: str | None = None


class PaymentGateway(ABC):
    """Abstract payment processor interface."""

    @abstractmethod
    async def submit_charge(
        self,
        payment_method: PaymentMethodRef,
        amount: int,
        currency: str,
        idempotency_key: str,
        metadata: dict[str, str],
    ) -> str:
        """Request a charge; returns the processor's submission id."""
        ...

    @abstractmethod
    async def submit_refund(
        self,
        charge_id: str,
        amount: int,
        idempotency_key: str,
        metadata: dict[str, str],
    ) -> str:
        """Request a refund of a previous charge; returns the processor's refund id."""
        ...
