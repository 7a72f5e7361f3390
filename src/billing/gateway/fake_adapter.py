"""Configurable fake payment processor for development and testing.

Simulates the processor without any external calls. Like the real one it
answers repeated idempotency keys with the original submission id. Charges
for a subscription can be held open to simulate a slow processor.
"""

import asyncio
from uuid import uuid4

from billing.errors import ExternalCallFailure
from billing.gateway.port import PaymentGateway, PaymentMethodRef


class FakeGateway(PaymentGateway):
    """Configurable fake payment gateway."""

    def __init__(self) -> None:
        self.should_succeed: bool = True
        self.failure_reason: str = "processor unavailable"
        self.calls: list[dict] = []
        self._submissions: dict[str, str] = {}
        self._holds: dict[str, asyncio.Event] = {}

    def configure(self, should_succeed: bool, failure_reason: str = "processor unavailable") -> None:
        """Configure gateway behavior at runtime."""
        self.should_succeed = should_succeed
        self.failure_reason = failure_reason

    def hold(self, subscription_id: str) -> asyncio.Event:
        """Block charge submissions for ``subscription_id`` until the returned event is set."""
        gate = asyncio.Event()
        self._holds[subscription_id] = gate
        return gate

    def charges(self) -> list[dict]:
        return [call for call in self.calls if call["method"] == "submit_charge"]

    def refunds(self) -> list[dict]:
        return [call for call in self.calls if call["method"] == "submit_refund"]

    async def submit_charge(
        self,
        payment_method: PaymentMethodRef,
        amount: int,
        currency: str,
        idempotency_key: str,
        metadata: dict[str, str],
    ) -> str:
        self.calls.append(
            {
                "method": "submit_charge",
                "payment_method": payment_method.payment_method,
                "amount": amount,
                "currency": currency,
                "idempotency_key": idempotency_key,
                "metadata": dict(metadata),
            }
        )
        gate = self._holds.get(metadata.get("subscription_id", ""))
        if gate is not None:
            await gate.wait()

        return self._submit("pi", idempotency_key)

    async def submit_refund(
        self,
        charge_id: str,
        amount: int,
        idempotency_key: str,
        metadata: dict[str, str],
    ) -> str:
        self.calls.append(
            {
                "method": "submit_refund",
                "charge_id": charge_id,
                "amount": amount,
                "idempotency_key": idempotency_key,
                "metadata": dict(metadata),
            }
        )
        return self._submit("re", idempotency_key)

    def _submit(self, prefix: str, idempotency_key: str) -> str:
        if not self.should_succeed:
            raise ExternalCallFailure(f"submit {prefix}", self.failure_reason)
        if idempotency_key not in self._submissions:
            self._submissions[idempotency_key] = f"{prefix}_fake_{uuid4().hex[:12]}"
        return self._submissions[idempotency_key]
