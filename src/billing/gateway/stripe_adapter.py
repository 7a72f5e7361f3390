"""Stripe payment processor adapter.

Charges are off-session PaymentIntents confirmed against the customer's
default payment method. The SDK is synchronous, so calls run in a worker
thread; the dispatcher bounds them with its own timeout.
"""

import asyncio

import stripe
import structlog

from billing.errors import ExternalCallFailure
from billing.gateway.port import PaymentGateway, PaymentMethodRef

logger = structlog.get_logger(__name__)


class StripeGateway(PaymentGateway):
    """Production Stripe gateway adapter."""

    def __init__(self, api_key: str) -> None:
        self.api_key = api_key

    async def submit_charge(
        self,
        payment_method: PaymentMethodRef,
        amount: int,
        currency: str,
        idempotency_key: str,
        metadata: dict[str, str],
    ) -> str:
        params = {
            "amount": amount,
            "currency": currency,
            "payment_method": payment_method.payment_method,
            "confirm": True,
            "off_session": True,
            "metadata": metadata,
        }
        if payment_method.customer_ref:
            params["customer"] = payment_method.customer_ref

        try:
            intent = await asyncio.to_thread(
                stripe.PaymentIntent.create,
                api_key=self.api_key,
                idempotency_key=idempotency_key,
                **params,
            )
        except stripe.CardError as exc:
            # A declined card still created the intent; the failure arrives as a webhook.
            intent = getattr(exc.error, "payment_intent", None)
            if intent:
                logger.info("Charge declined at submission", idempotency_key=idempotency_key, code=exc.code)
                return intent["id"]
            raise ExternalCallFailure("submit_charge", str(exc)) from exc
        except stripe.StripeError as exc:
            raise ExternalCallFailure("submit_charge", str(exc)) from exc
        return intent.id

    async def submit_refund(
        self,
        charge_id: str,
        amount: int,
        idempotency_key: str,
        metadata: dict[str, str],
    ) -> str:
        try:
            refund = await asyncio.to_thread(
                stripe.Refund.create,
                api_key=self.api_key,
                idempotency_key=idempotency_key,
                payment_intent=charge_id,
                amount=amount,
                metadata=metadata,
            )
        except stripe.StripeError as exc:
            raise ExternalCallFailure("submit_refund", str(exc)) from exc
        return refund.id
