"""Payment gateway factory.

``build_gateway()`` picks the adapter from the engine configuration:
- FakeGateway for development and testing
- StripeGateway when a processor API key is configured
"""

from billing.config import BillingConfig
from billing.gateway.fake_adapter import FakeGateway
from billing.gateway.port import PaymentGateway, PaymentMethodRef
from billing.gateway.stripe_adapter import StripeGateway

__all__ = ["FakeGateway", "PaymentGateway", "PaymentMethodRef", "StripeGateway", "build_gateway"]


def build_gateway(config: BillingConfig) -> PaymentGateway:
    if config.processor_api_key:
        return StripeGateway(config.processor_api_key)
    return FakeGateway()
