"""Billing bounded context — subscription and payment lifecycle.

Owns subscriptions, invoices, dunning, refunds and the idempotency ledger
that reconciles payment processor webhooks with local billing state.
"""

from protean.domain import Domain

from billing.utils.logging import configure_logging, get_logger

configure_logging()

logger = get_logger(__name__)

billing = Domain(name="billing")
