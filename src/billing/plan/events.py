"""Domain events for the Plan aggregate."""

from protean.fields import DateTime, Identifier, Integer, String

from billing.domain import billing


@billing.event(part_of="Plan")
class PlanRegistered:
    """A plan version was added to the catalogue."""

    __version__ = 1

    plan_id = Identifier(required=True)
    name = String(required=True)
    tier = String(required=True)
    product_line = String(required=True)
    price = Integer(required=True)
    currency = String(required=True)
    interval = String(required=True)
    trial_days = Integer(required=True)
    version = Integer(required=True)
    registered_at = DateTime(required=True)
