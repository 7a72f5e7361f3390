"""Plan aggregate — priced, versioned catalogue entries.

Plans are immutable once registered. Changing a price or trial creates a
new plan record with the next version number; subscriptions keep pointing
at the version they were sold.
"""

from datetime import UTC, datetime, timedelta
from enum import Enum

from dateutil.relativedelta import relativedelta
from protean.fields import DateTime, Integer, String

from billing.domain import billing
from billing.plan.events import PlanRegistered


class PlanTier(Enum):
    FREEMIUM = "freemium"
    STUDENT = "student"
    FAMILY = "family"
    SCHOOL = "school"


class BillingInterval(Enum):
    MONTH = "month"
    YEAR = "year"


_INTERVAL_DELTAS = {
    BillingInterval.MONTH: relativedelta(months=1),
    BillingInterval.YEAR: relativedelta(years=1),
}


@billing.aggregate
class Plan:
    name = String(required=True, max_length=100)
    tier = String(choices=PlanTier, required=True)
    product_line = String(required=True, max_length=50, default="learning")
    price = Integer(required=True, min_value=0)  # minor units
    currency = String(max_length=3, default="usd")
    interval = String(choices=BillingInterval, default=BillingInterval.MONTH.value)
    trial_days = Integer(default=0, min_value=0)
    version = Integer(default=1, min_value=1)
    registered_at = DateTime()

    @classmethod
    def register(
        cls,
        name: str,
        tier: str,
        price: int,
        currency: str = "usd",
        interval: str = BillingInterval.MONTH.value,
        trial_days: int = 0,
        product_line: str = "learning",
        plan_id: str | None = None,
        version: int = 1,
    ):
        now = datetime.now(UTC)
        attributes = {
            "name": name,
            "tier": tier,
            "product_line": product_line,
            "price": price,
            "currency": currency.lower(),
            "interval": interval,
            "trial_days": trial_days,
            "version": version,
            "registered_at": now,
        }
        if plan_id:
            attributes["id"] = plan_id

        plan = cls(**attributes)
        plan.raise_(
            PlanRegistered(
                plan_id=str(plan.id),
                name=name,
                tier=tier,
                product_line=product_line,
                price=price,
                currency=plan.currency,
                interval=interval,
                trial_days=trial_days,
                version=version,
                registered_at=now,
            )
        )
        return plan

    def revise(self, plan_id: str | None = None, **changes):
        """Return a new plan version carrying ``changes``; this record stays untouched."""
        attributes = {
            "name": self.name,
            "tier": self.tier,
            "price": self.price,
            "currency": self.currency,
            "interval": self.interval,
            "trial_days": self.trial_days,
            "product_line": self.product_line,
        }
        attributes.update(changes)
        return Plan.register(plan_id=plan_id, version=self.version + 1, **attributes)

    @property
    def has_trial(self) -> bool:
        return (self.trial_days or 0) > 0

    def trial_end(self, start: datetime) -> datetime:
        return start + timedelta(days=self.trial_days)

    def period_end(self, start: datetime) -> datetime:
        return start + _INTERVAL_DELTAS[BillingInterval(self.interval)]
