"""Plan registration — command and handler."""

from protean import handle
from protean.fields import Identifier, Integer, String
from protean.utils.globals import current_domain

from billing.domain import billing
from billing.plan.plan import BillingInterval, Plan


@billing.command(part_of="Plan")
class RegisterPlan:
    """Add a plan version to the catalogue."""

    plan_id = Identifier()
    name = String(required=True, max_length=100)
    tier = String(required=True, max_length=20)
    product_line = String(max_length=50, default="learning")
    price = Integer(required=True, min_value=0)
    currency = String(max_length=3, default="usd")
    interval = String(max_length=10, default=BillingInterval.MONTH.value)
    trial_days = Integer(default=0)


@billing.command_handler(part_of=Plan)
class RegisterPlanHandler:
    @handle(RegisterPlan)
    def register_plan(self, command):
        plan = Plan.register(
            plan_id=command.plan_id,
            name=command.name,
            tier=command.tier,
            product_line=command.product_line or "learning",
            price=command.price,
            currency=command.currency or "usd",
            interval=command.interval or BillingInterval.MONTH.value,
            trial_days=command.trial_days or 0,
        )
        current_domain.repository_for(Plan).add(plan)
        return str(plan.id)
