"""Pydantic request/response schemas for the billing API.

These are external contracts, separate from the internal Protean commands.
"""

from datetime import datetime

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------
class ProvisionCustomerRequest(BaseModel):
    customer_id: str = Field(..., max_length=255)
    tenant_id: str | None = None
    tenant_type: str = "individual"
    email: str | None = Field(None, max_length=254)
    processor_customer_ref: str | None = None


class SetPaymentMethodRequest(BaseModel):
    payment_method: str = Field(..., max_length=255)
    processor_customer_ref: str | None = None


class RegisterPlanRequest(BaseModel):
    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "name": "Student Monthly",
                    "tier": "student",
                    "product_line": "learning",
                    "price": 999,
                    "currency": "usd",
                    "interval": "month",
                    "trial_days": 14,
                }
            ]
        }
    }

    plan_id: str | None = None
    name: str = Field(..., max_length=100)
    tier: str
    product_line: str = "learning"
    price: int = Field(..., ge=0)
    currency: str = Field("usd", max_length=3)
    interval: str = "month"
    trial_days: int = Field(0, ge=0)


class CreateSubscriptionRequest(BaseModel):
    customer_id: str
    plan_id: str
    subscription_id: str | None = None


class CancelSubscriptionRequest(BaseModel):
    mode: str = Field("immediate", pattern="^(immediate|at_period_end)$")
    reason: str | None = Field(None, max_length=255)


class ChangePlanRequest(BaseModel):
    new_plan_id: str


class CollectInvoiceRequest(BaseModel):
    invoice_id: str | None = None


class RequestRefundRequest(BaseModel):
    invoice_id: str
    amount: int | None = Field(None, gt=0)
    reason: str | None = Field(None, max_length=500)


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------
class IdResponse(BaseModel):
    id: str


class OutcomeResponse(BaseModel):
    outcome: str


class InvoiceResponse(BaseModel):
    id: str
    kind: str
    amount: int
    currency: str
    status: str
    charge_state: str
    period_start: datetime | None = None
    period_end: datetime | None = None
    paid_at: datetime | None = None
    attempts: int = 0


class SubscriptionResponse(BaseModel):
    id: str
    customer_id: str
    plan_id: str
    product_line: str
    status: str
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    trial_end: datetime | None = None
    cancel_at_period_end: bool = False
    grace_deadline: datetime | None = None
    credit_balance: int = 0
    invoices: list[InvoiceResponse] = Field(default_factory=list)


class OutboundMessageResponse(BaseModel):
    idempotency_key: str
    topic: str
    status: str
    attempts: int
