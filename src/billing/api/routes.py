"""FastAPI routes for billing — processor webhook and thin command API.

Commands are handed to the running ``BillingEngine`` (``app.state.engine``)
so they share the per-subscription serialization of webhook traffic.
"""

from fastapi import APIRouter, Header, HTTPException, Request
from protean.utils.globals import current_domain

from billing.api.schemas import (
    CancelSubscriptionRequest,
    ChangePlanRequest,
    CollectInvoiceRequest,
    CreateSubscriptionRequest,
    IdResponse,
    InvoiceResponse,
    OutboundMessageResponse,
    OutcomeResponse,
    ProvisionCustomerRequest,
    RegisterPlanRequest,
    RequestRefundRequest,
    SetPaymentMethodRequest,
    SubscriptionResponse,
)
from billing.customer.provisioning import ProvisionCustomer, SetDefaultPaymentMethod
from billing.errors import PersistenceFailure, VerificationFailure
from billing.invoice.invoice import Invoice
from billing.invoice.payment import CollectOpenInvoice
from billing.ledger.inbound_event import LedgerOutcome
from billing.plan.registration import RegisterPlan
from billing.refund.refunding import RequestRefund
from billing.subscription.cancellation import CancelSubscription
from billing.subscription.creation import CreateSubscription
from billing.subscription.plan_change import ChangePlan
from billing.subscription.subscription import Subscription


def _engine(request: Request):
    return request.app.state.engine


def _outcome(outcome: str) -> OutcomeResponse:
    if outcome == LedgerOutcome.REJECTED.value:
        raise HTTPException(status_code=409, detail="Command is not applicable in the current state")
    return OutcomeResponse(outcome=outcome)


# ---------------------------------------------------------------------------
# Processor webhook
# ---------------------------------------------------------------------------
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@webhook_router.post("/processor", response_model=OutcomeResponse)
async def processor_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None),
) -> OutcomeResponse:
    """Receive one processor event. Anything but 2xx makes the processor redeliver."""
    payload = await request.body()
    try:
        outcome = await _engine(request).ingest_webhook(payload, stripe_signature)
    except VerificationFailure as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except PersistenceFailure as exc:
        raise HTTPException(status_code=503, detail="Temporarily unable to record the event") from exc
    return OutcomeResponse(outcome=outcome)


# ---------------------------------------------------------------------------
# Customers and plans
# ---------------------------------------------------------------------------
customer_router = APIRouter(prefix="/customers", tags=["customers"])


@customer_router.post("", status_code=201, response_model=IdResponse)
async def provision_customer(body: ProvisionCustomerRequest, request: Request) -> IdResponse:
    command = ProvisionCustomer(**body.model_dump())
    customer_id = await _engine(request).dispatch(command)
    return IdResponse(id=customer_id)


@customer_router.put("/{customer_id}/payment-method", response_model=OutcomeResponse)
async def set_payment_method(customer_id: str, body: SetPaymentMethodRequest, request: Request) -> OutcomeResponse:
    command = SetDefaultPaymentMethod(customer_id=customer_id, **body.model_dump())
    await _engine(request).dispatch(command)
    return OutcomeResponse(outcome=LedgerOutcome.APPLIED.value)


plan_router = APIRouter(prefix="/plans", tags=["plans"])


@plan_router.post("", status_code=201, response_model=IdResponse)
async def register_plan(body: RegisterPlanRequest, request: Request) -> IdResponse:
    plan_id = await _engine(request).dispatch(RegisterPlan(**body.model_dump(exclude_none=True)))
    return IdResponse(id=plan_id)


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------
subscription_router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


@subscription_router.post("", status_code=201, response_model=IdResponse)
async def create_subscription(body: CreateSubscriptionRequest, request: Request) -> IdResponse:
    command = CreateSubscription(**body.model_dump(exclude_none=True))
    subscription_id = await _engine(request).dispatch(command)
    return IdResponse(id=subscription_id)


@subscription_router.get("/{subscription_id}", response_model=SubscriptionResponse)
async def get_subscription(subscription_id: str) -> SubscriptionResponse:
    subscription = current_domain.repository_for(Subscription).get(subscription_id)
    invoices = current_domain.repository_for(Invoice).for_subscription(subscription_id)
    return SubscriptionResponse(
        id=str(subscription.id),
        customer_id=str(subscription.customer_id),
        plan_id=str(subscription.plan_id),
        product_line=subscription.product_line,
        status=subscription.status,
        current_period_start=subscription.current_period_start,
        current_period_end=subscription.current_period_end,
        trial_end=subscription.trial_end,
        cancel_at_period_end=bool(subscription.cancel_at_period_end),
        grace_deadline=subscription.grace_deadline,
        credit_balance=subscription.credit_balance or 0,
        invoices=[
            InvoiceResponse(
                id=str(invoice.id),
                kind=invoice.kind,
                amount=invoice.amount,
                currency=invoice.currency,
                status=invoice.status,
                charge_state=invoice.charge_state,
                period_start=invoice.period_start,
                period_end=invoice.period_end,
                paid_at=invoice.paid_at,
                attempts=len(invoice.attempts),
            )
            for invoice in invoices
        ],
    )


@subscription_router.post("/{subscription_id}/cancel", response_model=OutcomeResponse)
async def cancel_subscription(
    subscription_id: str, body: CancelSubscriptionRequest, request: Request
) -> OutcomeResponse:
    command = CancelSubscription(subscription_id=subscription_id, mode=body.mode, reason=body.reason)
    return _outcome(await _engine(request).dispatch(command))


@subscription_router.post("/{subscription_id}/plan", response_model=OutcomeResponse)
async def change_plan(subscription_id: str, body: ChangePlanRequest, request: Request) -> OutcomeResponse:
    command = ChangePlan(subscription_id=subscription_id, new_plan_id=body.new_plan_id)
    return _outcome(await _engine(request).dispatch(command))


@subscription_router.post("/{subscription_id}/collect", response_model=OutcomeResponse)
async def collect_open_invoice(
    subscription_id: str, body: CollectInvoiceRequest, request: Request
) -> OutcomeResponse:
    command = CollectOpenInvoice(subscription_id=subscription_id, invoice_id=body.invoice_id)
    return _outcome(await _engine(request).dispatch(command))


@subscription_router.post("/{subscription_id}/refunds", status_code=201, response_model=IdResponse)
async def request_refund(subscription_id: str, body: RequestRefundRequest, request: Request) -> IdResponse:
    command = RequestRefund(subscription_id=subscription_id, **body.model_dump(exclude_none=True))
    refund_id = await _engine(request).dispatch(command)
    return IdResponse(id=refund_id)


# ---------------------------------------------------------------------------
# Outbound dead letters
# ---------------------------------------------------------------------------
outbound_router = APIRouter(prefix="/outbound", tags=["outbound"])


@outbound_router.post("/{idempotency_key}/requeue", response_model=OutboundMessageResponse)
async def requeue_message(idempotency_key: str, request: Request) -> OutboundMessageResponse:
    message = _engine(request).publisher.requeue_dead(idempotency_key)
    return OutboundMessageResponse(
        idempotency_key=message.idempotency_key,
        topic=message.topic,
        status=message.status,
        attempts=message.attempts,
    )


routers = [webhook_router, customer_router, plan_router, subscription_router, outbound_router]
