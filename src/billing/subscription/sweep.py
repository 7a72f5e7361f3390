"""Scheduled sweep — commands and handler.

A ``Tick`` selects the subscriptions whose next action time has elapsed. The
dispatcher then runs one ``RunSubscriptionSweep`` per subscription in its
serialization unit. A sweep performs, in order: trial end, deferred
cancellation, period-end renewal, charge resubmission after backoff, due
dunning retries and grace expiry. Refunds waiting out a submission backoff
are re-queued as well, also for subscriptions that already ended.
"""

from datetime import datetime

import structlog
from protean import handle
from protean.exceptions import ObjectNotFoundError
from protean.fields import DateTime, Identifier
from protean.utils.globals import current_domain

from billing.config import current_config
from billing.domain import billing
from billing.errors import InvalidTransition
from billing.invoice.invoice import InvoiceKind
from billing.ledger.inbound_event import LedgerOutcome
from billing.ledger.store import applied, reject
from billing.refund.refund import Refund, RefundStatus
from billing.refund.refunding import pending_refunds
from billing.subscription.lifecycle import (
    close_outstanding,
    issue_invoice,
    load_plan,
    load_subscription,
    outstanding_invoices,
    save,
    settle_if_free,
)
from billing.subscription.scheduling import renewal_pending
from billing.subscription.subscription import LIVE_STATUSES, Subscription, SubscriptionStatus

logger = structlog.get_logger(__name__)


@billing.command(part_of="Subscription")
class Tick:
    as_of = DateTime(required=True)


@billing.command(part_of="Subscription")
class RunSubscriptionSweep:
    subscription_id = Identifier(required=True)
    as_of = DateTime(required=True)


def _start_paid_period(subscription, at: datetime) -> list:
    plan = load_plan(subscription.plan_id)
    subscription.activate(plan, at)
    invoice, _, created = issue_invoice(
        subscription,
        InvoiceKind.INITIAL,
        plan.price,
        subscription.current_period_start.isoformat(),
        at,
        subscription.current_period_start,
        subscription.current_period_end,
    )
    if created:
        settle_if_free(subscription, invoice, at)
    return [invoice]


def _renew(subscription, at: datetime) -> list:
    plan = load_plan(subscription.plan_id)
    period_start = subscription.current_period_end
    period_end = plan.period_end(period_start)
    invoice, credit, created = issue_invoice(
        subscription,
        InvoiceKind.RENEWAL,
        plan.price,
        period_start.isoformat(),
        at,
        period_start,
        period_end,
    )
    if created:
        subscription.begin_renewal(invoice, credit, at)
        settle_if_free(subscription, invoice, at)
    return [invoice]


def _resume_refunds(subscription, at: datetime) -> list:
    repo = current_domain.repository_for(Refund)
    resumed = []
    for refund in pending_refunds(str(subscription.id)):
        if refund.resume_submission(at):
            repo.add(refund)
            resumed.append(refund)
    return resumed


@billing.command_handler(part_of=Subscription)
class SweepHandler:
    @handle(Tick)
    def due_subscriptions(self, command):
        """Ids of live subscriptions with an elapsed next action, oldest first."""
        batch = current_config().sweep_batch_size
        # Ascending order puts due rows first and unset times last, so one page holds every due row.
        live = (
            current_domain.repository_for(Subscription)
            ._dao.query.filter(status__in=LIVE_STATUSES)
            .order_by("next_action_at")
            .limit(batch)
            .all()
            .items
        )
        ids = [str(sub.id) for sub in live if sub.next_action_at is not None and sub.next_action_at <= command.as_of]

        waiting = (
            current_domain.repository_for(Refund)
            ._dao.query.filter(status=RefundStatus.RETRY_WAIT.value)
            .order_by("next_submission_at")
            .limit(batch)
            .all()
            .items
        )
        for refund in waiting:
            if refund.next_submission_at and refund.next_submission_at <= command.as_of:
                ids.append(str(refund.subscription_id))

        return list(dict.fromkeys(ids))[:batch]

    @handle(RunSubscriptionSweep)
    def run_sweep(self, command):
        at = command.as_of
        try:
            subscription = load_subscription(command.subscription_id)
        except ObjectNotFoundError:
            return LedgerOutcome.IGNORED.value
        refunds = _resume_refunds(subscription, at)
        if subscription.is_terminal:
            return applied(None) if refunds else LedgerOutcome.IGNORED.value

        invoices = outstanding_invoices(subscription)
        try:
            status = SubscriptionStatus(subscription.status)
            if status == SubscriptionStatus.TRIALING and subscription.trial_end <= at:
                if subscription.cancel_at_period_end:
                    subscription.complete_scheduled_cancellation(at)
                else:
                    invoices += _start_paid_period(subscription, at)
            elif subscription.cancel_at_period_end and subscription.current_period_end <= at:
                subscription.complete_scheduled_cancellation(at)
                close_outstanding(subscription, invoices, at)
            elif (
                status == SubscriptionStatus.ACTIVE
                and subscription.current_period_end <= at
                and not renewal_pending(subscription, invoices)
            ):
                invoices += _renew(subscription, at)

            if not subscription.is_terminal:
                for invoice in invoices:
                    if not invoice.is_outstanding:
                        continue
                    if invoice.resume_submission(at):
                        logger.info("Charge resubmission queued", invoice_id=str(invoice.id))
                    retry = invoice.due_retry(at)
                    if retry is not None:
                        attempt_number = invoice.submit_retry(retry, at)
                        logger.info(
                            "Dunning retry queued",
                            invoice_id=str(invoice.id),
                            retry_number=retry.retry_number,
                            attempt_number=attempt_number,
                        )

                if (
                    SubscriptionStatus(subscription.status) == SubscriptionStatus.GRACE
                    and subscription.grace_deadline is not None
                    and subscription.grace_deadline <= at
                ):
                    lapsed = next((invoice for invoice in invoices if invoice.in_dunning), None)
                    subscription.expire(str(lapsed.id) if lapsed else None, at)
                    close_outstanding(subscription, invoices, at)
        except InvalidTransition as exc:
            return reject(None, exc, subscription_id=command.subscription_id)

        save(subscription, *invoices)
        return applied(None)
