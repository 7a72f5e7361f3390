"""Charge submission results — commands and handler.

The submitter reports the outcome of every ``SubmitCharge`` call through
these commands, inside the serialization unit of the subscription.
"""

from datetime import UTC, datetime

import structlog
from protean import handle
from protean.fields import DateTime, Identifier, Integer, String
from protean.utils.globals import current_domain

from billing.config import current_config
from billing.domain import billing
from billing.errors import InvalidTransition
from billing.invoice.collection import apply_payment_failure
from billing.invoice.invoice import Invoice
from billing.ledger.inbound_event import LedgerOutcome
from billing.ledger.store import applied, reject
from billing.subscription.lifecycle import load_subscription, save

logger = structlog.get_logger(__name__)


@billing.command(part_of="Invoice")
class RecordChargeSubmitted:
    subscription_id = Identifier(required=True)
    invoice_id = Identifier(required=True)
    attempt_number = Integer(required=True)
    charge_id = String(required=True, max_length=255)
    submitted_at = DateTime()


@billing.command(part_of="Invoice")
class RecordChargeSubmissionFailure:
    subscription_id = Identifier(required=True)
    invoice_id = Identifier(required=True)
    attempt_number = Integer(required=True)
    reason = String(max_length=500)
    failed_at = DateTime()


@billing.command_handler(part_of=Invoice)
class ChargeSubmissionHandler:
    @handle(RecordChargeSubmitted)
    def record_charge_submitted(self, command):
        at = command.submitted_at or datetime.now(UTC)
        subscription = load_subscription(command.subscription_id)
        invoice = current_domain.repository_for(Invoice).get(command.invoice_id)
        try:
            if not invoice.record_submission(command.attempt_number, command.charge_id, at):
                logger.info("Stale charge submission ignored", invoice_id=command.invoice_id)
                return LedgerOutcome.IGNORED.value
        except InvalidTransition as exc:
            return reject(None, exc, invoice_id=command.invoice_id)

        save(subscription, invoice)
        return applied(None)

    @handle(RecordChargeSubmissionFailure)
    def record_charge_submission_failure(self, command):
        at = command.failed_at or datetime.now(UTC)
        config = current_config()
        subscription = load_subscription(command.subscription_id)
        invoice = current_domain.repository_for(Invoice).get(command.invoice_id)
        if not invoice.is_pending(command.attempt_number):
            logger.info("Stale charge submission failure ignored", invoice_id=command.invoice_id)
            return LedgerOutcome.IGNORED.value

        retry_in = config.backoff((invoice.submission_failures or 0) + 1)
        exhausted = invoice.record_submission_failure(config.max_charge_submissions, retry_in, at)
        logger.warning(
            "Charge submission failed",
            invoice_id=command.invoice_id,
            attempt_number=command.attempt_number,
            failures=invoice.submission_failures,
            exhausted=exhausted,
            reason=command.reason,
        )
        if exhausted:
            try:
                apply_payment_failure(
                    subscription,
                    invoice,
                    command.attempt_number,
                    f"submission_failed: {command.reason or 'unknown'}",
                    config,
                    at,
                )
            except InvalidTransition as exc:
                return reject(None, exc, invoice_id=command.invoice_id)

        save(subscription, invoice)
        return applied(None)
