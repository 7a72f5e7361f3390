"""Next-action computation for the scheduler sweep.

A subscription is picked up by a sweep once ``next_action_at`` has elapsed.
The value is recomputed every time a handler saves the subscription.
"""

from datetime import datetime

from billing.subscription.subscription import SubscriptionStatus


def renewal_pending(subscription, outstanding) -> bool:
    """True when an outstanding invoice already bills the period after the current one."""
    return any(
        invoice.period_start is not None and invoice.period_start >= subscription.current_period_end
        for invoice in outstanding
    )


def next_action_for(subscription, outstanding) -> datetime | None:
    if subscription.is_terminal:
        return None

    status = SubscriptionStatus(subscription.status)
    candidates = []
    if status == SubscriptionStatus.TRIALING:
        candidates.append(subscription.trial_end)
    elif subscription.cancel_at_period_end:
        candidates.append(subscription.current_period_end)
    elif status == SubscriptionStatus.ACTIVE and not renewal_pending(subscription, outstanding):
        candidates.append(subscription.current_period_end)

    if status == SubscriptionStatus.GRACE:
        candidates.append(subscription.grace_deadline)

    candidates.extend(invoice.next_action_at() for invoice in outstanding)
    candidates = [candidate for candidate in candidates if candidate is not None]
    return min(candidates) if candidates else None
