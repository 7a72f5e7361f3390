"""Error taxonomy of the lifecycle engine.

- ``VerificationFailure``: bad webhook signature. Dropped, no state change.
- ``DuplicateEvent``: already applied. Acknowledged as a no-op.
- ``InvalidTransition``: valid event, inapplicable to the current state.
  Acknowledged and logged, never a system fault.
- ``ExternalCallFailure``: charge, refund or publish call errored or timed
  out. Retried with bounded backoff, then surfaced as durable state.
- ``PersistenceFailure``: the local commit failed. The inbound delivery is
  not acknowledged so the sender redelivers.
"""


class BillingError(Exception):
    """Base class for lifecycle engine errors."""


class VerificationFailure(BillingError):
    pass


class DuplicateEvent(BillingError):
    def __init__(self, ledger_key: str) -> None:
        super().__init__(f"Event {ledger_key} was already processed")
        self.ledger_key = ledger_key


class InvalidTransition(BillingError):
    def __init__(self, entity: str, current: str, attempted: str) -> None:
        super().__init__(f"{entity} cannot {attempted} while {current}")
        self.entity = entity
        self.current = current
        self.attempted = attempted


class ExternalCallFailure(BillingError):
    def __init__(self, operation: str, reason: str) -> None:
        super().__init__(f"{operation} failed: {reason}")
        self.operation = operation
        self.reason = reason


class PersistenceFailure(BillingError):
    pass
