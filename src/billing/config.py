"""Engine configuration.

``BillingConfig`` is an immutable value built once per process and handed to
every component at construction time. Command handlers are instantiated by
Protean, so the dispatcher binds its configuration around each command with
``use_config()`` and handlers read it back with ``current_config()``.
Protean's own framework settings live in ``domain.toml``.
"""

import os
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import timedelta

DEFAULT_RETRY_OFFSETS = (timedelta(days=1), timedelta(days=3), timedelta(days=7))


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value else default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value else default


def _env_days(name: str, default: tuple[timedelta, ...]) -> tuple[timedelta, ...]:
    """Parse a comma separated list of day offsets, e.g. ``"1,3,7"``."""
    value = os.getenv(name)
    if not value:
        return default
    return tuple(timedelta(days=float(part)) for part in value.split(",") if part.strip())


@dataclass(frozen=True)
class BillingConfig:
    """Settings shared by the lifecycle engine components."""

    webhook_secret: str = "whsec_test_secret"
    webhook_tolerance_seconds: int = 300
    processor_api_key: str | None = None
    redis_url: str | None = None
    consumer_group: str = "billing"

    # Dunning
    retry_offsets: tuple[timedelta, ...] = DEFAULT_RETRY_OFFSETS
    grace_period: timedelta = timedelta(days=7)

    # External calls (charge/refund submission and publication)
    external_call_timeout: float = 10.0
    max_charge_submissions: int = 5
    max_refund_submissions: int = 5
    publish_max_attempts: int = 10
    backoff_base: timedelta = timedelta(seconds=30)
    backoff_cap: timedelta = timedelta(hours=1)

    # Scheduler and worker pool
    sweep_interval: float = 60.0
    sweep_batch_size: int = 500
    worker_count: int = 8

    default_currency: str = "usd"
    consumed_topics: tuple[str, ...] = field(
        default=("users.user_created", "billing.plan_changed", "schools.school_registered")
    )

    def __post_init__(self) -> None:
        if not self.retry_offsets:
            raise ValueError("At least one dunning retry offset is required")
        if list(self.retry_offsets) != sorted(self.retry_offsets):
            raise ValueError("Dunning retry offsets must be in ascending order")
        if self.worker_count < 1:
            raise ValueError("worker_count must be at least 1")
        if self.max_charge_submissions < 1 or self.publish_max_attempts < 1:
            raise ValueError("Retry limits must be at least 1")

    def backoff(self, failures: int) -> timedelta:
        """Delay before the next try after ``failures`` consecutive failures."""
        exponent = max(failures - 1, 0)
        delay = self.backoff_base * (2**exponent)
        return min(delay, self.backoff_cap)

    @classmethod
    def from_env(cls) -> "BillingConfig":
        """Build a configuration from ``BILLING_*`` environment variables."""
        defaults = cls()
        return cls(
            webhook_secret=os.getenv("BILLING_WEBHOOK_SECRET", defaults.webhook_secret),
            webhook_tolerance_seconds=_env_int("BILLING_WEBHOOK_TOLERANCE", defaults.webhook_tolerance_seconds),
            processor_api_key=os.getenv("STRIPE_API_KEY"),
            redis_url=os.getenv("REDIS_URL"),
            consumer_group=os.getenv("BILLING_CONSUMER_GROUP", defaults.consumer_group),
            retry_offsets=_env_days("BILLING_RETRY_OFFSET_DAYS", defaults.retry_offsets),
            grace_period=timedelta(days=_env_float("BILLING_GRACE_DAYS", defaults.grace_period.days)),
            external_call_timeout=_env_float("BILLING_CALL_TIMEOUT", defaults.external_call_timeout),
            max_charge_submissions=_env_int("BILLING_MAX_CHARGE_SUBMISSIONS", defaults.max_charge_submissions),
            max_refund_submissions=_env_int("BILLING_MAX_REFUND_SUBMISSIONS", defaults.max_refund_submissions),
            publish_max_attempts=_env_int("BILLING_PUBLISH_MAX_ATTEMPTS", defaults.publish_max_attempts),
            backoff_base=timedelta(seconds=_env_float("BILLING_BACKOFF_BASE_SECONDS", 30.0)),
            backoff_cap=timedelta(seconds=_env_float("BILLING_BACKOFF_CAP_SECONDS", 3600.0)),
            sweep_interval=_env_float("BILLING_SWEEP_INTERVAL", defaults.sweep_interval),
            sweep_batch_size=_env_int("BILLING_SWEEP_BATCH_SIZE", defaults.sweep_batch_size),
            worker_count=_env_int("BILLING_WORKERS", defaults.worker_count),
            default_currency=os.getenv("BILLING_DEFAULT_CURRENCY", defaults.default_currency),
        )


_current_config: ContextVar[BillingConfig] = ContextVar("billing_config")


@contextmanager
def use_config(config: BillingConfig) -> Iterator[BillingConfig]:
    """Bind ``config`` for command handlers executed inside the block."""
    token = _current_config.set(config)
    try:
        yield config
    finally:
        _current_config.reset(token)


def current_config() -> BillingConfig:
    """Return the configuration bound by the dispatcher for the running command."""
    try:
        return _current_config.get()
    except LookupError:
        raise LookupError("No BillingConfig bound; wrap command processing in use_config()") from None
