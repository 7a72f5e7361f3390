"""Event dispatcher — per-key serialization over a pool of asyncio workers.

Commands sharing a routing key are applied strictly in submission order by
one worker at a time; different keys proceed concurrently. After a command
commits, the worker performs that subscription's external calls (charge and
refund submission, then a first publish attempt) before it releases the key,
so results of those calls are applied inline in the same unit.
"""

import asyncio
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

import structlog
from protean.domain import Domain
from protean.exceptions import ObjectNotFoundError, ValidationError
from protean.utils.globals import current_domain

from billing.config import BillingConfig, use_config
from billing.dispatch.routing import BillingCommand, affected_subscription, effective_time, routing_key
from billing.dispatch.submitter import ChargeSubmitter
from billing.errors import BillingError, PersistenceFailure
from billing.outbound.publisher import OutboundPublisher
from billing.subscription.sweep import RunSubscriptionSweep, Tick
from billing.utils.logging import add_context, clear_context

logger = structlog.get_logger(__name__)


@dataclass
class TickResult:
    """Outcome of a tick: the subscriptions it fanned out to and their sweeps."""

    as_of: datetime
    subscription_ids: list[str]
    sweeps: list[asyncio.Future] = field(default_factory=list, repr=False)


class Dispatcher:
    def __init__(
        self,
        domain: Domain,
        config: BillingConfig,
        submitter: ChargeSubmitter,
        publisher: OutboundPublisher,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.domain = domain
        self.config = config
        self.submitter = submitter
        self.publisher = publisher
        self.clock = clock or (lambda: datetime.now(UTC))

        self._pending: dict[str, deque[tuple[BillingCommand, asyncio.Future]]] = {}
        self._ready: asyncio.Queue[str] | None = None
        self._workers: list[asyncio.Task] = []
        self._outstanding: set[asyncio.Future] = set()

    @property
    def running(self) -> bool:
        return bool(self._workers)

    async def start(self) -> None:
        if self._workers:
            return
        self._ready = asyncio.Queue()
        self._workers = [
            asyncio.create_task(self._worker(number), name=f"billing-worker-{number}")
            for number in range(self.config.worker_count)
        ]
        logger.info("Dispatcher started", workers=self.config.worker_count)

    async def stop(self) -> None:
        """Stop the workers; commands still queued are cancelled."""
        workers, self._workers = self._workers, []
        for worker in workers:
            worker.cancel()
        await asyncio.gather(*workers, return_exceptions=True)

        for queue in self._pending.values():
            for _, future in queue:
                future.cancel()
        self._pending.clear()
        self._outstanding.clear()
        logger.info("Dispatcher stopped")

    def submit(self, command: BillingCommand) -> asyncio.Future:
        """Queue ``command`` on its serialization unit and return a future for its result."""
        if not self._workers:
            raise RuntimeError("Dispatcher is not running")

        future = asyncio.get_running_loop().create_future()
        self._outstanding.add(future)
        future.add_done_callback(self._outstanding.discard)

        key = routing_key(command)
        if key in self._pending:
            self._pending[key].append((command, future))
        else:
            self._pending[key] = deque([(command, future)])
            self._ready.put_nowait(key)
        return future

    async def dispatch(self, command: BillingCommand):
        """Submit ``command`` and wait for its result (and, for ticks, for the fanned-out sweeps)."""
        result = await asyncio.shield(self.submit(command))
        if isinstance(result, TickResult) and result.sweeps:
            await asyncio.gather(*result.sweeps, return_exceptions=True)
        return result

    async def drain(self) -> None:
        """Wait until every submitted command has completed."""
        while self._outstanding:
            await asyncio.gather(*list(self._outstanding), return_exceptions=True)

    async def _worker(self, number: int) -> None:
        while True:
            key = await self._ready.get()
            command, future = self._pending[key].popleft()
            add_context(worker=number, routing_key=key)
            try:
                if not future.done():
                    result = await self._process(command)
                    if not future.done():
                        future.set_result(result)
            except asyncio.CancelledError:
                if not future.done():
                    future.cancel()
                raise
            except Exception as exc:
                if not future.done():
                    future.set_exception(exc)
            finally:
                clear_context()
                if self._pending.get(key):
                    self._ready.put_nowait(key)
                else:
                    self._pending.pop(key, None)

    async def _process(self, command: BillingCommand):
        log = logger.bind(command=command.__class__.__name__)
        result = self._apply(command)
        log.debug("Command applied", result=result if isinstance(result, str) else None)

        if isinstance(command, Tick):
            return await self._fan_out(command, result)

        subscription_id = affected_subscription(command, result)
        if subscription_id:
            await self.submitter.run(subscription_id, self._apply, effective_time(command))
            await self.publisher.publish_pending(subscription_id)
        return result

    async def _fan_out(self, tick: Tick, subscription_ids: list[str]) -> TickResult:
        sweeps = []
        for subscription_id in subscription_ids:
            sweep = self.submit(RunSubscriptionSweep(subscription_id=subscription_id, as_of=tick.as_of))
            sweep.add_done_callback(_log_sweep_failure)
            sweeps.append(sweep)
        await self.publisher.retry_due(tick.as_of)
        if subscription_ids:
            logger.info("Tick fanned out", as_of=tick.as_of.isoformat(), subscriptions=len(subscription_ids))
        return TickResult(as_of=tick.as_of, subscription_ids=list(subscription_ids), sweeps=sweeps)

    def _apply(self, command: BillingCommand):
        """Run the command handler in its own unit of work."""
        with self.domain.domain_context(), use_config(self.config):
            try:
                return current_domain.process(command, asynchronous=False)
            except (ValidationError, ObjectNotFoundError, BillingError):
                raise
            except Exception as exc:
                logger.exception("Command failed to commit", command=command.__class__.__name__)
                raise PersistenceFailure(f"{command.__class__.__name__} failed to commit: {exc}") from exc


def _log_sweep_failure(future: asyncio.Future) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.error("Subscription sweep failed", error=str(exc), error_type=exc.__class__.__name__)
