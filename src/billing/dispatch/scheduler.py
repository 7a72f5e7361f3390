"""Scheduler — periodic ``Tick`` production.

``ticks()`` is a lazy, infinite async sequence; iteration can be abandoned
and restarted at any time. Cancelling the scheduler task only stops tick
production, commands already submitted keep running.
"""

import asyncio
from collections.abc import AsyncIterator, Callable
from datetime import UTC, datetime

import structlog

from billing.config import BillingConfig
from billing.errors import BillingError
from billing.subscription.sweep import Tick

logger = structlog.get_logger(__name__)


async def ticks(interval: float, clock: Callable[[], datetime] | None = None) -> AsyncIterator[Tick]:
    clock = clock or (lambda: datetime.now(UTC))
    while True:
        yield Tick(as_of=clock())
        await asyncio.sleep(interval)


class Scheduler:
    def __init__(self, dispatcher, config: BillingConfig, clock: Callable[[], datetime] | None = None) -> None:
        self.dispatcher = dispatcher
        self.config = config
        self.clock = clock or (lambda: datetime.now(UTC))
        self._task: asyncio.Task | None = None

    async def run(self) -> None:
        async for tick in ticks(self.config.sweep_interval, self.clock):
            try:
                await self.dispatcher.dispatch(tick)
            except BillingError as exc:
                logger.error("Tick failed", as_of=tick.as_of.isoformat(), error=str(exc))

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name="billing-scheduler")
        return self._task

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
