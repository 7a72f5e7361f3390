"""Headless runner for the billing engine.

Runs the worker pool, the scheduler and the inbound bus consumer without the
HTTP surface, e.g. as a separate process next to the API.

Usage:
    python src/server.py
    python src/server.py --sweep-interval 30 --workers 4
"""

import argparse
import asyncio
import dataclasses

from billing.config import BillingConfig
from billing.domain import billing
from billing.engine import BillingEngine


async def run(config: BillingConfig) -> None:
    billing.init()
    async with BillingEngine(billing, config):
        await asyncio.Event().wait()


def main():
    parser = argparse.ArgumentParser(description="Billing engine runner")
    parser.add_argument("--sweep-interval", type=float, help="Seconds between scheduler ticks")
    parser.add_argument("--workers", type=int, help="Size of the dispatcher worker pool")
    args = parser.parse_args()

    config = BillingConfig.from_env()
    overrides = {}
    if args.sweep_interval:
        overrides["sweep_interval"] = args.sweep_interval
    if args.workers:
        overrides["worker_count"] = args.workers
    config = dataclasses.replace(config, **overrides)

    try:
        asyncio.run(run(config))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
