"""Scheduled market-data jobs."""

from __future__ import annotations

import argparse
import asyncio
import logging
from datetime import timedelta

from dotenv import load_dotenv

from pricesync.db.session import create_engine_from_env
from pricesync.ingest import load_providers
from pricesync.ingest.models import BatchResult, Tier
from pricesync.jobs.orchestrator import SyncOrchestrator
from pricesync.logic.aggregates import RefreshResult, refresh_all
from pricesync.logic.retention import RETENTION_DAYS, purge_older_than
from pricesync.providers.registry import build_adapters

logger = logging.getLogger(__name__)


async def run_sync(tier: Tier | str, max_batch_size: int | None = None, *, refresh_views: bool = True) -> BatchResult:
    load_dotenv()
    engine = create_engine_from_env()
    adapters = build_adapters(load_providers())
    orchestrator = SyncOrchestrator(engine, adapters)
    try:
        result = await orchestrator.run_sync_batch(tier, max_batch_size)
    finally:
        for adapter in adapters.values():
            await adapter.close()

    if refresh_views and result.status == "completed" and result.snapshots_written:
        try:
            await asyncio.get_running_loop().run_in_executor(None, refresh_all, engine)
        except Exception:
            logger.exception("View refresh after %s sync failed; aggregates will catch up", result.tier.value)
    return result


async def run_refresh() -> RefreshResult:
    load_dotenv()
    engine = create_engine_from_env()
    return await asyncio.get_running_loop().run_in_executor(None, refresh_all, engine)


async def run_retention(horizon_days: int | None = None) -> int:
    load_dotenv()
    engine = create_engine_from_env()
    horizon = timedelta(days=horizon_days or RETENTION_DAYS)
    return await asyncio.get_running_loop().run_in_executor(None, purge_older_than, engine, horizon)


async def run_reclassify() -> dict[str, object]:
    load_dotenv()
    engine = create_engine_from_env()
    orchestrator = SyncOrchestrator(engine, {})
    return await orchestrator.reclassify_tiers()


def main() -> None:
    parser = argparse.ArgumentParser(description="Run a market-data job once")
    parser.add_argument("job", choices=["sync", "refresh", "retention", "reclassify"])
    parser.add_argument("--tier", choices=[tier.value for tier in Tier], default=Tier.HOT.value)
    parser.add_argument("--batch-size", type=int, default=None)
    parser.add_argument("--horizon-days", type=int, default=None)
    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    if args.job == "sync":
        print(asyncio.run(run_sync(args.tier, args.batch_size)))
    elif args.job == "refresh":
        print(asyncio.run(run_refresh()))
    elif args.job == "retention":
        print(asyncio.run(run_retention(args.horizon_days)))
    else:
        print(asyncio.run(run_reclassify()))


if __name__ == "__main__":
    main()
