"""Celery configuration for scheduled jobs."""

from __future__ import annotations

import os

from celery import Celery
from celery.schedules import crontab

from pricesync.utils.dates import timezone_name

broker_url = os.environ.get("REDIS_URL", "redis://redis:6379/0")
backend_url = os.environ.get("REDIS_URL", "redis://redis:6379/0")

celery_app = Celery("pricesync", broker=broker_url, backend=backend_url, include=["pricesync.jobs.market"])
celery_app.conf.timezone = timezone_name()
celery_app.conf.beat_schedule = {
    "sync-hot": {
        "task": "pricesync.jobs.market.sync_tier",
        "schedule": crontab(minute=5),
        "args": ("hot",),
    },
    "sync-warm": {
        "task": "pricesync.jobs.market.sync_tier",
        "schedule": crontab(minute=20, hour="*/6"),
        "args": ("warm",),
    },
    "sync-cold": {
        "task": "pricesync.jobs.market.sync_tier",
        "schedule": crontab(minute=40, hour=2),
        "args": ("cold",),
    },
    "refresh-views": {
        "task": "pricesync.jobs.market.refresh_views",
        "schedule": crontab(minute="*/30"),
    },
    "purge-retention": {
        "task": "pricesync.jobs.market.purge_retention",
        "schedule": crontab(minute=15, hour=int(os.environ.get("RETENTION_HOUR", "3"))),
    },
    "reclassify-tiers": {
        "task": "pricesync.jobs.market.reclassify_tiers",
        "schedule": crontab(minute=50, hour="*/6"),
    },
}


@celery_app.task(name="pricesync.jobs.market.sync_tier")
def sync_tier_task(tier: str, max_batch_size: int | None = None):  # pragma: no cover - executed by worker
    import asyncio

    from pricesync.jobs.market import run_sync

    result = asyncio.run(run_sync(tier, max_batch_size))
    return {
        "status": result.status,
        "attempted": result.attempted,
        "succeeded": result.succeeded,
        "failed": result.failed,
        "skippedNoMapping": result.skipped_no_mapping,
        "durationMs": result.duration_ms,
    }


@celery_app.task(name="pricesync.jobs.market.refresh_views")
def refresh_views_task():  # pragma: no cover - executed by worker
    import asyncio

    from pricesync.jobs.market import run_refresh

    result = asyncio.run(run_refresh())
    return {"dailyMedians": result.daily_medians, "portfolioRows": result.portfolio_rows}


@celery_app.task(name="pricesync.jobs.market.purge_retention")
def purge_retention_task(horizon_days: int | None = None):  # pragma: no cover - executed by worker
    import asyncio

    from pricesync.jobs.market import run_retention

    return {"rowsDeleted": asyncio.run(run_retention(horizon_days))}


@celery_app.task(name="pricesync.jobs.market.reclassify_tiers")
def reclassify_tiers_task():  # pragma: no cover - executed by worker
    import asyncio

    from pricesync.jobs.market import run_reclassify

    return asyncio.run(run_reclassify())
