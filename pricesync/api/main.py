"""FastAPI trigger endpoints for the external scheduler."""

from __future__ import annotations

import hmac
import logging
import os
import time
from datetime import timedelta
from typing import Any, AsyncIterator

from fastapi import BackgroundTasks, Depends, FastAPI, Header, HTTPException, Query
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from pricesync.db.session import create_engine_from_env
from pricesync.errors import AuthenticationError, StoreUnavailableError
from pricesync.ingest import load_providers
from pricesync.ingest.ledger import SyncLedger
from pricesync.ingest.models import Tier
from pricesync.jobs.orchestrator import SyncOrchestrator
from pricesync.logic.aggregates import refresh_all
from pricesync.logic.retention import RETENTION_DAYS, purge_older_than
from pricesync.providers.base import ProviderAdapter
from pricesync.providers.registry import build_adapters

logger = logging.getLogger(__name__)

app = FastAPI(title="PriceSync Trigger API")


class TriggerResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: str = "completed"
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped_no_mapping: int = Field(0, alias="skippedNoMapping")
    deferred: int = 0
    duration_ms: int = Field(0, alias="durationMs")
    run_id: int | None = Field(None, alias="runId")
    rows_deleted: int | None = Field(None, alias="rowsDeleted")
    daily_medians: int | None = Field(None, alias="dailyMedians")
    portfolio_rows: int | None = Field(None, alias="portfolioRows")


class ReclassifyResponse(BaseModel):
    changed: int
    tiers: dict[str, int]


class SyncRunsResponse(BaseModel):
    runs: list[dict[str, Any]]
    failures: list[dict[str, Any]]


def get_engine() -> Engine:
    return create_engine_from_env()


async def get_adapters() -> AsyncIterator[dict[str, ProviderAdapter]]:
    adapters = build_adapters(load_providers())
    try:
        yield adapters
    finally:
        for adapter in adapters.values():
            await adapter.close()


def check_secret(provided: str | None, expected: str | None) -> None:
    if not expected:
        raise AuthenticationError("CRON_SECRET is not configured")
    if not provided or not hmac.compare_digest(provided.encode(), expected.encode()):
        raise AuthenticationError("Invalid or missing trigger credential")


def require_cron_secret(
    authorization: str | None = Header(None),
    x_cron_secret: str | None = Header(None),
) -> None:
    provided = x_cron_secret
    if authorization and authorization.lower().startswith("bearer "):
        provided = authorization[7:].strip()
    try:
        check_secret(provided, os.environ.get("CRON_SECRET"))
    except AuthenticationError as exc:
        logger.warning("Rejected trigger request: %s", exc)
        raise HTTPException(status_code=401, detail="Unauthorized") from exc


def _refresh_after_sync(engine: Engine) -> None:
    try:
        refresh_all(engine)
    except Exception:
        logger.exception("Post-sync view refresh failed; aggregates will catch up on schedule")


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/sync/{tier}", response_model=TriggerResult, dependencies=[Depends(require_cron_secret)])
async def sync(
    tier: Tier,
    background: BackgroundTasks,
    max_batch_size: int | None = Query(None, ge=1, le=1000),
    engine: Engine = Depends(get_engine),
    adapters: dict[str, ProviderAdapter] = Depends(get_adapters),
) -> TriggerResult:
    orchestrator = SyncOrchestrator(engine, adapters)
    try:
        result = await orchestrator.run_sync_batch(tier, max_batch_size)
    except StoreUnavailableError as exc:
        logger.error("Sync %s aborted: %s", tier.value, exc)
        raise HTTPException(status_code=503, detail="Snapshot store unavailable") from exc
    if result.status == "completed" and result.snapshots_written:
        background.add_task(_refresh_after_sync, engine)
    return TriggerResult(
        status=result.status,
        attempted=result.attempted,
        succeeded=result.succeeded,
        failed=result.failed,
        skipped_no_mapping=result.skipped_no_mapping,
        deferred=result.deferred,
        duration_ms=result.duration_ms,
        run_id=result.run_id,
    )


@app.post("/views/refresh", response_model=TriggerResult, dependencies=[Depends(require_cron_secret)])
async def refresh_views(engine: Engine = Depends(get_engine)) -> TriggerResult:
    try:
        result = await run_in_threadpool(refresh_all, engine)
    except SQLAlchemyError as exc:
        logger.error("View refresh failed: %s", exc)
        raise HTTPException(status_code=503, detail="Snapshot store unavailable") from exc
    return TriggerResult(
        duration_ms=result.duration_ms,
        daily_medians=result.daily_medians,
        portfolio_rows=result.portfolio_rows,
    )


@app.post("/retention/purge", response_model=TriggerResult, dependencies=[Depends(require_cron_secret)])
async def purge_retention(
    horizon_days: int = Query(RETENTION_DAYS, ge=1),
    engine: Engine = Depends(get_engine),
) -> TriggerResult:
    started = time.monotonic()
    try:
        deleted = await run_in_threadpool(purge_older_than, engine, timedelta(days=horizon_days))
    except SQLAlchemyError as exc:
        logger.error("Retention purge failed: %s", exc)
        raise HTTPException(status_code=503, detail="Snapshot store unavailable") from exc
    return TriggerResult(rows_deleted=deleted, duration_ms=int((time.monotonic() - started) * 1000))


@app.post("/tiers/reclassify", response_model=ReclassifyResponse, dependencies=[Depends(require_cron_secret)])
async def reclassify_tiers(engine: Engine = Depends(get_engine)) -> ReclassifyResponse:
    orchestrator = SyncOrchestrator(engine, {})
    try:
        summary = await orchestrator.reclassify_tiers()
    except StoreUnavailableError as exc:
        raise HTTPException(status_code=503, detail="Snapshot store unavailable") from exc
    return ReclassifyResponse(**summary)


@app.get("/sync/runs", response_model=SyncRunsResponse, dependencies=[Depends(require_cron_secret)])
async def sync_runs(
    tier: Tier | None = None,
    limit: int = Query(20, ge=1, le=200),
    engine: Engine = Depends(get_engine),
) -> SyncRunsResponse:
    ledger = SyncLedger(engine)
    try:
        runs = await run_in_threadpool(ledger.recent_runs, tier, limit)
        failures = await run_in_threadpool(ledger.failures_for, [run["id"] for run in runs])
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=503, detail="Snapshot store unavailable") from exc
    return SyncRunsResponse(runs=runs, failures=failures)
