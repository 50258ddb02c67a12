"""Persisted sync run outcomes and the per-tier in-flight lock."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Iterable

from sqlalchemy import delete, insert, select, update
from sqlalchemy.engine import Engine

from pricesync.db.session import dialect_insert
from pricesync.db.tables import sync_failures, sync_locks, sync_runs
from pricesync.ingest.models import BatchResult, Tier
from pricesync.utils.dates import utcnow

logger = logging.getLogger(__name__)


class SyncLedger:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def acquire_lock(self, tier: Tier, holder: str, *, ttl: timedelta, now: datetime | None = None) -> bool:
        """Take the advisory lock for `tier`; False while another run holds it.

        Locks past their expiry belong to crashed runs and are reclaimed.
        """
        now = now or utcnow()
        with self.engine.begin() as conn:
            conn.execute(delete(sync_locks).where(sync_locks.c.tier == tier.value, sync_locks.c.expires_at < now))
            stmt = (
                dialect_insert(conn, sync_locks)
                .values(tier=tier.value, holder=holder, acquired_at=now, expires_at=now + ttl)
                .on_conflict_do_nothing(index_elements=["tier"])
            )
            acquired = conn.execute(stmt).rowcount == 1
        if not acquired:
            logger.info("Tier %s is already being synced", tier.value)
        return acquired

    def release_lock(self, tier: Tier, holder: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(delete(sync_locks).where(sync_locks.c.tier == tier.value, sync_locks.c.holder == holder))

    def start_run(self, tier: Tier, started_at: datetime) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                insert(sync_runs).values(tier=tier.value, status="running", started_at=started_at)
            )
            return int(result.inserted_primary_key[0])

    def finish_run(self, run_id: int, result: BatchResult, finished_at: datetime | None = None) -> None:
        failures: list[dict[str, Any]] = [
            {"run_id": run_id, "entry_id": outcome.entry_id, **failure}
            for outcome in result.outcomes
            for failure in outcome.failures
        ]
        with self.engine.begin() as conn:
            conn.execute(
                update(sync_runs)
                .where(sync_runs.c.id == run_id)
                .values(
                    status=result.status,
                    finished_at=finished_at or utcnow(),
                    attempted=result.attempted,
                    succeeded=result.succeeded,
                    failed=result.failed,
                    skipped_no_mapping=result.skipped_no_mapping,
                    deferred=result.deferred,
                    snapshots_written=result.snapshots_written,
                )
            )
            if failures:
                conn.execute(insert(sync_failures), failures)

    def recent_runs(self, tier: Tier | None = None, limit: int = 20) -> list[dict[str, Any]]:
        query = select(sync_runs).order_by(sync_runs.c.started_at.desc(), sync_runs.c.id.desc()).limit(limit)
        if tier is not None:
            query = query.where(sync_runs.c.tier == tier.value)
        with self.engine.connect() as conn:
            return [dict(row) for row in conn.execute(query).mappings()]

    def failures_for(self, run_ids: Iterable[int]) -> list[dict[str, Any]]:
        run_ids = list(run_ids)
        if not run_ids:
            return []
        query = select(sync_failures).where(sync_failures.c.run_id.in_(run_ids)).order_by(sync_failures.c.id)
        with self.engine.connect() as conn:
            return [dict(row) for row in conn.execute(query).mappings()]
