"""Idempotent snapshot persistence."""

from __future__ import annotations

import logging
import os
from typing import Any, Iterable

from sqlalchemy import select
from sqlalchemy.engine import Connection, Engine

from pricesync.db.session import dialect_insert
from pricesync.db.tables import price_snapshots, variants
from pricesync.errors import WriteConflictOrOrphan
from pricesync.ingest.models import PriceSnapshot, WriteResult
from pricesync.utils.dates import bucket_start, to_utc_naive, utcnow

logger = logging.getLogger(__name__)

KEY_COLUMNS = ("provider", "variant_id", "region", "bucket_at")
UPDATE_COLUMNS = (
    "observed_at",
    "currency",
    "ask_cents",
    "bid_cents",
    "last_sale_cents",
    "sales_last_72h",
    "sales_last_30d",
    "histogram",
    "ingested_at",
)


class SnapshotWriter:
    """Upserts snapshots keyed by (provider, variant, region, bucket).

    Re-writing a bucket overwrites it, so retried batches never duplicate
    rows. An older observation never replaces a fresher one in the same
    bucket. Rows pointing at unknown variants are logged and dropped.
    """

    def __init__(self, engine: Engine, *, bucket_minutes: int | None = None) -> None:
        self.engine = engine
        self.bucket_minutes = bucket_minutes or int(os.environ.get("SNAPSHOT_BUCKET_MINUTES", "60"))

    def write(self, snapshots: Iterable[PriceSnapshot]) -> WriteResult:
        result = WriteResult()
        rows = self._collapse(snapshots, result)
        if not rows:
            return result
        with self.engine.begin() as conn:
            known = self._known_variants(conn, {row["variant_id"] for row in rows})
            accepted = []
            for row in rows:
                if row["variant_id"] not in known:
                    self._reject(result, row, "unknown variant")
                    continue
                accepted.append(row)
            if accepted:
                stmt = dialect_insert(conn, price_snapshots)
                stmt = stmt.on_conflict_do_update(
                    index_elements=list(KEY_COLUMNS),
                    set_={name: stmt.excluded[name] for name in UPDATE_COLUMNS},
                    where=stmt.excluded.observed_at >= price_snapshots.c.observed_at,
                )
                conn.execute(stmt, accepted)
        result.written = len(accepted)
        logger.info("Wrote %s snapshots (%s rejected)", result.written, len(result.rejected))
        return result

    def _collapse(self, snapshots: Iterable[PriceSnapshot], result: WriteResult) -> list[dict[str, Any]]:
        ingested_at = utcnow()
        by_key: dict[tuple, dict[str, Any]] = {}
        for snapshot in snapshots:
            row = self._to_row(snapshot, ingested_at)
            if not row["region"] or not row["currency"]:
                self._reject(result, row, "missing region or currency")
                continue
            if row["ask_cents"] is None and row["bid_cents"] is None and row["last_sale_cents"] is None:
                self._reject(result, row, "no price fields")
                continue
            key = tuple(row[name] for name in KEY_COLUMNS)
            current = by_key.get(key)
            if current is None or row["observed_at"] >= current["observed_at"]:
                by_key[key] = row
        return list(by_key.values())

    def _to_row(self, snapshot: PriceSnapshot, ingested_at) -> dict[str, Any]:
        observed_at = to_utc_naive(snapshot.observed_at)
        return {
            "provider": snapshot.provider,
            "variant_id": snapshot.variant_id,
            "region": snapshot.region,
            "bucket_at": bucket_start(observed_at, self.bucket_minutes),
            "observed_at": observed_at,
            "currency": snapshot.currency,
            "ask_cents": snapshot.ask_cents,
            "bid_cents": snapshot.bid_cents,
            "last_sale_cents": snapshot.last_sale_cents,
            "sales_last_72h": snapshot.sales_last_72h,
            "sales_last_30d": snapshot.sales_last_30d,
            "histogram": dict(snapshot.histogram) if snapshot.histogram else None,
            "ingested_at": ingested_at,
        }

    @staticmethod
    def _known_variants(conn: Connection, ids: set[int]) -> set[int]:
        if not ids:
            return set()
        rows = conn.execute(select(variants.c.id).where(variants.c.id.in_(ids)))
        return {row[0] for row in rows}

    @staticmethod
    def _reject(result: WriteResult, row: dict[str, Any], reason: str) -> None:
        context = {name: row[name] for name in ("provider", "variant_id", "region")}
        context["reason"] = reason
        logger.warning("Dropping snapshot %s: %s", context, reason)
        result.rejected.append(WriteConflictOrOrphan(f"Rejected snapshot: {reason}", context))
