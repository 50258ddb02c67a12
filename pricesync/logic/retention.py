"""Snapshot retention."""

from __future__ import annotations

import logging
import os
from datetime import datetime, timedelta

from sqlalchemy import DateTime, bindparam, text
from sqlalchemy.engine import Engine

from pricesync.utils.dates import utcnow

logger = logging.getLogger(__name__)

RETENTION_DAYS = int(os.environ.get("RETENTION_DAYS", 90))

# The newest row per (provider, variant, region) always survives, so
# "current price" lookups never come back empty.
PURGE_SQL = text(
    """
    DELETE FROM price_snapshots
    WHERE observed_at < :cutoff
      AND EXISTS (
        SELECT 1 FROM price_snapshots AS newer
        WHERE newer.provider = price_snapshots.provider
          AND newer.variant_id = price_snapshots.variant_id
          AND newer.region = price_snapshots.region
          AND newer.bucket_at > price_snapshots.bucket_at
      )
    """
).bindparams(bindparam("cutoff", type_=DateTime()))


def purge_older_than(engine: Engine, horizon: timedelta, *, now: datetime | None = None) -> int:
    if horizon <= timedelta(0):
        raise ValueError("retention horizon must be positive")
    cutoff = (now or utcnow()) - horizon
    with engine.begin() as conn:
        result = conn.execute(PURGE_SQL, {"cutoff": cutoff})
    deleted = max(result.rowcount or 0, 0)
    logger.info("Purged %s snapshots observed before %s", deleted, cutoff.isoformat())
    return deleted
