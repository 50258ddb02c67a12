"""Daily median and portfolio valuation aggregates.

Both tables are derived only from `price_snapshots` (and `holdings`) and are
recomputed in full on every refresh, so they never drift from the snapshots
regardless of ingestion order.
"""

from __future__ import annotations

import logging
import os
import time
from collections import defaultdict
from dataclasses import asdict, dataclass
from datetime import date, timedelta
from typing import Iterable, Mapping, Sequence

import numpy as np
from sqlalchemy import delete, select
from sqlalchemy.engine import Connection, Engine

from pricesync.db.session import dialect_insert
from pricesync.db.tables import daily_median_prices, holdings, portfolio_valuations, price_snapshots
from pricesync.ingest.catalog import HELD_STATUSES
from pricesync.utils.dates import utcnow

logger = logging.getLogger(__name__)

PROVIDER_PREFERENCE = ("stockx", "alias", "ebay")
REGION_PREFERENCE = ("UK", "EU", "US")
VALUATION_WINDOW_DAYS = int(os.environ.get("VALUATION_WINDOW_DAYS", 30))


@dataclass(slots=True)
class DailyMedian:
    provider: str
    variant_id: int
    region: str
    currency: str
    day: date
    median_cents: int
    points: int


@dataclass(slots=True)
class PortfolioValuation:
    user_id: str
    day: date
    currency: str
    value_cents: int
    items: int


@dataclass(slots=True)
class RefreshResult:
    daily_medians: int
    portfolio_rows: int
    duration_ms: int


def reference_price(row: Mapping[str, object]) -> int | None:
    """Last sale, falling back to ask, then bid."""
    for name in ("last_sale_cents", "ask_cents", "bid_cents"):
        value = row.get(name)
        if value is not None:
            return int(value)
    return None


def compute_daily_medians(rows: Iterable[Mapping[str, object]]) -> list[DailyMedian]:
    groups: dict[tuple, list[int]] = defaultdict(list)
    for row in rows:
        price = reference_price(row)
        if price is None:
            continue
        key = (row["provider"], row["variant_id"], row["region"], row["currency"], row["observed_at"].date())
        groups[key].append(price)
    medians = [
        DailyMedian(
            provider=provider,
            variant_id=variant_id,
            region=region,
            currency=currency,
            day=day,
            median_cents=int(round(float(np.median(values)))),
            points=len(values),
        )
        for (provider, variant_id, region, currency, day), values in groups.items()
    ]
    medians.sort(key=lambda m: (m.day, m.variant_id, m.provider, m.region, m.currency))
    return medians


def _preference(median: DailyMedian) -> tuple[int, int, str]:
    provider_rank = (
        PROVIDER_PREFERENCE.index(median.provider) if median.provider in PROVIDER_PREFERENCE else len(PROVIDER_PREFERENCE)
    )
    region_rank = REGION_PREFERENCE.index(median.region) if median.region in REGION_PREFERENCE else len(REGION_PREFERENCE)
    return provider_rank, region_rank, median.currency


def compute_portfolio_valuations(
    medians: Sequence[DailyMedian],
    holding_rows: Iterable[Mapping[str, object]],
    *,
    as_of: date,
    window_days: int = VALUATION_WINDOW_DAYS,
) -> list[PortfolioValuation]:
    start = as_of - timedelta(days=window_days - 1)
    preferred: dict[tuple[int, date], DailyMedian] = {}
    for median in medians:
        if not start <= median.day <= as_of:
            continue
        key = (median.variant_id, median.day)
        current = preferred.get(key)
        if current is None or _preference(median) < _preference(current):
            preferred[key] = median

    by_variant: dict[int, list[DailyMedian]] = defaultdict(list)
    for (variant_id, _), median in preferred.items():
        by_variant[variant_id].append(median)

    totals: dict[tuple[str, date, str], list[int]] = defaultdict(lambda: [0, 0])
    for row in holding_rows:
        if row["status"] not in HELD_STATUSES:
            continue
        quantity = int(row["quantity"] or 0)
        for median in by_variant.get(row["variant_id"], []):
            total = totals[(row["user_id"], median.day, median.currency)]
            total[0] += median.median_cents * quantity
            total[1] += quantity
    return [
        PortfolioValuation(user_id=user_id, day=day, currency=currency, value_cents=value, items=items)
        for (user_id, day, currency), (value, items) in sorted(totals.items())
    ]


def refresh_all(engine: Engine, *, as_of: date | None = None, window_days: int | None = None) -> RefreshResult:
    """Rebuild both aggregate tables from the snapshot store.

    Reads and replaces within one transaction, so readers see either the
    previous or the new aggregates. Safe to run while ingestion writes.
    """
    started = time.monotonic()
    as_of = as_of or utcnow().date()
    window = window_days or VALUATION_WINDOW_DAYS
    with engine.begin() as conn:
        snapshot_rows = conn.execute(
            select(
                price_snapshots.c.provider,
                price_snapshots.c.variant_id,
                price_snapshots.c.region,
                price_snapshots.c.currency,
                price_snapshots.c.observed_at,
                price_snapshots.c.ask_cents,
                price_snapshots.c.bid_cents,
                price_snapshots.c.last_sale_cents,
            )
        ).mappings().all()
        holding_rows = conn.execute(
            select(holdings.c.user_id, holdings.c.variant_id, holdings.c.quantity, holdings.c.status)
        ).mappings().all()

        medians = compute_daily_medians(snapshot_rows)
        valuations = compute_portfolio_valuations(medians, holding_rows, as_of=as_of, window_days=window)

        _replace(conn, daily_median_prices, [asdict(m) for m in medians], ["provider", "variant_id", "region", "currency", "day"])
        _replace(conn, portfolio_valuations, [asdict(v) for v in valuations], ["user_id", "day", "currency"])

    duration_ms = int((time.monotonic() - started) * 1000)
    logger.info("Refreshed %s daily medians and %s portfolio rows", len(medians), len(valuations))
    return RefreshResult(daily_medians=len(medians), portfolio_rows=len(valuations), duration_ms=duration_ms)


def _replace(conn: Connection, table, rows: list[dict[str, object]], key_columns: list[str]) -> None:
    conn.execute(delete(table))
    if not rows:
        return
    stmt = dialect_insert(conn, table)
    value_columns = [column.name for column in table.columns if column.name not in key_columns]
    stmt = stmt.on_conflict_do_update(
        index_elements=key_columns,
        set_={name: stmt.excluded[name] for name in value_columns},
    )
    conn.execute(stmt, rows)
