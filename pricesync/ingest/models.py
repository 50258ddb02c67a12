"""Ingestion data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Mapping

from pricesync.errors import WriteConflictOrOrphan


class Tier(str, Enum):
    HOT = "hot"
    WARM = "warm"
    COLD = "cold"


@dataclass(slots=True)
class CatalogEntry:
    id: int
    catalog_key: str
    brand: str | None
    model: str | None
    sku: str | None
    tier: Tier
    staleness: datetime | None = None


@dataclass(slots=True)
class ProviderMapping:
    id: int
    entry_id: int
    provider: str
    external_id: str
    is_valid: bool = True
    last_synced_at: datetime | None = None


@dataclass(slots=True)
class MarketQuote:
    """A normalized observation keyed by size, before variant resolution."""

    provider: str
    size: str
    region: str
    currency: str
    observed_at: datetime
    ask_cents: int | None = None
    bid_cents: int | None = None
    last_sale_cents: int | None = None
    sales_last_72h: int | None = None
    sales_last_30d: int | None = None
    histogram: Mapping[str, int] | None = None


@dataclass(slots=True)
class PriceSnapshot:
    provider: str
    variant_id: int
    region: str
    currency: str
    observed_at: datetime
    ask_cents: int | None = None
    bid_cents: int | None = None
    last_sale_cents: int | None = None
    sales_last_72h: int | None = None
    sales_last_30d: int | None = None
    histogram: Mapping[str, int] | None = None

    @classmethod
    def from_quote(cls, quote: MarketQuote, variant_id: int) -> "PriceSnapshot":
        return cls(
            provider=quote.provider,
            variant_id=variant_id,
            region=quote.region,
            currency=quote.currency,
            observed_at=quote.observed_at,
            ask_cents=quote.ask_cents,
            bid_cents=quote.bid_cents,
            last_sale_cents=quote.last_sale_cents,
            sales_last_72h=quote.sales_last_72h,
            sales_last_30d=quote.sales_last_30d,
            histogram=quote.histogram,
        )


@dataclass(slots=True)
class WriteResult:
    written: int = 0
    rejected: list[WriteConflictOrOrphan] = field(default_factory=list)


@dataclass(slots=True)
class EntryOutcome:
    entry_id: int
    status: str  # succeeded | failed | skipped | deferred
    snapshots: int = 0
    failures: list[dict[str, Any]] = field(default_factory=list)


@dataclass(slots=True)
class BatchResult:
    tier: Tier
    status: str = "completed"
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped_no_mapping: int = 0
    deferred: int = 0
    snapshots_written: int = 0
    duration_ms: int = 0
    run_id: int | None = None
    outcomes: list[EntryOutcome] = field(default_factory=list)

    def record(self, outcome: EntryOutcome) -> None:
        self.outcomes.append(outcome)
        self.snapshots_written += outcome.snapshots
        if outcome.status == "skipped":
            self.skipped_no_mapping += 1
        elif outcome.status == "deferred":
            self.deferred += 1
        else:
            self.attempted += 1
            if outcome.status == "succeeded":
                self.succeeded += 1
            else:
                self.failed += 1


@dataclass(slots=True)
class ProviderConfig:
    key: str
    base_url: str
    regions: list[str]
    enabled: bool = True
    rate: float | None = 1.5
    burst: int = 1
    max_concurrent: int = 4
    max_wait: float | None = None
    timeout: float = 20.0
    credentials: Mapping[str, str] = field(default_factory=dict)
