"""Sync tier classification."""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Protocol

from pricesync.ingest.models import Tier
from pricesync.utils.dates import utcnow

HOT_VIEW_HOURS = float(os.environ.get("TIER_HOT_VIEW_HOURS", 24))
WARM_VIEW_DAYS = float(os.environ.get("TIER_WARM_VIEW_DAYS", 30))


@dataclass(slots=True, frozen=True)
class TierSchedule:
    min_interval: timedelta
    batch_size: int


TIER_SCHEDULES = {
    Tier.HOT: TierSchedule(min_interval=timedelta(hours=1), batch_size=20),
    Tier.WARM: TierSchedule(min_interval=timedelta(hours=6), batch_size=50),
    Tier.COLD: TierSchedule(min_interval=timedelta(hours=24), batch_size=100),
}


@dataclass(slots=True)
class TierSignals:
    entry_id: int
    held: bool = False
    last_viewed_at: datetime | None = None
    last_synced_at: datetime | None = None


class TierPolicy(Protocol):
    def classify(self, signals: TierSignals, now: datetime) -> Tier: ...


@dataclass(slots=True)
class RecencyTierPolicy:
    """Held or recently viewed -> hot; some interest or never synced -> warm; else cold."""

    hot_view_window: timedelta = timedelta(hours=HOT_VIEW_HOURS)
    warm_view_window: timedelta = timedelta(days=WARM_VIEW_DAYS)

    def classify(self, signals: TierSignals, now: datetime) -> Tier:
        viewed_age = now - signals.last_viewed_at if signals.last_viewed_at else None
        if signals.held or (viewed_age is not None and viewed_age <= self.hot_view_window):
            return Tier.HOT
        if viewed_age is not None and viewed_age <= self.warm_view_window:
            return Tier.WARM
        if signals.last_synced_at is None:
            return Tier.WARM
        return Tier.COLD


class TierClassifier:
    def __init__(self, policy: TierPolicy | None = None) -> None:
        self.policy = policy or RecencyTierPolicy()

    def classify(self, signals: TierSignals, now: datetime | None = None) -> Tier:
        return self.policy.classify(signals, now or utcnow())

    def classify_all(self, signals: Iterable[TierSignals], now: datetime | None = None) -> dict[int, Tier]:
        now = now or utcnow()
        return {item.entry_id: self.policy.classify(item, now) for item in signals}
