"""Shared test helpers."""

import asyncio
from datetime import datetime, timedelta

from sqlalchemy import select

from pricesync.db.tables import provider_mappings, variants
from pricesync.errors import TransientProviderError
from pricesync.ingest.models import MarketQuote
from pricesync.utils.dates import utcnow


def variant_id_for(engine, entry_id: int, size: str) -> int:
    with engine.connect() as conn:
        return conn.execute(
            select(variants.c.id).where(variants.c.entry_id == entry_id, variants.c.size == size)
        ).scalar_one()


def mapping_row(engine, entry_id: int, provider: str = "stockx"):
    with engine.connect() as conn:
        return conn.execute(
            select(provider_mappings).where(
                provider_mappings.c.entry_id == entry_id, provider_mappings.c.provider == provider
            )
        ).mappings().one()


class FakeAdapter:
    """Stands in for a provider adapter; scripted errors are raised before quotes are returned."""

    def __init__(self, key: str = "stockx", *, sizes=("9", "10"), errors=None, delay: float = 0.0) -> None:
        self.key = key
        self.sizes = list(sizes)
        self.errors = {external_id: list(items) for external_id, items in (errors or {}).items()}
        self.delay = delay
        self.calls: list[str] = []
        self.active = 0
        self.peak = 0

    async def fetch_quotes(self, external_id, regions=None, *, timeout=None):
        self.calls.append(external_id)
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            if self.delay:
                try:
                    await asyncio.wait_for(asyncio.sleep(self.delay), timeout=timeout)
                except asyncio.TimeoutError as exc:
                    raise TransientProviderError(
                        f"{self.key} timed out for {external_id}", provider=self.key, external_id=external_id
                    ) from exc
            pending = self.errors.get(external_id)
            if pending:
                raise pending.pop(0)
            observed_at = utcnow()
            return [
                MarketQuote(
                    provider=self.key,
                    size=size,
                    region="UK",
                    currency="GBP",
                    observed_at=observed_at,
                    ask_cents=12000,
                    bid_cents=10000,
                    last_sale_cents=11000,
                )
                for size in self.sizes
            ]
        finally:
            self.active -= 1

    async def close(self):
        return None


def hours_ago(hours: float) -> datetime:
    return utcnow() - timedelta(hours=hours)
