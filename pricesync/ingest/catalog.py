"""Catalog access for the sync jobs: batch selection and mapping bookkeeping."""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Iterable, Mapping

from sqlalchemy import DateTime, and_, case, exists, func, null, or_, select, type_coerce, update
from sqlalchemy.engine import Engine

from pricesync.db.tables import catalog_entries, holdings, provider_mappings, variants
from pricesync.ingest.models import CatalogEntry, ProviderMapping, Tier
from pricesync.utils.dates import utcnow

logger = logging.getLogger(__name__)

HELD_STATUSES = ("active", "listed")


class CatalogStore:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def select_batch(
        self,
        tier: Tier,
        limit: int,
        *,
        providers: Iterable[str],
        min_interval: timedelta | None = None,
        now: datetime | None = None,
    ) -> list[CatalogEntry]:
        """Entries of `tier` that are due, stalest first.

        Staleness is the oldest ``last_synced_at`` over the entry's valid
        mappings for `providers`; an entry with any never-synced mapping
        sorts first. Entries without a valid mapping fall back to
        ``last_skipped_at`` so they rotate instead of starving the batch.
        """
        providers = list(providers)
        m = provider_mappings
        valid = and_(
            m.c.entry_id == catalog_entries.c.id,
            m.c.is_valid.is_(True),
            m.c.provider.in_(providers),
        )
        oldest_sync = select(func.min(m.c.last_synced_at)).where(valid).scalar_subquery()
        never_synced = exists().where(valid, m.c.last_synced_at.is_(None))
        has_mapping = exists().where(valid)
        staleness = type_coerce(
            case(
                (never_synced, null()),
                (has_mapping, oldest_sync),
                else_=catalog_entries.c.last_skipped_at,
            ),
            DateTime,
        ).label("staleness")

        query = select(
            catalog_entries.c.id,
            catalog_entries.c.catalog_key,
            catalog_entries.c.brand,
            catalog_entries.c.model,
            catalog_entries.c.sku,
            catalog_entries.c.tier,
            staleness,
        ).where(catalog_entries.c.tier == tier.value)
        if min_interval is not None:
            cutoff = (now or utcnow()) - min_interval
            query = query.where(or_(staleness.is_(None), staleness < cutoff))
        query = query.order_by(staleness.is_not(None), staleness, catalog_entries.c.id).limit(limit)

        with self.engine.connect() as conn:
            rows = conn.execute(query).mappings().all()
        return [
            CatalogEntry(
                id=row["id"],
                catalog_key=row["catalog_key"],
                brand=row["brand"],
                model=row["model"],
                sku=row["sku"],
                tier=Tier(row["tier"]),
                staleness=row["staleness"],
            )
            for row in rows
        ]

    def load_mappings(self, entry_ids: Iterable[int], providers: Iterable[str]) -> dict[int, list[ProviderMapping]]:
        entry_ids = list(entry_ids)
        mappings: dict[int, list[ProviderMapping]] = defaultdict(list)
        if not entry_ids:
            return mappings
        query = (
            select(provider_mappings)
            .where(
                provider_mappings.c.entry_id.in_(entry_ids),
                provider_mappings.c.provider.in_(list(providers)),
                provider_mappings.c.is_valid.is_(True),
            )
            .order_by(provider_mappings.c.entry_id, provider_mappings.c.provider, provider_mappings.c.id)
        )
        with self.engine.connect() as conn:
            for row in conn.execute(query).mappings():
                mappings[row["entry_id"]].append(
                    ProviderMapping(
                        id=row["id"],
                        entry_id=row["entry_id"],
                        provider=row["provider"],
                        external_id=row["external_id"],
                        is_valid=row["is_valid"],
                        last_synced_at=row["last_synced_at"],
                    )
                )
        return mappings

    def load_variants(self, entry_ids: Iterable[int]) -> dict[int, dict[str, int]]:
        entry_ids = list(entry_ids)
        sizes: dict[int, dict[str, int]] = defaultdict(dict)
        if not entry_ids:
            return sizes
        query = select(variants.c.id, variants.c.entry_id, variants.c.size).where(variants.c.entry_id.in_(entry_ids))
        with self.engine.connect() as conn:
            for variant_id, entry_id, size in conn.execute(query):
                sizes[entry_id][size] = variant_id
        return sizes

    def mark_synced(self, mapping_id: int, synced_at: datetime) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                update(provider_mappings)
                .where(provider_mappings.c.id == mapping_id)
                .values(last_synced_at=synced_at, last_error=None)
            )

    def record_error(self, mapping_id: int, reason: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                update(provider_mappings).where(provider_mappings.c.id == mapping_id).values(last_error=reason)
            )

    def invalidate_mapping(self, mapping_id: int, reason: str) -> None:
        logger.warning("Invalidating mapping %s: %s", mapping_id, reason)
        with self.engine.begin() as conn:
            conn.execute(
                update(provider_mappings)
                .where(provider_mappings.c.id == mapping_id)
                .values(is_valid=False, invalid_reason=reason, last_error=reason)
            )

    def mark_skipped(self, entry_id: int, skipped_at: datetime) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                update(catalog_entries).where(catalog_entries.c.id == entry_id).values(last_skipped_at=skipped_at)
            )

    def tier_signals(self) -> list[dict[str, object]]:
        """Interest signals for every entry, for the tier classifier."""
        held = (
            exists()
            .where(
                variants.c.entry_id == catalog_entries.c.id,
                holdings.c.variant_id == variants.c.id,
                holdings.c.status.in_(HELD_STATUSES),
            )
            .label("held")
        )
        last_synced = (
            select(func.max(provider_mappings.c.last_synced_at))
            .where(provider_mappings.c.entry_id == catalog_entries.c.id)
            .scalar_subquery()
        )
        query = select(
            catalog_entries.c.id,
            catalog_entries.c.tier,
            catalog_entries.c.last_viewed_at,
            held,
            type_coerce(last_synced, DateTime).label("last_synced_at"),
        ).order_by(catalog_entries.c.id)
        with self.engine.connect() as conn:
            return [dict(row) for row in conn.execute(query).mappings()]

    def update_tiers(self, changes: Mapping[int, Tier], updated_at: datetime | None = None) -> int:
        if not changes:
            return 0
        stamp = updated_at or utcnow()
        with self.engine.begin() as conn:
            for entry_id, tier in changes.items():
                conn.execute(
                    update(catalog_entries)
                    .where(catalog_entries.c.id == entry_id)
                    .values(tier=tier.value, tier_updated_at=stamp)
                )
        return len(changes)
