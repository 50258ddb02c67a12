"""Tiered sync batches: select, fetch, normalize, write, record."""

from __future__ import annotations

import asyncio
import functools
import logging
import os
import time
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Mapping, TypeVar

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from pricesync.errors import (
    PermanentMappingError,
    ProviderError,
    RateLimitTimeout,
    StoreUnavailableError,
    TransientProviderError,
)
from pricesync.ingest.catalog import CatalogStore
from pricesync.ingest.ledger import SyncLedger
from pricesync.ingest.models import (
    BatchResult,
    CatalogEntry,
    EntryOutcome,
    MarketQuote,
    PriceSnapshot,
    ProviderMapping,
    Tier,
)
from pricesync.ingest.writer import SnapshotWriter
from pricesync.logic.tiers import TIER_SCHEDULES, TierClassifier, TierSignals
from pricesync.providers.base import ProviderAdapter
from pricesync.utils.dates import utcnow
from pricesync.utils.retry import retry_async

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(slots=True)
class SyncSettings:
    parallelism: int = 5
    retry_attempts: int = 3
    retry_delay: float = 1.0
    fetch_timeout: float = 30.0
    batch_deadline: float = 240.0
    lock_ttl: timedelta = field(default_factory=lambda: timedelta(minutes=15))
    respect_intervals: bool = True

    @classmethod
    def from_env(cls) -> "SyncSettings":
        return cls(
            parallelism=int(os.environ.get("SYNC_PARALLELISM", 5)),
            retry_attempts=int(os.environ.get("SYNC_RETRY_ATTEMPTS", 3)),
            retry_delay=float(os.environ.get("SYNC_RETRY_DELAY", 1.0)),
            fetch_timeout=float(os.environ.get("SYNC_FETCH_TIMEOUT", 30.0)),
            batch_deadline=float(os.environ.get("SYNC_BATCH_DEADLINE", 240.0)),
            lock_ttl=timedelta(minutes=float(os.environ.get("SYNC_LOCK_TTL_MINUTES", 15))),
        )


class SyncOrchestrator:
    def __init__(
        self,
        engine: Engine,
        adapters: Mapping[str, ProviderAdapter],
        *,
        settings: SyncSettings | None = None,
        writer: SnapshotWriter | None = None,
    ) -> None:
        self.engine = engine
        self.adapters = dict(adapters)
        self.settings = settings or SyncSettings.from_env()
        self.catalog = CatalogStore(engine)
        self.ledger = SyncLedger(engine)
        self.writer = writer or SnapshotWriter(engine)

    async def run_sync_batch(self, tier: Tier | str, max_batch_size: int | None = None) -> BatchResult:
        """Sync up to `max_batch_size` of the stalest due entries in `tier`.

        A second call for a tier that is already in flight returns
        ``status="already_running"`` without doing any work.
        """
        tier = Tier(tier)
        if max_batch_size is not None and max_batch_size < 1:
            raise ValueError(f"max_batch_size must be at least 1, got {max_batch_size}")
        started = time.monotonic()
        result = BatchResult(tier=tier)
        holder = uuid.uuid4().hex
        try:
            acquired = await self._store(self.ledger.acquire_lock, tier, holder, ttl=self.settings.lock_ttl)
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(f"Cannot lock tier {tier.value}: {exc}", {"tier": tier.value}) from exc
        if not acquired:
            result.status = "already_running"
            result.duration_ms = _elapsed_ms(started)
            return result
        try:
            await self._run_locked(tier, max_batch_size, result)
        finally:
            try:
                await self._store(self.ledger.release_lock, tier, holder)
            except SQLAlchemyError:
                logger.exception("Failed to release %s lock; it expires after %s", tier.value, self.settings.lock_ttl)
        result.duration_ms = _elapsed_ms(started)
        logger.info(
            "Sync %s finished: attempted=%s succeeded=%s failed=%s skipped=%s deferred=%s in %sms",
            tier.value,
            result.attempted,
            result.succeeded,
            result.failed,
            result.skipped_no_mapping,
            result.deferred,
            result.duration_ms,
        )
        return result

    async def _run_locked(self, tier: Tier, max_batch_size: int | None, result: BatchResult) -> None:
        schedule = TIER_SCHEDULES[tier]
        limit = schedule.batch_size if max_batch_size is None else max_batch_size
        providers = list(self.adapters)
        now = utcnow()
        try:
            entries = await self._store(
                self.catalog.select_batch,
                tier,
                limit,
                providers=providers,
                min_interval=schedule.min_interval if self.settings.respect_intervals else None,
                now=now,
            )
            entry_ids = [entry.id for entry in entries]
            mappings = await self._store(self.catalog.load_mappings, entry_ids, providers)
            sizes = await self._store(self.catalog.load_variants, entry_ids)
            result.run_id = await self._store(self.ledger.start_run, tier, now)
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(f"Cannot select {tier.value} batch: {exc}", {"tier": tier.value}) from exc

        logger.info("Syncing %s %s entries", len(entries), tier.value)
        deadline = asyncio.get_running_loop().time() + self.settings.batch_deadline
        semaphore = asyncio.Semaphore(self.settings.parallelism)
        outcomes = await asyncio.gather(
            *(
                self._sync_entry(entry, mappings.get(entry.id, []), sizes.get(entry.id, {}), semaphore, deadline)
                for entry in entries
            )
        )
        for outcome in outcomes:
            result.record(outcome)
        try:
            await self._store(self.ledger.finish_run, result.run_id, result)
        except SQLAlchemyError:
            logger.exception("Could not record outcome of run %s", result.run_id)

    async def _sync_entry(
        self,
        entry: CatalogEntry,
        mappings: list[ProviderMapping],
        sizes: dict[str, int],
        semaphore: asyncio.Semaphore,
        deadline: float,
    ) -> EntryOutcome:
        async with semaphore:
            if asyncio.get_running_loop().time() >= deadline:
                return EntryOutcome(entry_id=entry.id, status="deferred")
            if not mappings:
                await self._bookkeep(self.catalog.mark_skipped, entry.id, utcnow())
                return EntryOutcome(entry_id=entry.id, status="skipped")

            outcome = EntryOutcome(entry_id=entry.id, status="succeeded")
            for mapping in mappings:
                try:
                    outcome.snapshots += await self._sync_mapping(entry, mapping, sizes)
                except PermanentMappingError as exc:
                    await self._bookkeep(self.catalog.invalidate_mapping, mapping.id, str(exc))
                    self._fail(outcome, mapping, "permanent_mapping", exc)
                except RateLimitTimeout as exc:
                    await self._bookkeep(self.catalog.record_error, mapping.id, str(exc))
                    self._fail(outcome, mapping, "rate_limited", exc)
                except TransientProviderError as exc:
                    await self._bookkeep(self.catalog.record_error, mapping.id, str(exc))
                    self._fail(outcome, mapping, "transient", exc)
                except ProviderError as exc:
                    await self._bookkeep(self.catalog.record_error, mapping.id, str(exc))
                    self._fail(outcome, mapping, "provider", exc)
                except SQLAlchemyError as exc:
                    self._fail(outcome, mapping, "store", exc)
                except Exception as exc:
                    logger.exception("Unexpected error syncing %s/%s", mapping.provider, mapping.external_id)
                    await self._bookkeep(self.catalog.record_error, mapping.id, f"unexpected: {exc!r}")
                    self._fail(outcome, mapping, "unexpected", exc)
            if outcome.failures:
                outcome.status = "failed"
            return outcome

    async def _sync_mapping(self, entry: CatalogEntry, mapping: ProviderMapping, sizes: dict[str, int]) -> int:
        adapter = self.adapters[mapping.provider]
        fetch = retry_async(attempts=self.settings.retry_attempts, delay=self.settings.retry_delay)(self._fetch_once)
        quotes = await fetch(adapter, mapping.external_id)
        snapshots = self._attach_variants(entry, mapping, quotes, sizes)
        written = 0
        if snapshots:
            written = (await self._store(self.writer.write, snapshots)).written
        await self._store(self.catalog.mark_synced, mapping.id, utcnow())
        return written

    async def _fetch_once(self, adapter: ProviderAdapter, external_id: str) -> list[MarketQuote]:
        return await adapter.fetch_quotes(external_id, timeout=self.settings.fetch_timeout)

    @staticmethod
    def _attach_variants(
        entry: CatalogEntry, mapping: ProviderMapping, quotes: list[MarketQuote], sizes: dict[str, int]
    ) -> list[PriceSnapshot]:
        snapshots: list[PriceSnapshot] = []
        orphans: list[str] = []
        for quote in quotes:
            variant_id = sizes.get(quote.size)
            if variant_id is None:
                orphans.append(quote.size)
                continue
            snapshots.append(PriceSnapshot.from_quote(quote, variant_id))
        if orphans:
            logger.warning(
                "Dropped %s %s quotes for %s with unknown sizes: %s",
                len(orphans),
                mapping.provider,
                entry.catalog_key,
                ", ".join(sorted(set(orphans))[:10]),
            )
        return snapshots

    @staticmethod
    def _fail(outcome: EntryOutcome, mapping: ProviderMapping, kind: str, exc: Exception) -> None:
        logger.warning("Entry %s %s/%s failed (%s): %s", outcome.entry_id, mapping.provider, mapping.external_id, kind, exc)
        outcome.failures.append(
            {"provider": mapping.provider, "external_id": mapping.external_id, "kind": kind, "reason": str(exc)}
        )

    async def reclassify_tiers(self, classifier: TierClassifier | None = None) -> dict[str, Any]:
        """Re-evaluate every entry's tier and persist the ones that changed."""
        classifier = classifier or TierClassifier()
        try:
            rows = await self._store(self.catalog.tier_signals)
            now = utcnow()
            assigned = classifier.classify_all(
                (
                    TierSignals(
                        entry_id=row["id"],
                        held=bool(row["held"]),
                        last_viewed_at=row["last_viewed_at"],
                        last_synced_at=row["last_synced_at"],
                    )
                    for row in rows
                ),
                now=now,
            )
            current = {row["id"]: row["tier"] for row in rows}
            changes = {entry_id: tier for entry_id, tier in assigned.items() if current.get(entry_id) != tier.value}
            changed = await self._store(self.catalog.update_tiers, changes, now)
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(f"Cannot reclassify tiers: {exc}") from exc
        counts = Counter(tier.value for tier in assigned.values())
        logger.info("Reclassified %s entries, %s changed", len(assigned), changed)
        return {"changed": changed, "tiers": {tier.value: counts.get(tier.value, 0) for tier in Tier}}

    async def _store(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))

    async def _bookkeep(self, func: Callable[..., Any], *args: Any) -> None:
        try:
            await self._store(func, *args)
        except SQLAlchemyError:
            logger.exception("Bookkeeping %s failed", getattr(func, "__name__", func))


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
