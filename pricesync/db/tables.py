"""Table definitions shared by the jobs, the API and the tests."""

from __future__ import annotations

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    Table,
    Text,
    UniqueConstraint,
)

metadata = MetaData()

catalog_entries = Table(
    "catalog_entries",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("catalog_key", Text, nullable=False, unique=True),
    Column("brand", Text),
    Column("model", Text),
    Column("sku", Text),
    Column("tier", Text, nullable=False, default="warm"),
    Column("tier_updated_at", DateTime),
    Column("last_viewed_at", DateTime),
    Column("last_skipped_at", DateTime),
    Column("created_at", DateTime),
    Index("ix_catalog_entries_tier", "tier"),
)

variants = Table(
    "variants",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("entry_id", Integer, ForeignKey("catalog_entries.id"), nullable=False),
    Column("size", Text, nullable=False),
    UniqueConstraint("entry_id", "size", name="uq_variants_entry_size"),
)

provider_mappings = Table(
    "provider_mappings",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("entry_id", Integer, ForeignKey("catalog_entries.id"), nullable=False),
    Column("provider", Text, nullable=False),
    Column("external_id", Text, nullable=False),
    Column("is_valid", Boolean, nullable=False, default=True),
    Column("invalid_reason", Text),
    Column("last_synced_at", DateTime),
    Column("last_error", Text),
    UniqueConstraint("entry_id", "provider", "external_id", name="uq_mappings_entry_provider_ext"),
)

price_snapshots = Table(
    "price_snapshots",
    metadata,
    Column("provider", Text, primary_key=True),
    Column("variant_id", Integer, ForeignKey("variants.id"), primary_key=True),
    Column("region", Text, primary_key=True),
    Column("bucket_at", DateTime, primary_key=True),
    Column("observed_at", DateTime, nullable=False),
    Column("currency", Text, nullable=False),
    Column("ask_cents", Integer),
    Column("bid_cents", Integer),
    Column("last_sale_cents", Integer),
    Column("sales_last_72h", Integer),
    Column("sales_last_30d", Integer),
    Column("histogram", JSON),
    Column("ingested_at", DateTime),
    Index("ix_price_snapshots_observed_at", "observed_at"),
)

holdings = Table(
    "holdings",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Text, nullable=False),
    Column("variant_id", Integer, ForeignKey("variants.id"), nullable=False),
    Column("quantity", Integer, nullable=False, default=1),
    Column("status", Text, nullable=False, default="active"),
)

daily_median_prices = Table(
    "daily_median_prices",
    metadata,
    Column("provider", Text, primary_key=True),
    Column("variant_id", Integer, ForeignKey("variants.id"), primary_key=True),
    Column("region", Text, primary_key=True),
    Column("currency", Text, primary_key=True),
    Column("day", Date, primary_key=True),
    Column("median_cents", Integer, nullable=False),
    Column("points", Integer, nullable=False),
)

portfolio_valuations = Table(
    "portfolio_valuations",
    metadata,
    Column("user_id", Text, primary_key=True),
    Column("day", Date, primary_key=True),
    Column("currency", Text, primary_key=True),
    Column("value_cents", Integer, nullable=False),
    Column("items", Integer, nullable=False),
)

sync_runs = Table(
    "sync_runs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("tier", Text, nullable=False),
    Column("status", Text, nullable=False),
    Column("started_at", DateTime, nullable=False),
    Column("finished_at", DateTime),
    Column("attempted", Integer, nullable=False, default=0),
    Column("succeeded", Integer, nullable=False, default=0),
    Column("failed", Integer, nullable=False, default=0),
    Column("skipped_no_mapping", Integer, nullable=False, default=0),
    Column("deferred", Integer, nullable=False, default=0),
    Column("snapshots_written", Integer, nullable=False, default=0),
)

sync_failures = Table(
    "sync_failures",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("run_id", Integer, ForeignKey("sync_runs.id"), nullable=False),
    Column("entry_id", Integer, ForeignKey("catalog_entries.id"), nullable=False),
    Column("provider", Text, nullable=False),
    Column("external_id", Text),
    Column("kind", Text, nullable=False),
    Column("reason", Text),
)

sync_locks = Table(
    "sync_locks",
    metadata,
    Column("tier", Text, primary_key=True),
    Column("holder", Text, nullable=False),
    Column("acquired_at", DateTime, nullable=False),
    Column("expires_at", DateTime, nullable=False),
)
