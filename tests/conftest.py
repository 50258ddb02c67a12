from datetime import datetime

import pytest
from sqlalchemy import create_engine, select

from pricesync.db.tables import catalog_entries, holdings, metadata, provider_mappings, variants
from pricesync.utils.dates import utcnow


@pytest.fixture()
def engine(tmp_path):
    # File-backed so executor threads share one database.
    engine = create_engine(f"sqlite:///{tmp_path / 'pricesync.db'}", future=True)
    metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def add_entry(engine):
    """Insert a catalog entry with variants and mappings; returns its id."""

    def _add(
        key: str,
        *,
        tier: str = "hot",
        sizes=("9", "10"),
        mappings=None,
        last_synced_at: datetime | None = None,
        last_viewed_at: datetime | None = None,
    ) -> int:
        mappings = {"stockx": f"sx-{key}"} if mappings is None else mappings
        with engine.begin() as conn:
            entry_id = conn.execute(
                catalog_entries.insert().values(
                    catalog_key=key,
                    brand="Nike",
                    model=f"Model {key}",
                    sku=key.upper(),
                    tier=tier,
                    last_viewed_at=last_viewed_at,
                    created_at=utcnow(),
                )
            ).inserted_primary_key[0]
            for size in sizes:
                conn.execute(variants.insert().values(entry_id=entry_id, size=size))
            for provider, external_id in mappings.items():
                conn.execute(
                    provider_mappings.insert().values(
                        entry_id=entry_id,
                        provider=provider,
                        external_id=external_id,
                        is_valid=True,
                        last_synced_at=last_synced_at,
                    )
                )
        return entry_id

    return _add


@pytest.fixture()
def add_holding(engine):
    def _add(user_id: str, entry_id: int, size: str, *, quantity: int = 1, status: str = "active") -> int:
        with engine.begin() as conn:
            variant_id = conn.execute(
                select(variants.c.id).where(variants.c.entry_id == entry_id, variants.c.size == size)
            ).scalar_one()
            conn.execute(
                holdings.insert().values(user_id=user_id, variant_id=variant_id, quantity=quantity, status=status)
            )
        return variant_id

    return _add
