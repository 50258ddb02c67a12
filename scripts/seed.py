"""Seed database with a demo catalog, provider mappings and holdings."""

from __future__ import annotations

from dotenv import load_dotenv
from sqlalchemy import select

from pricesync.db.migrate import run_migrations
from pricesync.db.session import create_engine_from_env, dialect_insert
from pricesync.db.tables import catalog_entries, holdings, provider_mappings, variants
from pricesync.utils.dates import utcnow

DEMO_CATALOG = [
    {
        "catalog_key": "nike-dunk-low-panda",
        "brand": "Nike",
        "model": "Dunk Low Retro White Black",
        "sku": "DD1391-100",
        "tier": "hot",
        "sizes": ["7", "8", "9", "10", "10.5", "11"],
        "mappings": {"stockx": "5e6a1e57-1c7d-435a-82bd-5666a13560fe", "alias": "dd1391-100", "ebay": "DD1391-100"},
    },
    {
        "catalog_key": "adidas-samba-og-white",
        "brand": "adidas",
        "model": "Samba OG Cloud White",
        "sku": "B75806",
        "tier": "warm",
        "sizes": ["6", "7", "8", "9"],
        "mappings": {"stockx": "0b1c0f3e-31a6-4a4e-8f3b-52a0c1d5d0e2", "alias": "b75806"},
    },
    {
        "catalog_key": "new-balance-550-green",
        "brand": "New Balance",
        "model": "550 White Green",
        "sku": "BB550WT1",
        "tier": "cold",
        "sizes": ["8", "9", "10"],
        "mappings": {},
    },
]

DEMO_HOLDINGS = [
    {"user_id": "demo-user", "catalog_key": "nike-dunk-low-panda", "size": "9", "quantity": 2, "status": "active"},
    {"user_id": "demo-user", "catalog_key": "adidas-samba-og-white", "size": "8", "quantity": 1, "status": "listed"},
]


def main() -> None:
    load_dotenv()
    engine = create_engine_from_env()
    run_migrations(engine)
    now = utcnow()
    with engine.begin() as conn:
        for item in DEMO_CATALOG:
            conn.execute(
                dialect_insert(conn, catalog_entries)
                .values(
                    catalog_key=item["catalog_key"],
                    brand=item["brand"],
                    model=item["model"],
                    sku=item["sku"],
                    tier=item["tier"],
                    created_at=now,
                )
                .on_conflict_do_nothing(index_elements=["catalog_key"])
            )
            entry_id = conn.execute(
                select(catalog_entries.c.id).where(catalog_entries.c.catalog_key == item["catalog_key"])
            ).scalar_one()
            for size in item["sizes"]:
                conn.execute(
                    dialect_insert(conn, variants)
                    .values(entry_id=entry_id, size=size)
                    .on_conflict_do_nothing(index_elements=["entry_id", "size"])
                )
            for provider, external_id in item["mappings"].items():
                conn.execute(
                    dialect_insert(conn, provider_mappings)
                    .values(entry_id=entry_id, provider=provider, external_id=external_id, is_valid=True)
                    .on_conflict_do_nothing(index_elements=["entry_id", "provider", "external_id"])
                )
        for holding in DEMO_HOLDINGS:
            variant_id = conn.execute(
                select(variants.c.id)
                .join(catalog_entries, catalog_entries.c.id == variants.c.entry_id)
                .where(catalog_entries.c.catalog_key == holding["catalog_key"], variants.c.size == holding["size"])
            ).scalar_one()
            exists = conn.execute(
                select(holdings.c.id).where(holdings.c.user_id == holding["user_id"], holdings.c.variant_id == variant_id)
            ).first()
            if exists is None:
                conn.execute(
                    holdings.insert().values(
                        user_id=holding["user_id"],
                        variant_id=variant_id,
                        quantity=holding["quantity"],
                        status=holding["status"],
                    )
                )
    print("Seed complete")


if __name__ == "__main__":
    main()
