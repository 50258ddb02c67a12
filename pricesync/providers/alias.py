"""Alias pricing-insights adapter.

Alias returns USD cents as strings for every marketplace; ``region_id``
selects the marketplace, not the currency.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Iterable

from pricesync.ingest.models import MarketQuote
from pricesync.providers.base import ProviderAdapter, RawPricing, cents_from_string, format_size
from pricesync.utils.dates import parse_timestamp, utcnow

logger = logging.getLogger(__name__)

AVAILABILITIES_PATH = "/api/v1/pricing_insights/availabilities/{catalog_id}"
RECENT_SALES_PATH = "/api/v1/pricing_insights/recent_sales"
REGION_IDS = {"US": "1", "EU": "2", "UK": "3"}
CURRENCY = "USD"
STANDARD_CONDITIONS = {
    "product_condition": "PRODUCT_CONDITION_NEW",
    "packaging_condition": "PACKAGING_CONDITION_GOOD_CONDITION",
}


@dataclass(slots=True)
class AliasPricing(RawPricing):
    sales: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class _SalesStats:
    last_sale_cents: int | None = None
    last_sold_at: datetime | None = None
    sales_72h: int = 0
    sales_30d: int = 0
    histogram: dict[str, int] = field(default_factory=dict)


class AliasAdapter(ProviderAdapter):
    key = "alias"

    async def fetch(
        self, external_id: str, regions: Iterable[str] | None = None, *, timeout: float | None = None
    ) -> AliasPricing:
        availabilities: dict[str, Any] = {}
        sales: dict[str, Any] = {}
        for region in self.supported(regions):
            region_id = REGION_IDS.get(region)
            if region_id is None:
                logger.warning("Alias has no region id for %s", region)
                continue
            availabilities[region] = await self._get_json(
                AVAILABILITIES_PATH.format(catalog_id=external_id),
                external_id=external_id,
                timeout=timeout,
                params={"region_id": region_id, "consigned": "false"},
            )
            sales[region] = await self._get_json(
                RECENT_SALES_PATH,
                external_id=external_id,
                timeout=timeout,
                params={"catalog_id": external_id, "region_id": region_id, "limit": 200},
            )
        return AliasPricing(
            provider=self.key,
            external_id=external_id,
            fetched_at=utcnow(),
            regions=availabilities,
            sales=sales,
        )

    def normalize(self, raw: AliasPricing) -> list[MarketQuote]:
        self._expect(raw, AliasPricing)
        quotes: list[MarketQuote] = []
        for region, payload in raw.regions.items():
            variants = payload.get("variants") if isinstance(payload, dict) else None
            if not isinstance(variants, list):
                raise self._schema_error(raw, f"expected variants for {region}")
            stats = self._sales_stats(raw, region)
            for variant in variants:
                if not isinstance(variant, dict) or "size" not in variant:
                    raise self._schema_error(raw, f"variant without size in {region}")
                if any(variant.get(name) != value for name, value in STANDARD_CONDITIONS.items()):
                    continue
                if variant.get("consigned"):
                    continue
                availability = variant.get("availability")
                if not availability:
                    continue
                if not isinstance(availability, dict):
                    raise self._schema_error(raw, f"availability is not an object in {region}")
                size = format_size(variant["size"])
                try:
                    ask = cents_from_string(availability.get("lowest_listing_price_cents"))
                    bid = cents_from_string(availability.get("highest_offer_price_cents"))
                except ValueError as exc:
                    raise self._schema_error(raw, str(exc)) from exc
                size_stats = stats.get(size, _SalesStats())
                quotes.append(
                    MarketQuote(
                        provider=self.key,
                        size=size,
                        region=region,
                        currency=CURRENCY,
                        observed_at=raw.fetched_at,
                        ask_cents=ask,
                        bid_cents=bid,
                        last_sale_cents=size_stats.last_sale_cents,
                        sales_last_72h=size_stats.sales_72h,
                        sales_last_30d=size_stats.sales_30d,
                        histogram=size_stats.histogram or None,
                    )
                )
        return quotes

    def _sales_stats(self, raw: AliasPricing, region: str) -> dict[str, _SalesStats]:
        payload = raw.sales.get(region)
        if payload is None:
            return {}
        sales = payload.get("recent_sales") if isinstance(payload, dict) else None
        if not isinstance(sales, list):
            raise self._schema_error(raw, f"expected recent_sales for {region}")
        stats: dict[str, _SalesStats] = defaultdict(_SalesStats)
        for sale in sales:
            try:
                size = format_size(sale["size"])
                price = cents_from_string(sale["price_cents"])
                sold_at = parse_timestamp(sale["purchased_at"])
            except (KeyError, TypeError, ValueError) as exc:
                raise self._schema_error(raw, f"bad recent sale: {exc}") from exc
            if price is None:
                continue
            entry = stats[size]
            age = raw.fetched_at - sold_at
            if age <= timedelta(hours=72):
                entry.sales_72h += 1
            if age <= timedelta(days=30):
                entry.sales_30d += 1
            bucket = str(price // 100)
            entry.histogram[bucket] = entry.histogram.get(bucket, 0) + 1
            if entry.last_sold_at is None or sold_at > entry.last_sold_at:
                entry.last_sold_at = sold_at
                entry.last_sale_cents = price
        return stats
