"""StockX market-data adapter.

StockX quotes prices in major units ("145.00"), one request per currency.
Regions are fetched sequentially, so quotes keep region order.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable

from pricesync.ingest.models import MarketQuote
from pricesync.providers.base import ProviderAdapter, RawPricing, format_size, major_to_cents
from pricesync.utils.dates import utcnow

logger = logging.getLogger(__name__)

MARKET_DATA_PATH = "/v2/catalog/products/{product_id}/market-data"
REGION_CURRENCIES = {"UK": "GBP", "EU": "EUR", "US": "USD"}


@dataclass(slots=True)
class StockXPricing(RawPricing):
    pass


class StockXAdapter(ProviderAdapter):
    key = "stockx"

    async def fetch(
        self, external_id: str, regions: Iterable[str] | None = None, *, timeout: float | None = None
    ) -> StockXPricing:
        payloads: dict[str, Any] = {}
        for region in self.supported(regions):
            currency = REGION_CURRENCIES.get(region)
            if currency is None:
                logger.warning("StockX has no currency for region %s", region)
                continue
            payloads[region] = await self._get_json(
                MARKET_DATA_PATH.format(product_id=external_id),
                external_id=external_id,
                timeout=timeout,
                params={"currencyCode": currency},
            )
        return StockXPricing(provider=self.key, external_id=external_id, fetched_at=utcnow(), regions=payloads)

    def normalize(self, raw: StockXPricing) -> list[MarketQuote]:
        self._expect(raw, StockXPricing)
        quotes: list[MarketQuote] = []
        for region, payload in raw.regions.items():
            if not isinstance(payload, list):
                raise self._schema_error(raw, f"expected a variant list for {region}")
            currency = REGION_CURRENCIES[region]
            for variant in payload:
                if not isinstance(variant, dict) or "variantId" not in variant:
                    raise self._schema_error(raw, f"variant without variantId in {region}")
                size = variant.get("variantValue") or variant.get("size")
                if size in (None, ""):
                    logger.warning("Skipping StockX variant %s without size", variant["variantId"])
                    continue
                if isinstance(size, bool) or not isinstance(size, (str, int, float)):
                    raise self._schema_error(raw, f"variant {variant['variantId']} has a non-scalar size")
                try:
                    ask = major_to_cents(variant.get("lowestAskAmount"))
                    bid = major_to_cents(variant.get("highestBidAmount"))
                    last_sale = major_to_cents(variant.get("lastSaleAmount"))
                except ValueError as exc:
                    raise self._schema_error(raw, str(exc)) from exc
                if ask is None and bid is None and last_sale is None:
                    continue
                quotes.append(
                    MarketQuote(
                        provider=self.key,
                        size=format_size(size),
                        region=region,
                        currency=currency,
                        observed_at=raw.fetched_at,
                        ask_cents=ask,
                        bid_cents=bid,
                        last_sale_cents=last_sale,
                        sales_last_72h=_optional_int(variant.get("salesLast72Hours")),
                        sales_last_30d=_optional_int(variant.get("totalVolume")),
                    )
                )
        return quotes


def _optional_int(value: Any) -> int | None:
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
