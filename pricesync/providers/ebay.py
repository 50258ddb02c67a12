"""eBay Browse API adapter.

eBay has no bids; the lowest active listing per size becomes the ask. Sizes
are pulled out of listing titles, so listings without a recognisable size
are ignored.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Iterable

from pricesync.ingest.models import MarketQuote
from pricesync.providers.base import ProviderAdapter, RawPricing, format_size, major_to_cents
from pricesync.utils.dates import utcnow

logger = logging.getLogger(__name__)

SEARCH_PATH = "/buy/browse/v1/item_summary/search"
MARKETPLACES = {"UK": ("EBAY_GB", "GBP"), "US": ("EBAY_US", "USD"), "EU": ("EBAY_DE", "EUR")}
NEW_CONDITION_FILTER = "conditionIds:{1000}"
SIZE_PATTERNS = (
    re.compile(r"\bUK\s*(\d{1,2}(?:\.5)?)\b", re.IGNORECASE),
    re.compile(r"\bSize:?\s*(?:US\s*|UK\s*)?(\d{1,2}(?:\.5)?)\b", re.IGNORECASE),
)


@dataclass(slots=True)
class EbayPricing(RawPricing):
    pass


def extract_size(title: str) -> str | None:
    for pattern in SIZE_PATTERNS:
        match = pattern.search(title)
        if match:
            return format_size(match.group(1))
    return None


class EbayAdapter(ProviderAdapter):
    key = "ebay"

    async def fetch(
        self, external_id: str, regions: Iterable[str] | None = None, *, timeout: float | None = None
    ) -> EbayPricing:
        payloads: dict[str, Any] = {}
        for region in self.supported(regions):
            marketplace = MARKETPLACES.get(region)
            if marketplace is None:
                logger.warning("eBay has no marketplace for region %s", region)
                continue
            payloads[region] = await self._get_json(
                SEARCH_PATH,
                external_id=external_id,
                timeout=timeout,
                params={"q": external_id, "filter": NEW_CONDITION_FILTER, "limit": 200},
                headers={"X-EBAY-C-MARKETPLACE-ID": marketplace[0]},
            )
        return EbayPricing(provider=self.key, external_id=external_id, fetched_at=utcnow(), regions=payloads)

    def normalize(self, raw: EbayPricing) -> list[MarketQuote]:
        self._expect(raw, EbayPricing)
        quotes: list[MarketQuote] = []
        for region, payload in raw.regions.items():
            if not isinstance(payload, dict):
                raise self._schema_error(raw, f"expected an object for {region}")
            items = payload.get("itemSummaries", [])
            if not isinstance(items, list):
                raise self._schema_error(raw, f"itemSummaries is not a list for {region}")
            currency = MARKETPLACES[region][1]
            lowest: dict[str, int] = {}
            histograms: dict[str, dict[str, int]] = {}
            for item in items:
                price = item.get("price") if isinstance(item, dict) else None
                if not isinstance(price, dict):
                    raise self._schema_error(raw, "listing without price")
                if price.get("currency") != currency:
                    continue
                title = item.get("title") or ""
                if not isinstance(title, str):
                    raise self._schema_error(raw, "listing title is not text")
                size = extract_size(title)
                if size is None:
                    continue
                try:
                    cents = major_to_cents(price.get("value"))
                except ValueError as exc:
                    raise self._schema_error(raw, str(exc)) from exc
                if cents is None:
                    continue
                histogram = histograms.setdefault(size, {})
                bucket = str(cents // 100)
                histogram[bucket] = histogram.get(bucket, 0) + 1
                if size not in lowest or cents < lowest[size]:
                    lowest[size] = cents
            for size, cents in sorted(lowest.items()):
                quotes.append(
                    MarketQuote(
                        provider=self.key,
                        size=size,
                        region=region,
                        currency=currency,
                        observed_at=raw.fetched_at,
                        ask_cents=cents,
                        histogram=histograms[size],
                    )
                )
        return quotes
