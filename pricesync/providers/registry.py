"""Adapter registry: builds adapters from provider configuration."""

from __future__ import annotations

import logging
from typing import Iterable

import httpx

from pricesync.errors import ConfigError
from pricesync.ingest.models import ProviderConfig
from pricesync.providers.alias import AliasAdapter
from pricesync.providers.base import ProviderAdapter, budget_for
from pricesync.providers.ebay import EbayAdapter
from pricesync.providers.stockx import StockXAdapter
from pricesync.utils.rate_limit import RateLimiter

logger = logging.getLogger(__name__)

ADAPTERS: dict[str, type[ProviderAdapter]] = {
    StockXAdapter.key: StockXAdapter,
    AliasAdapter.key: AliasAdapter,
    EbayAdapter.key: EbayAdapter,
}


def rate_limiter_for(configs: Iterable[ProviderConfig]) -> RateLimiter:
    return RateLimiter({config.key: budget_for(config) for config in configs})


def build_adapters(
    configs: Iterable[ProviderConfig],
    *,
    session: httpx.AsyncClient | None = None,
    rate_limiter: RateLimiter | None = None,
) -> dict[str, ProviderAdapter]:
    configs = list(configs)
    limiter = rate_limiter or rate_limiter_for(configs)
    adapters: dict[str, ProviderAdapter] = {}
    for config in configs:
        adapter_cls = ADAPTERS.get(config.key)
        if adapter_cls is None:
            raise ConfigError(f"No adapter registered for provider {config.key}", {"provider": config.key})
        adapters[config.key] = adapter_cls(config, session=session, rate_limiter=limiter)
    logger.info("Built adapters: %s", ", ".join(adapters) or "none")
    return adapters
