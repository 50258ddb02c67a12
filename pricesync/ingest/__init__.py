"""Ingestion helpers."""

from __future__ import annotations

import os
import pathlib

import yaml

from pricesync.errors import ConfigError
from pricesync.ingest.models import ProviderConfig

PROVIDERS_PATH = pathlib.Path(__file__).with_name("providers.yml")


def load_providers(path: pathlib.Path | None = None, *, enabled_only: bool = True) -> list[ProviderConfig]:
    source = path or pathlib.Path(os.environ.get("PROVIDERS_CONFIG", PROVIDERS_PATH))
    data = yaml.safe_load(source.read_text()) or []
    providers: list[ProviderConfig] = []
    for item in data:
        try:
            config = ProviderConfig(**item)
        except TypeError as exc:
            raise ConfigError(f"Invalid provider entry in {source}: {exc}", {"entry": item}) from exc
        if not config.regions:
            raise ConfigError(f"Provider {config.key} has no regions", {"provider": config.key})
        if enabled_only and not config.enabled:
            continue
        providers.append(config)
    return providers
