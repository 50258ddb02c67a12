"""Common provider adapter plumbing.

Every adapter fetches a provider-tagged raw payload (`RawPricing` subclass)
and maps it with a pure, provider-specific `normalize` into `MarketQuote`
rows. The HTTP layer here translates provider responses into the error
taxonomy the orchestrator acts on:

- 429, 5xx, timeouts and transport failures -> `TransientProviderError`
- 404 -> `PermanentMappingError`
- any other non-2xx -> `ProviderError`
- undecodable or reshaped bodies -> `ProviderSchemaError`
"""

from __future__ import annotations

import abc
import asyncio
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable

import httpx

from pricesync.errors import (
    PermanentMappingError,
    ProviderError,
    ProviderSchemaError,
    TransientProviderError,
)
from pricesync.ingest.models import MarketQuote, ProviderConfig
from pricesync.utils.rate_limit import ProviderBudget, RateLimiter

logger = logging.getLogger(__name__)

USER_AGENT = "PriceSyncBot/1.0"


@dataclass(slots=True)
class RawPricing:
    provider: str
    external_id: str
    fetched_at: datetime
    regions: dict[str, Any] = field(default_factory=dict)


def budget_for(config: ProviderConfig) -> ProviderBudget:
    return ProviderBudget(
        rate=config.rate,
        burst=config.burst,
        max_concurrent=config.max_concurrent,
        max_wait=config.max_wait,
    )


def major_to_cents(value: Any) -> int | None:
    """Convert ``"145.00"`` / ``145`` major units into integer cents."""
    if value in (None, ""):
        return None
    try:
        amount = Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"Not a price: {value!r}") from exc
    return int((amount * 100).to_integral_value())


def cents_from_string(value: Any) -> int | None:
    """Parse prices already expressed in cents, e.g. ``"14500"``."""
    if value in (None, ""):
        return None
    try:
        return int(Decimal(str(value)).to_integral_value())
    except InvalidOperation as exc:
        raise ValueError(f"Not a cents amount: {value!r}") from exc


def format_size(value: Any) -> str:
    """``10.0`` -> ``"10"``, ``10.5`` -> ``"10.5"``, strings pass through trimmed."""
    if isinstance(value, (int, float, Decimal)):
        number = Decimal(str(value))
        if number == number.to_integral_value():
            return str(int(number))
        return format(number.normalize(), "f")
    return str(value).strip()


class ProviderAdapter(abc.ABC):
    key: str = ""

    def __init__(
        self,
        config: ProviderConfig,
        *,
        session: httpx.AsyncClient | None = None,
        rate_limiter: RateLimiter | None = None,
    ) -> None:
        self.config = config
        self.regions = list(config.regions)
        self._owns_session = session is None
        self._session = session or httpx.AsyncClient(
            timeout=config.timeout, headers={"User-Agent": USER_AGENT}
        )
        self._rate_limiter = rate_limiter or RateLimiter({self.key: budget_for(config)})

    async def close(self) -> None:
        if self._owns_session:
            await self._session.aclose()

    def supported(self, regions: Iterable[str] | None = None) -> list[str]:
        if regions is None:
            return list(self.regions)
        wanted = set(regions)
        return [region for region in self.regions if region in wanted]

    @abc.abstractmethod
    async def fetch(
        self, external_id: str, regions: Iterable[str] | None = None, *, timeout: float | None = None
    ) -> RawPricing:
        """Fetch the raw payload for one external identifier.

        `timeout` bounds each HTTP call once a rate-limit permit is held;
        time spent waiting for the permit is governed by the budget's
        ``max_wait`` instead.
        """

    @abc.abstractmethod
    def normalize(self, raw: RawPricing) -> list[MarketQuote]:
        """Map a raw payload of this provider into quotes."""

    async def fetch_quotes(
        self, external_id: str, regions: Iterable[str] | None = None, *, timeout: float | None = None
    ) -> list[MarketQuote]:
        raw = await self.fetch(external_id, regions, timeout=timeout)
        return self.normalize(raw)

    def _expect(self, raw: RawPricing, raw_type: type[RawPricing]) -> None:
        if not isinstance(raw, raw_type) or raw.provider != self.key:
            raise ProviderSchemaError(
                f"{self.key} cannot normalize {type(raw).__name__} from {raw.provider}",
                provider=self.key,
                external_id=raw.external_id,
            )

    def _schema_error(self, raw: RawPricing, detail: str) -> ProviderSchemaError:
        return ProviderSchemaError(
            f"{self.key} payload for {raw.external_id}: {detail}",
            provider=self.key,
            external_id=raw.external_id,
        )

    def _auth_headers(self) -> dict[str, str]:
        headers: dict[str, str] = {}
        for header, env_name in self.config.credentials.items():
            value = os.environ.get(env_name)
            if not value:
                continue
            if header.lower() == "authorization" and " " not in value:
                value = f"Bearer {value}"
            headers[header] = value
        return headers

    async def _get_json(
        self,
        path: str,
        *,
        external_id: str,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> Any:
        url = f"{self.config.base_url.rstrip('/')}{path}"
        request_headers = {**self._auth_headers(), **(headers or {})}
        async with self._rate_limiter.acquire(self.key):
            try:
                response = await asyncio.wait_for(
                    self._session.get(url, params=params, headers=request_headers),
                    timeout=timeout if timeout is not None else self.config.timeout,
                )
            except (httpx.TimeoutException, asyncio.TimeoutError) as exc:
                raise TransientProviderError(
                    f"{self.key} timed out for {external_id}", provider=self.key, external_id=external_id
                ) from exc
            except httpx.TransportError as exc:
                raise TransientProviderError(
                    f"{self.key} transport error for {external_id}: {exc}",
                    provider=self.key,
                    external_id=external_id,
                ) from exc
        self._raise_for_status(response, external_id)
        try:
            return response.json()
        except ValueError as exc:
            raise ProviderSchemaError(
                f"{self.key} returned a non-JSON body for {external_id}",
                provider=self.key,
                external_id=external_id,
                status_code=response.status_code,
            ) from exc

    def _raise_for_status(self, response: httpx.Response, external_id: str) -> None:
        status = response.status_code
        if status < 400:
            return
        message = f"{self.key} responded {status} for {external_id}"
        if status == 429 or status >= 500:
            raise TransientProviderError(message, provider=self.key, external_id=external_id, status_code=status)
        if status == 404:
            raise PermanentMappingError(message, provider=self.key, external_id=external_id, status_code=status)
        raise ProviderError(message, provider=self.key, external_id=external_id, status_code=status)
