"""Per-provider rate limiting utilities."""

from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Mapping

from pricesync.errors import RateLimitTimeout


@dataclass(slots=True, frozen=True)
class ProviderBudget:
    rate: float | None = 1.5
    burst: int = 1
    max_concurrent: int = 4
    max_wait: float | None = None


class _Bucket:
    """Token bucket plus a concurrency gate for one provider."""

    def __init__(self, budget: ProviderBudget) -> None:
        self.budget = budget
        self.tokens = float(budget.burst)
        self.updated = time.monotonic()
        self.lock = asyncio.Lock()
        self.slots = asyncio.Semaphore(budget.max_concurrent)
        self.active = 0
        self.peak = 0

    async def take_token(self) -> None:
        rate = self.budget.rate
        if not rate:
            return
        async with self.lock:
            while True:
                now = time.monotonic()
                self.tokens = min(float(self.budget.burst), self.tokens + (now - self.updated) * rate)
                self.updated = now
                if self.tokens >= 1.0:
                    self.tokens -= 1.0
                    return
                await asyncio.sleep((1.0 - self.tokens) / rate)


class RateLimiter:
    """Independent budgets per provider key.

    Callers over capacity wait. When a budget sets ``max_wait`` the wait is
    bounded and `RateLimitTimeout` is raised instead.
    """

    def __init__(
        self,
        budgets: Mapping[str, ProviderBudget] | None = None,
        *,
        default: ProviderBudget | None = None,
    ) -> None:
        self._budgets = dict(budgets or {})
        self._default = default or ProviderBudget()
        self._buckets: dict[str, _Bucket] = {}

    def _bucket(self, key: str) -> _Bucket:
        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = _Bucket(self._budgets.get(key, self._default))
            self._buckets[key] = bucket
        return bucket

    def active(self, key: str) -> int:
        return self._bucket(key).active

    def peak(self, key: str) -> int:
        return self._bucket(key).peak

    @asynccontextmanager
    async def acquire(self, key: str) -> AsyncIterator[None]:
        bucket = self._bucket(key)
        max_wait = bucket.budget.max_wait
        try:
            if max_wait is None:
                await self._enter(bucket)
            else:
                await asyncio.wait_for(self._enter(bucket), timeout=max_wait)
        except asyncio.TimeoutError as exc:
            raise RateLimitTimeout(
                f"No permit for {key} within {max_wait}s", provider=key
            ) from exc
        bucket.active += 1
        bucket.peak = max(bucket.peak, bucket.active)
        try:
            yield
        finally:
            bucket.active -= 1
            bucket.slots.release()

    @staticmethod
    async def _enter(bucket: _Bucket) -> None:
        await bucket.slots.acquire()
        try:
            await bucket.take_token()
        except BaseException:
            bucket.slots.release()
            raise
