"""Retry helpers without external dependencies."""

from __future__ import annotations

import asyncio
import functools
import logging
import random
from collections.abc import Awaitable, Callable

from pricesync.errors import TransientProviderError

logger = logging.getLogger(__name__)

RETRY_EXCEPTIONS = (TransientProviderError,)


def retry_async(
    func: Callable[..., Awaitable] | None = None,
    *,
    attempts: int = 3,
    delay: float = 1.0,
    exceptions: tuple[type[BaseException], ...] = RETRY_EXCEPTIONS,
):
    """Retry a coroutine function with exponential backoff and jitter.

    Usable bare (``retry_async(fn)``) or configured
    (``retry_async(attempts=5, delay=0.5)(fn)``). The last error is re-raised
    once ``attempts`` calls have failed.
    """

    def decorate(inner: Callable[..., Awaitable]):
        @functools.wraps(inner)
        async def wrapper(*args, **kwargs):
            backoff = delay
            for attempt in range(attempts):
                try:
                    return await inner(*args, **kwargs)
                except exceptions as exc:
                    if attempt == attempts - 1:
                        raise
                    logger.info("Attempt %s/%s failed: %s", attempt + 1, attempts, exc)
                    if backoff > 0:
                        await asyncio.sleep(backoff + random.random() * backoff)
                    backoff *= 2

        return wrapper

    if func is not None:
        return decorate(func)
    return decorate
