"""Exception hierarchy for the sync pipeline."""

from __future__ import annotations

from typing import Any


class PriceSyncError(Exception):
    """Base error. `context` carries structured fields for logging."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.context = context or {}


class ConfigError(PriceSyncError):
    """Invalid provider or job configuration."""


class ProviderError(PriceSyncError):
    """A provider call failed and should not be retried."""

    def __init__(
        self,
        message: str,
        *,
        provider: str,
        external_id: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(
            message,
            {"provider": provider, "external_id": external_id, "status_code": status_code},
        )
        self.provider = provider
        self.external_id = external_id
        self.status_code = status_code


class TransientProviderError(ProviderError):
    """Timeouts, 5xx and 429 responses. Retried with backoff."""


class RateLimitTimeout(TransientProviderError):
    """No rate-limit permit became available within the configured wait."""


class PermanentMappingError(ProviderError):
    """The provider does not know the external identifier.

    The mapping is marked invalid and excluded until it is re-resolved.
    """


class ProviderSchemaError(ProviderError):
    """The provider payload no longer matches the shape the adapter maps."""


class WriteConflictOrOrphan(PriceSyncError):
    """A snapshot row was rejected by the writer (unknown variant, bad key)."""


class AuthenticationError(PriceSyncError):
    """Trigger request without a valid shared secret."""


class StoreUnavailableError(PriceSyncError):
    """The snapshot store could not be reached; the whole batch aborts."""
