"""Exception hierarchy for dreampods.

All dreampods-specific exceptions inherit from DreamPodsError, so callers
(the dashboard routes, the CLI) can catch every orchestrator failure with a
single except clause.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any


class DreamPodsError(Exception):
    """Base exception for all dreampods errors."""


class ConfigurationError(DreamPodsError):
    """Raised for invalid configuration or missing required settings."""


class UnknownRoleError(ConfigurationError):
    """Raised when a role name does not map to a pod template."""

    def __init__(self, role: str) -> None:
        self.role = role
        super().__init__(f"Unknown pod role: {role!r}")


# =============================================================================
# Resource provider
# =============================================================================


class ProviderErrorKind(StrEnum):
    CAPACITY = "capacity"
    NOT_FOUND = "not_found"
    AUTH = "auth"
    RATE_LIMITED = "rate_limited"
    INVALID_REQUEST = "invalid_request"
    UNAVAILABLE = "unavailable"
    UNKNOWN = "unknown"


class ProviderError(DreamPodsError):
    """Non-2xx response (or transport failure) from the rental API.

    ``kind`` is filled in by the client's response parser; callers match on
    it instead of searching the message.
    """

    def __init__(
        self,
        message: str,
        *,
        status: int = 0,
        body: Any = None,
        kind: ProviderErrorKind = ProviderErrorKind.UNKNOWN,
    ) -> None:
        self.status = status
        self.body = body
        self.kind = kind
        super().__init__(message)

    @property
    def is_capacity_exhausted(self) -> bool:
        return self.kind is ProviderErrorKind.CAPACITY


class CapacityExhaustedError(ProviderError):
    """Raised by ensure() once every recreate attempt hit capacity exhaustion."""

    def __init__(
        self,
        role: str,
        attempts: int,
        warnings: list[str],
        cause: ProviderError | None = None,
    ) -> None:
        self.role = role
        self.attempts = attempts
        self.warnings = list(warnings)
        detail = f": {cause}" if cause else ""
        super().__init__(
            f"No GPU capacity for {role} after {attempts} attempt(s){detail}",
            status=cause.status if cause else 0,
            body=cause.body if cause else None,
            kind=ProviderErrorKind.CAPACITY,
        )


# =============================================================================
# Downstream consumer
# =============================================================================


class ConsumerError(DreamPodsError):
    """HTTP failure talking to the downstream consumer service."""

    def __init__(self, message: str, *, status: int = 0, body: str = "") -> None:
        self.status = status
        self.body = body
        super().__init__(message)


class ConsumerUnreachable(ConsumerError):
    """The consumer refused the connection (service not running)."""

    def __init__(self, url: str) -> None:
        self.url = url
        super().__init__(f"Consumer not reachable at {url} - is the service running?")


__all__ = [
    "CapacityExhaustedError",
    "ConfigurationError",
    "ConsumerError",
    "ConsumerUnreachable",
    "DreamPodsError",
    "ProviderError",
    "ProviderErrorKind",
    "UnknownRoleError",
]
