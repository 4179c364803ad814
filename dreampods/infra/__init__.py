"""Internal machinery: HTTP, retry, caching, polling."""

from .cache import CacheEntry, TtlCache, cache_lookup, cache_store
from .http import BasicAuth, BearerAuth, HttpClient, HttpConnectError, HttpError
from .retry import on_status_code, retry
from .wait import wait_for_ready

__all__ = [
    "BasicAuth",
    "BearerAuth",
    "CacheEntry",
    "HttpClient",
    "HttpConnectError",
    "HttpError",
    "TtlCache",
    "cache_lookup",
    "cache_store",
    "on_status_code",
    "retry",
    "wait_for_ready",
]
