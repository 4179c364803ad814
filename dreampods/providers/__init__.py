"""Remote pod providers."""

from .base import ResourceProvider
from .cached import CachedProvider

__all__ = ["CachedProvider", "ResourceProvider"]
