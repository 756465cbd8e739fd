"""
readthrough: a cache-aside layer for Valkey

Reads go to the cache first and fall back to a loader on a miss, with
one loader call per key no matter how many callers miss together.
Writes invalidate the affected keys right after they commit, and a TTL
bounds staleness for everything else.
"""

from .cache import (
    AsyncReadThroughCache,
    BackendUnavailable,
    FetchTimeout,
    LoaderFailed,
    ReadThroughCache,
)
from .config import CacheSettings, InvalidationPolicy, load_settings

__version__ = "0.1.0"

__all__ = [
    "ReadThroughCache",
    "AsyncReadThroughCache",
    "BackendUnavailable",
    "FetchTimeout",
    "LoaderFailed",
    "CacheSettings",
    "InvalidationPolicy",
    "load_settings",
]
