"""
Caching layer for the read-through cache.

This module contains the single-flight caches, backend interfaces and
stores, Valkey configuration, serializers and key/TTL utilities.
"""

from .aio import AsyncReadThroughCache
from .backend import (
    AsyncInMemoryBackend,
    AsyncKeyValueBackend,
    CacheEntry,
    InMemoryBackend,
    KeyValueBackend,
)
from .client import AsyncValkeyBackend, ValkeyBackend
from .config import ValkeyConfig
from .exceptions import (
    BackendUnavailable,
    CacheError,
    FetchTimeout,
    LoaderFailed,
    SerializationError,
    ValkeyConfigurationError,
)
from .read_through import ReadThroughCache
from .serializers import BytesSerializer, JsonSerializer, PydanticSerializer, Serializer
from .stats import CacheStats
from .utils import CacheKeyBuilder, TTLCalculator, normalize_ttl, validate_key

__all__ = [
    # Caches
    "ReadThroughCache",
    "AsyncReadThroughCache",
    "CacheStats",

    # Backends
    "KeyValueBackend",
    "AsyncKeyValueBackend",
    "CacheEntry",
    "InMemoryBackend",
    "AsyncInMemoryBackend",
    "ValkeyBackend",
    "AsyncValkeyBackend",
    "ValkeyConfig",

    # Errors
    "CacheError",
    "BackendUnavailable",
    "LoaderFailed",
    "FetchTimeout",
    "SerializationError",
    "ValkeyConfigurationError",

    # Serialization
    "Serializer",
    "JsonSerializer",
    "PydanticSerializer",
    "BytesSerializer",

    # Utilities
    "CacheKeyBuilder",
    "TTLCalculator",
    "normalize_ttl",
    "validate_key",
]
