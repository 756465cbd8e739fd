"""
Cache utilities for key naming conventions and TTL handling.

This module provides key validation, consistent key generation and
TTL normalization with optional jitter to spread expirations.
"""

import hashlib
import json
import random
from datetime import timedelta
from typing import Any, Dict, Optional, Union

TTL = Union[int, float, timedelta]


def validate_key(key: Any) -> str:
    """
    Check that a cache key is a non-empty string.

    Args:
        key: Candidate cache key

    Returns:
        str: The key, unchanged

    Raises:
        ValueError: If the key is empty or not a string
    """
    if not isinstance(key, str) or not key:
        raise ValueError(f"cache key must be a non-empty string, got {key!r}")
    return key


def normalize_ttl(ttl: Optional[TTL], default: float) -> float:
    """
    Convert a TTL given as seconds or timedelta to float seconds.

    Args:
        ttl: TTL in seconds, a timedelta, or None for the default
        default: Seconds to use when ttl is None

    Returns:
        float: TTL in seconds (0 disables caching for the call)

    Raises:
        ValueError: If the TTL is negative
    """
    if ttl is None:
        seconds = float(default)
    elif isinstance(ttl, timedelta):
        seconds = ttl.total_seconds()
    elif isinstance(ttl, bool) or not isinstance(ttl, (int, float)):
        raise ValueError(f"ttl must be seconds or a timedelta, got {ttl!r}")
    else:
        seconds = float(ttl)

    if seconds < 0:
        raise ValueError(f"ttl must be non-negative, got {seconds}")
    return seconds


class TTLCalculator:
    """
    TTL jitter for preventing expiration clustering.

    Keys written together with the same TTL would otherwise expire together
    and stampede the loader at the same instant.
    """

    @staticmethod
    def calculate_ttl_with_jitter(
        base_ttl: float,
        jitter_percent: float = 0.1,
        min_ttl: float = 1.0,
    ) -> float:
        """
        Calculate TTL with random jitter.

        Args:
            base_ttl: Base TTL in seconds
            jitter_percent: Jitter as fraction of base TTL (0.0 to 1.0)
            min_ttl: Floor for the jittered TTL

        Returns:
            float: TTL with jitter applied

        Example:
            calculate_ttl_with_jitter(3600, 0.1)  # 3240-3960 seconds
        """
        if jitter_percent <= 0 or base_ttl <= 0:
            return base_ttl

        jitter_range = base_ttl * jitter_percent
        jittered = base_ttl + random.uniform(-jitter_range, jitter_range)
        return max(jittered, min(min_ttl, base_ttl))

    @staticmethod
    def to_milliseconds(ttl_seconds: float) -> int:
        """Convert seconds to whole milliseconds, never below 1ms."""
        return max(1, int(round(ttl_seconds * 1000)))


class CacheKeyBuilder:
    """
    Builder for consistent, namespaced cache keys.
    """

    def __init__(self, prefix: str = ""):
        self.prefix = prefix

    def build_key(self, *parts: Any, **params: Any) -> str:
        """
        Build a cache key from parts and parameters.

        Args:
            *parts: Key parts joined with colons (None parts are skipped)
            **params: Extra parameters appended as sorted ``name=value`` parts

        Returns:
            str: Generated cache key

        Example:
            CacheKeyBuilder("shop").build_key("cats", 7, color="black")
            # Returns: "shop:cats:7:color=black"
        """
        key_parts = [self.prefix] if self.prefix else []
        key_parts.extend(str(part) for part in parts if part is not None)

        for name, value in sorted(params.items()):
            if value is not None:
                key_parts.append(f"{name}={value}")

        return validate_key(":".join(key_parts))

    def build_hash_key(self, name: str, data: Dict[str, Any]) -> str:
        """
        Build a key whose suffix is a hash of complex parameters.

        Example:
            build_hash_key("search", {"q": "cats", "page": 2})
            # Returns: "search:hash:1f0e3dad9990"
        """
        data_str = json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)
        data_hash = hashlib.sha256(data_str.encode()).hexdigest()[:12]
        return self.build_key(name, "hash", data_hash)
