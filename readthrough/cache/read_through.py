"""
Read-through cache with single-flight loading and explicit invalidation.

``fetch`` prefers the backend; on a miss exactly one caller per key (the
owner) runs the loader while concurrent callers for the same key block
until the owner delivers its outcome. ``invalidate`` deletes the stored
entry for write paths that know the underlying data changed.

The coordination table is guarded by one lock that is held only to
register or clear an in-flight marker, never across the loader or
backend I/O.
"""

import logging
import threading
from typing import Any, Callable, Dict, Optional, TypeVar

from ..config import CacheSettings, InvalidationPolicy, load_settings
from .backend import KeyValueBackend
from .exceptions import BackendUnavailable, FetchTimeout, LoaderFailed, SerializationError
from .serializers import JsonSerializer, Serializer
from .stats import CacheStats
from .utils import TTL, TTLCalculator, normalize_ttl, validate_key

logger = logging.getLogger(__name__)

T = TypeVar("T")

_MISSING = object()


class _InFlightLoad:
    """A load in progress for one key and the callers waiting on it."""

    def __init__(self, key: str):
        self.key = key
        self.waiters = 0
        self.invalidated = False
        self._done = threading.Event()
        self._value: Any = None
        self._error: Optional[BaseException] = None

    def resolve(self, value: Any) -> None:
        self._value = value
        self._done.set()

    def fail(self, error: BaseException) -> None:
        self._error = error
        self._done.set()

    def wait(self, timeout: Optional[float]) -> bool:
        return self._done.wait(timeout)

    def outcome(self) -> Any:
        if self._error is None:
            return self._value
        if isinstance(self._error, LoaderFailed):
            raise self._error.for_waiter()
        raise self._error


class ReadThroughCache:
    """
    Thread-safe cache-aside layer in front of a KeyValueBackend.

    Features:
    - Single-flight loading: one loader call per key however many callers miss
    - TTL freshness, with optional jitter to spread expirations
    - Explicit invalidation for write paths, racing in-flight loads per policy
    - Per-call serializer override; the backend only sees bytes
    - settings.key_prefix namespaces every key sent to the backend
    """

    def __init__(
        self,
        backend: KeyValueBackend,
        settings: Optional[CacheSettings] = None,
        serializer: Optional[Serializer] = None,
    ):
        """
        Initialize the cache.

        Args:
            backend: Store holding serialized entries
            settings: CacheSettings, defaults to environment-based settings
            serializer: Default serializer for fetched values (JSON)
        """
        self.backend = backend
        self.settings = settings or load_settings()
        self.serializer = serializer or JsonSerializer()
        self.stats = CacheStats()
        self._in_flight: Dict[str, _InFlightLoad] = {}
        self._lock = threading.Lock()

        logger.info(
            f"ReadThroughCache initialized with {type(backend).__name__}, "
            f"invalidation policy: {self.settings.invalidation_policy.value}"
        )

    def fetch(
        self,
        key: str,
        loader: Callable[[], T],
        ttl: Optional[TTL] = None,
        *,
        timeout: Optional[float] = None,
        serializer: Optional[Serializer] = None,
    ) -> T:
        """
        Return the cached value for key, loading and storing it on a miss.

        Args:
            key: Non-empty cache key
            loader: Zero-argument callable producing the value from the source of truth
            ttl: Seconds or timedelta to keep the loaded value; 0 bypasses the cache
            timeout: Seconds to wait on another caller's in-flight load
            serializer: Overrides the cache's default serializer for this value

        Returns:
            The cached value, or the freshly loaded one

        Raises:
            ValueError: If the key is empty or the ttl negative
            LoaderFailed: If the loader raised (for the owner and every waiter)
            BackendUnavailable: If the store could not be reached
            FetchTimeout: If the wait for another caller's load exceeded timeout
            SerializationError: If the loaded value cannot be encoded; nothing is stored
        """
        validate_key(key)
        ttl_seconds = normalize_ttl(ttl, self.settings.default_ttl)
        serializer = serializer or self.serializer

        if ttl_seconds == 0:
            self.stats.incr("bypass_count")
            return self._invoke_loader(key, loader)

        value = self._read(key, serializer)
        if value is not _MISSING:
            self.stats.incr("hit_count")
            logger.debug(f"Cache hit: {key}")
            return value

        self.stats.incr("miss_count")

        with self._lock:
            flight = self._in_flight.get(key)
            is_owner = flight is None
            if is_owner:
                flight = _InFlightLoad(key)
                self._in_flight[key] = flight
            else:
                flight.waiters += 1

        if not is_owner:
            return self._wait(flight, timeout)

        logger.debug(f"Cache miss: {key}, loading")
        return self._load(flight, loader, ttl_seconds, serializer)

    def invalidate(self, key: str) -> None:
        """
        Delete the stored entry for key.

        Idempotent: invalidating a missing key is a no-op. Never blocks on an
        in-flight load. Under ``InvalidationPolicy.SUPPRESS_STORE`` a load
        already running for key is detached: its waiters still receive its
        value, but it stores nothing, and the next fetch starts a new load.

        Raises:
            ValueError: If the key is empty
            BackendUnavailable: If the store could not be reached
        """
        validate_key(key)

        if self.settings.invalidation_policy == InvalidationPolicy.SUPPRESS_STORE:
            with self._lock:
                flight = self._in_flight.pop(key, None)
                if flight is not None:
                    flight.invalidated = True
            if flight is not None:
                logger.debug(f"Detached in-flight load for invalidated key: {key}")

        self._delete(key)
        self.stats.incr("invalidations")
        logger.debug(f"Invalidated: {key}")

    def in_flight(self, key: str) -> bool:
        """Whether a load for key is currently registered."""
        with self._lock:
            return key in self._in_flight

    def get_stats(self) -> Dict[str, Any]:
        """
        Get cache statistics.

        Returns:
            Dict containing operation counters and the hit ratio
        """
        stats = self.stats.to_dict()
        with self._lock:
            stats["in_flight"] = len(self._in_flight)
            stats["in_flight_waiters"] = sum(flight.waiters for flight in self._in_flight.values())
        stats["invalidation_policy"] = self.settings.invalidation_policy.value
        return stats

    def close(self) -> None:
        """Close the backend."""
        self.backend.close()
        logger.info("ReadThroughCache closed")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def _stored_key(self, key: str) -> str:
        prefix = self.settings.key_prefix
        return f"{prefix}:{key}" if prefix else key

    def _read(self, key: str, serializer: Serializer) -> Any:
        try:
            payload = self.backend.get(self._stored_key(key))
        except BackendUnavailable:
            self.stats.incr("backend_errors")
            raise

        if payload is None:
            return _MISSING

        try:
            return serializer.loads(payload)
        except SerializationError as e:
            logger.warning(f"Discarding corrupt cache entry {key!r}: {e}")
            self.stats.incr("corrupt_entries")
            self._delete(key)
            return _MISSING

    def _delete(self, key: str) -> None:
        try:
            self.backend.delete(self._stored_key(key))
        except BackendUnavailable:
            self.stats.incr("backend_errors")
            raise

    def _invoke_loader(self, key: str, loader: Callable[[], T]) -> T:
        self.stats.incr("load_count")
        try:
            return loader()
        except Exception as e:
            self.stats.incr("load_failures")
            logger.debug(f"Loader for {key!r} failed: {e!r}")
            raise LoaderFailed(key, e) from e

    def _load(
        self,
        flight: _InFlightLoad,
        loader: Callable[[], T],
        ttl: float,
        serializer: Serializer,
    ) -> T:
        key = flight.key
        try:
            # Another owner may have stored the value between our read and registering.
            value = self._read(key, serializer)
            if value is _MISSING:
                value = self._invoke_loader(key, loader)
                self._store(flight, value, ttl, serializer)
        except BaseException as e:
            self._release(flight)
            flight.fail(e if isinstance(e, Exception) else LoaderFailed(key, e))
            raise

        self._release(flight)
        flight.resolve(value)
        return value

    def _store(self, flight: _InFlightLoad, value: Any, ttl: float, serializer: Serializer) -> None:
        key = flight.key
        payload = serializer.dumps(value)

        if self._was_invalidated(flight):
            self.stats.incr("suppressed_stores")
            logger.info(f"Load for {key!r} finished after invalidation, not storing")
            return

        ttl = TTLCalculator.calculate_ttl_with_jitter(
            ttl, self.settings.ttl_jitter, self.settings.min_jittered_ttl
        )
        try:
            self.backend.set(self._stored_key(key), payload, ttl)
        except BackendUnavailable:
            self.stats.incr("backend_errors")
            raise

        # Invalidated while the write was in progress: remove what we just wrote.
        if self._was_invalidated(flight):
            self.stats.incr("suppressed_stores")
            logger.info(f"Load for {key!r} was invalidated during store, deleting")
            self._delete(key)

    def _was_invalidated(self, flight: _InFlightLoad) -> bool:
        with self._lock:
            return flight.invalidated

    def _release(self, flight: _InFlightLoad) -> None:
        with self._lock:
            # An invalidation may already have detached this marker for a newer load.
            if self._in_flight.get(flight.key) is flight:
                del self._in_flight[flight.key]

    def _wait(self, flight: _InFlightLoad, timeout: Optional[float]) -> Any:
        self.stats.incr("coalesced_waits")
        if timeout is None:
            timeout = self.settings.wait_timeout

        logger.debug(f"Waiting on in-flight load: {flight.key}")
        if not flight.wait(timeout):
            self.stats.incr("wait_timeouts")
            raise FetchTimeout(flight.key, timeout)
        return flight.outcome()
