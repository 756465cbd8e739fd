"""
Asyncio read-through cache.

Same contract as ReadThroughCache for many tasks sharing one event loop.
Registering or clearing an in-flight marker never awaits, so those steps
are atomic on the loop without a lock. Waiters suspend on the owner's
future and are never woken by polling.
"""

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar, Union

from ..config import CacheSettings, InvalidationPolicy, load_settings
from .backend import AsyncKeyValueBackend
from .exceptions import BackendUnavailable, FetchTimeout, LoaderFailed, SerializationError
from .serializers import JsonSerializer, Serializer
from .stats import CacheStats
from .utils import TTL, TTLCalculator, normalize_ttl, validate_key

logger = logging.getLogger(__name__)

T = TypeVar("T")

AsyncLoader = Callable[[], Union[T, Awaitable[T]]]

_MISSING = object()


class _AsyncInFlightLoad:
    """A load in progress for one key; its future carries the outcome."""

    def __init__(self, key: str):
        self.key = key
        self.waiters = 0
        self.invalidated = False
        self.future: asyncio.Future = asyncio.get_running_loop().create_future()

    def outcome(self) -> Any:
        error = self.future.exception()
        if error is None:
            return self.future.result()
        if isinstance(error, LoaderFailed):
            raise error.for_waiter()
        raise error


class AsyncReadThroughCache:
    """
    Asyncio cache-aside layer in front of an AsyncKeyValueBackend.

    Loaders may be coroutine functions or plain callables.
    """

    def __init__(
        self,
        backend: AsyncKeyValueBackend,
        settings: Optional[CacheSettings] = None,
        serializer: Optional[Serializer] = None,
    ):
        self.backend = backend
        self.settings = settings or load_settings()
        self.serializer = serializer or JsonSerializer()
        self.stats = CacheStats()
        self._in_flight: Dict[str, _AsyncInFlightLoad] = {}

        logger.info(
            f"AsyncReadThroughCache initialized with {type(backend).__name__}, "
            f"invalidation policy: {self.settings.invalidation_policy.value}"
        )

    async def fetch(
        self,
        key: str,
        loader: AsyncLoader,
        ttl: Optional[TTL] = None,
        *,
        timeout: Optional[float] = None,
        serializer: Optional[Serializer] = None,
    ) -> Any:
        """
        Return the cached value for key, loading and storing it on a miss.

        See ReadThroughCache.fetch for arguments and errors. A waiter that is
        itself cancelled does not cancel the owner's load.
        """
        validate_key(key)
        ttl_seconds = normalize_ttl(ttl, self.settings.default_ttl)
        serializer = serializer or self.serializer

        if ttl_seconds == 0:
            self.stats.incr("bypass_count")
            return await self._invoke_loader(key, loader)

        value = await self._read(key, serializer)
        if value is not _MISSING:
            self.stats.incr("hit_count")
            logger.debug(f"Cache hit: {key}")
            return value

        self.stats.incr("miss_count")

        flight = self._in_flight.get(key)
        if flight is not None:
            flight.waiters += 1
            return await self._wait(flight, timeout)

        flight = _AsyncInFlightLoad(key)
        self._in_flight[key] = flight
        logger.debug(f"Cache miss: {key}, loading")
        return await self._load(flight, loader, ttl_seconds, serializer)

    async def invalidate(self, key: str) -> None:
        """
        Delete the stored entry for key; see ReadThroughCache.invalidate.
        """
        validate_key(key)

        if self.settings.invalidation_policy == InvalidationPolicy.SUPPRESS_STORE:
            flight = self._in_flight.pop(key, None)
            if flight is not None:
                flight.invalidated = True
                logger.debug(f"Detached in-flight load for invalidated key: {key}")

        await self._delete(key)
        self.stats.incr("invalidations")
        logger.debug(f"Invalidated: {key}")

    def in_flight(self, key: str) -> bool:
        """Whether a load for key is currently registered."""
        return key in self._in_flight

    def get_stats(self) -> Dict[str, Any]:
        stats = self.stats.to_dict()
        stats["in_flight"] = len(self._in_flight)
        stats["in_flight_waiters"] = sum(flight.waiters for flight in self._in_flight.values())
        stats["invalidation_policy"] = self.settings.invalidation_policy.value
        return stats

    async def close(self) -> None:
        """Close the backend."""
        await self.backend.close()
        logger.info("AsyncReadThroughCache closed")

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def _stored_key(self, key: str) -> str:
        prefix = self.settings.key_prefix
        return f"{prefix}:{key}" if prefix else key

    async def _read(self, key: str, serializer: Serializer) -> Any:
        try:
            payload = await self.backend.get(self._stored_key(key))
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
            await self._delete(key)
            return _MISSING

    async def _delete(self, key: str) -> None:
        try:
            await self.backend.delete(self._stored_key(key))
        except BackendUnavailable:
            self.stats.incr("backend_errors")
            raise

    async def _invoke_loader(self, key: str, loader: AsyncLoader) -> Any:
        self.stats.incr("load_count")
        try:
            result = loader()
            if inspect.isawaitable(result):
                result = await result
            return result
        except Exception as e:
            self.stats.incr("load_failures")
            logger.debug(f"Loader for {key!r} failed: {e!r}")
            raise LoaderFailed(key, e) from e

    async def _load(
        self,
        flight: _AsyncInFlightLoad,
        loader: AsyncLoader,
        ttl: float,
        serializer: Serializer,
    ) -> Any:
        key = flight.key
        try:
            # Another owner may have stored the value between our read and registering.
            value = await self._read(key, serializer)
            if value is _MISSING:
                value = await self._invoke_loader(key, loader)
                await self._store(flight, value, ttl, serializer)
        except BaseException as e:
            # Includes cancellation of the owner task: waiters must still be woken.
            self._release(flight)
            flight.future.set_exception(e if isinstance(e, Exception) else LoaderFailed(key, e))
            # Mark retrieved so waiters that timed out do not leave an unretrieved exception.
            flight.future.exception()
            raise

        self._release(flight)
        flight.future.set_result(value)
        return value

    async def _store(
        self, flight: _AsyncInFlightLoad, value: Any, ttl: float, serializer: Serializer
    ) -> None:
        key = flight.key
        payload = serializer.dumps(value)

        if flight.invalidated:
            self.stats.incr("suppressed_stores")
            logger.info(f"Load for {key!r} finished after invalidation, not storing")
            return

        ttl = TTLCalculator.calculate_ttl_with_jitter(
            ttl, self.settings.ttl_jitter, self.settings.min_jittered_ttl
        )
        try:
            await self.backend.set(self._stored_key(key), payload, ttl)
        except BackendUnavailable:
            self.stats.incr("backend_errors")
            raise

        # Invalidated while the write was in progress: remove what we just wrote.
        if flight.invalidated:
            self.stats.incr("suppressed_stores")
            logger.info(f"Load for {key!r} was invalidated during store, deleting")
            await self._delete(key)

    def _release(self, flight: _AsyncInFlightLoad) -> None:
        # An invalidation may already have detached this marker for a newer load.
        if self._in_flight.get(flight.key) is flight:
            del self._in_flight[flight.key]

    async def _wait(self, flight: _AsyncInFlightLoad, timeout: Optional[float]) -> Any:
        self.stats.incr("coalesced_waits")
        if timeout is None:
            timeout = self.settings.wait_timeout

        logger.debug(f"Waiting on in-flight load: {flight.key}")
        # asyncio.wait neither cancels the owner's future on timeout nor when this task is cancelled.
        done, _ = await asyncio.wait({flight.future}, timeout=timeout)
        if not done:
            self.stats.incr("wait_timeouts")
            raise FetchTimeout(flight.key, timeout)
        return flight.outcome()
