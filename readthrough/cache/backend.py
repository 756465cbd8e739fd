"""
Key-value backend interfaces and in-process stores.

The read-through cache talks to its store only through get/set/delete on
opaque bytes. Valkey expires keys natively; the in-process stores here
simulate expiry by keeping an absolute deadline next to each value and
checking it on read.
"""

import abc
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


@dataclass(frozen=True)
class CacheEntry:
    """A stored payload and the monotonic-clock instant it stops being live."""

    value: bytes
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def remaining_ttl(self, now: float) -> float:
        return max(0.0, self.expires_at - now)


class KeyValueBackend(abc.ABC):
    """Blocking store consumed by ReadThroughCache."""

    @abc.abstractmethod
    def get(self, key: str) -> Optional[bytes]:
        """Return the live payload for key, or None when absent or expired."""

    @abc.abstractmethod
    def set(self, key: str, value: bytes, ttl: float) -> None:
        """Store value under key for ttl seconds."""

    @abc.abstractmethod
    def delete(self, key: str) -> None:
        """Remove key; a missing key is not an error."""

    def close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class AsyncKeyValueBackend(abc.ABC):
    """Awaitable store consumed by AsyncReadThroughCache."""

    @abc.abstractmethod
    async def get(self, key: str) -> Optional[bytes]:
        """Return the live payload for key, or None when absent or expired."""

    @abc.abstractmethod
    async def set(self, key: str, value: bytes, ttl: float) -> None:
        """Store value under key for ttl seconds."""

    @abc.abstractmethod
    async def delete(self, key: str) -> None:
        """Remove key; a missing key is not an error."""

    async def close(self) -> None:
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


class _EntryTable:
    """Dictionary of CacheEntry with expiry checked against an injected clock."""

    def __init__(self, clock: Clock):
        self.clock = clock
        self._entries: Dict[str, CacheEntry] = {}

    def get(self, key: str) -> Optional[bytes]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_expired(self.clock()):
            del self._entries[key]
            return None
        return entry.value

    def set(self, key: str, value: bytes, ttl: float) -> None:
        if ttl <= 0:
            self._entries.pop(key, None)
            return
        self._entries[key] = CacheEntry(value=bytes(value), expires_at=self.clock() + ttl)

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def ttl(self, key: str) -> Optional[float]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        now = self.clock()
        if entry.is_expired(now):
            del self._entries[key]
            return None
        return entry.remaining_ttl(now)

    def purge_expired(self) -> int:
        now = self.clock()
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class InMemoryBackend(KeyValueBackend):
    """
    Thread-safe in-process store with simulated expiry.

    Args:
        clock: Monotonic time source in seconds, injectable for tests
    """

    def __init__(self, clock: Clock = time.monotonic):
        self._table = _EntryTable(clock)
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            return self._table.get(key)

    def set(self, key: str, value: bytes, ttl: float) -> None:
        with self._lock:
            self._table.set(key, value, ttl)

    def delete(self, key: str) -> None:
        with self._lock:
            self._table.delete(key)

    def ttl(self, key: str) -> Optional[float]:
        """Remaining seconds for a live key, None when absent."""
        with self._lock:
            return self._table.ttl(key)

    def purge_expired(self) -> int:
        """Drop every expired entry; returns how many were removed."""
        with self._lock:
            removed = self._table.purge_expired()
        if removed:
            logger.debug(f"Purged {removed} expired entries")
        return removed

    def clear(self) -> None:
        with self._lock:
            self._table.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._table)


class AsyncInMemoryBackend(AsyncKeyValueBackend):
    """
    In-process store for a single event loop with simulated expiry.

    Operations never await, so each one runs atomically on the loop.
    """

    def __init__(self, clock: Clock = time.monotonic):
        self._table = _EntryTable(clock)

    async def get(self, key: str) -> Optional[bytes]:
        return self._table.get(key)

    async def set(self, key: str, value: bytes, ttl: float) -> None:
        self._table.set(key, value, ttl)

    async def delete(self, key: str) -> None:
        self._table.delete(key)

    async def ttl(self, key: str) -> Optional[float]:
        """Remaining seconds for a live key, None when absent."""
        return self._table.ttl(key)

    async def purge_expired(self) -> int:
        """Drop every expired entry; returns how many were removed."""
        return self._table.purge_expired()

    def clear(self) -> None:
        self._table.clear()

    def __len__(self) -> int:
        return len(self._table)
