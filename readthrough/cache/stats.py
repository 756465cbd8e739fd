"""
Cache operation statistics shared by the sync and asyncio caches.
"""

import threading
from dataclasses import dataclass, field, fields
from datetime import datetime
from typing import Any, Dict


@dataclass
class CacheStats:
    """Counters for read-through cache operations."""

    hit_count: int = 0
    miss_count: int = 0
    load_count: int = 0
    load_failures: int = 0
    coalesced_waits: int = 0
    wait_timeouts: int = 0
    invalidations: int = 0
    suppressed_stores: int = 0
    bypass_count: int = 0
    corrupt_entries: int = 0
    backend_errors: int = 0

    start_time: datetime = field(default_factory=datetime.now)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def incr(self, name: str, amount: int = 1) -> None:
        """Atomically bump one counter."""
        with self._lock:
            setattr(self, name, getattr(self, name) + amount)

    @property
    def hit_ratio(self) -> float:
        """Calculate cache hit ratio."""
        total_reads = self.hit_count + self.miss_count
        return self.hit_count / total_reads if total_reads > 0 else 0.0

    @property
    def uptime_seconds(self) -> float:
        """Calculate uptime in seconds."""
        return (datetime.now() - self.start_time).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        """Convert stats to dictionary."""
        with self._lock:
            counters = {
                f.name: getattr(self, f.name)
                for f in fields(self)
                if f.type is int or f.type == "int"
            }
        counters["hit_ratio"] = self.hit_ratio
        counters["uptime_seconds"] = self.uptime_seconds
        return counters
