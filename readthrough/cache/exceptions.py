"""
Exceptions raised by the read-through cache layer.

Every failure surfaces to the immediate caller of ``fetch``/``invalidate``;
the cache never retries or swallows them.
"""

from typing import Optional


class CacheError(Exception):
    """Base class for all cache layer errors."""
    pass


class BackendUnavailable(CacheError):
    """The key-value store could not be reached for a get/set/delete."""

    def __init__(self, operation: str, key: Optional[str] = None, message: Optional[str] = None):
        self.operation = operation
        self.key = key
        detail = message or "backend unavailable"
        if key is not None:
            super().__init__(f"{operation} {key!r}: {detail}")
        else:
            super().__init__(f"{operation}: {detail}")


class LoaderFailed(CacheError):
    """
    The caller-supplied loader raised while populating a key.

    The loader's own exception is kept as ``original`` and chained as
    ``__cause__``. Every caller that waited on the same load sees the same
    ``original`` instance.
    """

    def __init__(self, key: str, original: BaseException):
        self.key = key
        self.original = original
        super().__init__(f"loader for {key!r} failed: {original!r}")

    def for_waiter(self) -> "LoaderFailed":
        """A fresh error for another caller of the same load, sharing ``original``."""
        error = LoaderFailed(self.key, self.original)
        error.__cause__ = self.original
        return error


class FetchTimeout(CacheError, TimeoutError):
    """A waiter's deadline elapsed before the owning load completed."""

    def __init__(self, key: str, timeout: float):
        self.key = key
        self.timeout = timeout
        super().__init__(f"timed out after {timeout:.3f}s waiting for load of {key!r}")


class SerializationError(CacheError):
    """A value could not be encoded to or decoded from cached bytes."""
    pass


class ValkeyConfigurationError(CacheError):
    """Invalid Valkey connection settings."""
    pass
