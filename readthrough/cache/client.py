"""
Valkey backends with connection pooling and reconnection on startup.

Only an explicit connect() retries, with exponential backoff. A get/set/delete
issued while disconnected makes one connection attempt, and once connected
calls are never retried: a connection or timeout failure is translated to
BackendUnavailable and raised to the caller.
"""

import asyncio
import logging
import threading
import time
from typing import Any, Callable, Dict, Optional

import valkey
import valkey.asyncio as aiovalkey
from valkey.exceptions import ConnectionError as ValkeyConnectionError
from valkey.exceptions import TimeoutError as ValkeyTimeoutError

from .backend import AsyncKeyValueBackend, KeyValueBackend
from .config import ValkeyConfig
from .exceptions import BackendUnavailable
from .utils import TTLCalculator

logger = logging.getLogger(__name__)

_UNAVAILABLE = (ValkeyConnectionError, ValkeyTimeoutError, OSError)
_HEALTH_ERRORS = (BackendUnavailable,) + _UNAVAILABLE


class _ValkeyBackendBase:
    """Shared configuration, key namespacing and backoff schedule."""

    def __init__(
        self,
        config: Optional[ValkeyConfig] = None,
        client: Optional[Any] = None,
        namespace: str = "",
    ):
        """
        Args:
            config: ValkeyConfig instance, defaults to environment-based config
            client: Pre-built Valkey client; skips pool creation and connect retries
            namespace: Prefix joined to every key with a colon
        """
        self.config = config or ValkeyConfig.from_env()
        self.namespace = namespace
        self._client = client
        self._pool: Optional[Any] = None
        self._connection_attempts = 0
        self._reconnect_delay = 1.0
        self._max_reconnect_delay = 30.0

        logger.info(f"Initializing Valkey backend: {self.config}")

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}" if self.namespace else key

    def _backoff(self, attempt: int) -> float:
        return min(self._reconnect_delay * (2 ** (attempt - 1)), self._max_reconnect_delay)

    def _connect_failed(self, error: Exception, max_attempts: int) -> float:
        """Log a failed attempt; return the delay before retrying, or raise."""
        logger.warning(f"Valkey connection attempt {self._connection_attempts} failed: {error}")

        if self._connection_attempts >= max_attempts:
            error_msg = (
                f"Failed to connect to Valkey after {self._connection_attempts} attempts. "
                f"Last error: {error}"
            )
            logger.error(error_msg)
            raise BackendUnavailable("connect", message=error_msg) from error

        delay = self._backoff(self._connection_attempts)
        logger.info(f"Retrying connection in {delay:.1f} seconds...")
        return delay

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    def get_connection_info(self) -> Dict[str, Any]:
        return {
            "is_connected": self.is_connected,
            "config": str(self.config),
            "namespace": self.namespace,
            "connection_attempts": self._connection_attempts,
        }


class ValkeyBackend(_ValkeyBackendBase, KeyValueBackend):
    """
    Blocking Valkey store for ReadThroughCache.

    Expiry is native: values are written with ``SET key value PX ttl_ms``.
    """

    def __init__(
        self,
        config: Optional[ValkeyConfig] = None,
        client: Optional[valkey.Valkey] = None,
        namespace: str = "",
        sleep: Callable[[float], None] = time.sleep,
    ):
        super().__init__(config=config, client=client, namespace=namespace)
        self._sleep = sleep
        self._connect_lock = threading.Lock()

    def connect(self, max_attempts: Optional[int] = None) -> None:
        """
        Establish connection to Valkey server with retry logic.

        Call once at startup. Data operations issued before that make a single
        attempt and never back off.

        Args:
            max_attempts: Attempts before giving up, defaults to config.max_connection_attempts

        Raises:
            BackendUnavailable: If connection cannot be established after max attempts
        """
        max_attempts = max_attempts or self.config.max_connection_attempts
        with self._connect_lock:
            if self._client is not None:
                return

            self._connection_attempts = 0
            while True:
                self._connection_attempts += 1
                logger.info(f"Attempting Valkey connection (attempt {self._connection_attempts})")

                pool = valkey.ConnectionPool(**self.config.to_connection_pool_kwargs())
                client = valkey.Valkey(connection_pool=pool)
                try:
                    client.ping()
                except _UNAVAILABLE as e:
                    pool.disconnect()
                    self._sleep(self._connect_failed(e, max_attempts))
                    continue

                self._pool = pool
                self._client = client
                logger.info("Successfully connected to Valkey server")
                return

    def _ensure_client(self) -> valkey.Valkey:
        if self._client is None:
            self.connect(max_attempts=1)
        return self._client

    def get(self, key: str) -> Optional[bytes]:
        client = self._ensure_client()
        try:
            return client.get(self._key(key))
        except _UNAVAILABLE as e:
            raise BackendUnavailable("get", key, str(e)) from e

    def set(self, key: str, value: bytes, ttl: float) -> None:
        client = self._ensure_client()
        try:
            if ttl <= 0:
                client.delete(self._key(key))
            else:
                client.set(self._key(key), value, px=TTLCalculator.to_milliseconds(ttl))
        except _UNAVAILABLE as e:
            raise BackendUnavailable("set", key, str(e)) from e

    def delete(self, key: str) -> None:
        client = self._ensure_client()
        try:
            client.delete(self._key(key))
        except _UNAVAILABLE as e:
            raise BackendUnavailable("delete", key, str(e)) from e

    def ttl(self, key: str) -> Optional[float]:
        """Remaining seconds for a live key, None when absent or persistent."""
        client = self._ensure_client()
        try:
            remaining_ms = client.pttl(self._key(key))
        except _UNAVAILABLE as e:
            raise BackendUnavailable("ttl", key, str(e)) from e
        return remaining_ms / 1000.0 if remaining_ms >= 0 else None

    def ping(self) -> bool:
        """
        Perform health check on Valkey connection.

        Returns:
            bool: True if connection is healthy, False otherwise
        """
        try:
            return bool(self._ensure_client().ping())
        except _HEALTH_ERRORS as e:
            logger.warning(f"Health check failed: {e}")
            return False

    def close(self) -> None:
        """Gracefully disconnect from Valkey server."""
        if self._pool is not None:
            self._pool.disconnect()
            logger.info("Disconnected from Valkey server")
        self._pool = None
        self._client = None


class AsyncValkeyBackend(_ValkeyBackendBase, AsyncKeyValueBackend):
    """
    Valkey store for AsyncReadThroughCache built on ``valkey.asyncio``.
    """

    def __init__(
        self,
        config: Optional[ValkeyConfig] = None,
        client: Optional[aiovalkey.Valkey] = None,
        namespace: str = "",
    ):
        super().__init__(config=config, client=client, namespace=namespace)
        self._connect_lock = asyncio.Lock()

    async def connect(self, max_attempts: Optional[int] = None) -> None:
        """
        Establish connection to Valkey server with retry logic.

        See ValkeyBackend.connect; data operations make a single attempt.

        Raises:
            BackendUnavailable: If connection cannot be established after max attempts
        """
        max_attempts = max_attempts or self.config.max_connection_attempts
        async with self._connect_lock:
            if self._client is not None:
                return

            self._connection_attempts = 0
            while True:
                self._connection_attempts += 1
                logger.info(f"Attempting Valkey connection (attempt {self._connection_attempts})")

                pool = aiovalkey.ConnectionPool(**self.config.to_connection_pool_kwargs())
                client = aiovalkey.Valkey(connection_pool=pool)
                try:
                    await client.ping()
                except _UNAVAILABLE as e:
                    await pool.disconnect()
                    await asyncio.sleep(self._connect_failed(e, max_attempts))
                    continue

                self._pool = pool
                self._client = client
                logger.info("Successfully connected to Valkey server")
                return

    async def _ensure_client(self) -> aiovalkey.Valkey:
        if self._client is None:
            await self.connect(max_attempts=1)
        return self._client

    async def get(self, key: str) -> Optional[bytes]:
        client = await self._ensure_client()
        try:
            return await client.get(self._key(key))
        except _UNAVAILABLE as e:
            raise BackendUnavailable("get", key, str(e)) from e

    async def set(self, key: str, value: bytes, ttl: float) -> None:
        client = await self._ensure_client()
        try:
            if ttl <= 0:
                await client.delete(self._key(key))
            else:
                await client.set(self._key(key), value, px=TTLCalculator.to_milliseconds(ttl))
        except _UNAVAILABLE as e:
            raise BackendUnavailable("set", key, str(e)) from e

    async def delete(self, key: str) -> None:
        client = await self._ensure_client()
        try:
            await client.delete(self._key(key))
        except _UNAVAILABLE as e:
            raise BackendUnavailable("delete", key, str(e)) from e

    async def ping(self) -> bool:
        """Health check; False instead of raising when the server is unreachable."""
        try:
            client = await self._ensure_client()
            return bool(await client.ping())
        except _HEALTH_ERRORS as e:
            logger.warning(f"Health check failed: {e}")
            return False

    async def close(self) -> None:
        """Gracefully disconnect from Valkey server."""
        if self._pool is not None:
            await self._pool.disconnect()
            logger.info("Disconnected from Valkey server")
        self._pool = None
        self._client = None
