"""
Valkey connection settings for the cache backends.

Values come from ``VALKEY_*`` environment variables (a ``.env`` file is
loaded on import). Responses are never decoded: the backends store and
return opaque bytes.
"""

import os
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from dotenv import load_dotenv

from .exceptions import ValkeyConfigurationError

load_dotenv()

logger = logging.getLogger(__name__)


def _parse_bool(raw: str) -> bool:
    return raw.strip().lower() in ("true", "1", "yes", "on")


# field name -> parser for its VALKEY_<FIELD> variable
_ENV_PARSERS: Dict[str, Callable[[str], Any]] = {
    "host": str,
    "port": int,
    "password": lambda raw: raw or None,
    "database": int,
    "max_connections": int,
    "socket_timeout": float,
    "socket_connect_timeout": float,
    "retry_on_timeout": _parse_bool,
    "health_check_interval": int,
    "max_connection_attempts": int,
}


@dataclass
class ValkeyConfig:
    """
    Where and how to reach the Valkey server.

    ``max_connection_attempts`` bounds the startup connect loop; commands
    issued after connecting are never retried.
    """

    host: str = "localhost"
    port: int = 6379
    password: Optional[str] = None
    database: int = 0
    max_connections: int = 10
    socket_timeout: float = 5.0
    socket_connect_timeout: float = 5.0
    retry_on_timeout: bool = False
    health_check_interval: int = 30
    max_connection_attempts: int = 5

    def __post_init__(self) -> None:
        if not self.host:
            raise ValkeyConfigurationError("VALKEY_HOST is required")
        if not 1 <= self.port <= 65535:
            raise ValkeyConfigurationError(f"Invalid Valkey port: {self.port}")
        if self.database < 0:
            raise ValkeyConfigurationError(f"Invalid Valkey database: {self.database}")
        if self.max_connections < 1:
            raise ValkeyConfigurationError("max_connections must be at least 1")
        if self.max_connection_attempts < 1:
            raise ValkeyConfigurationError("max_connection_attempts must be at least 1")

    @classmethod
    def from_env(cls) -> "ValkeyConfig":
        """
        Build a config from ``VALKEY_*`` variables; unset ones keep their defaults.

        Raises:
            ValkeyConfigurationError: If a variable cannot be parsed or is out of range
        """
        values: Dict[str, Any] = {}
        for name, parse in _ENV_PARSERS.items():
            raw = os.getenv(f"VALKEY_{name.upper()}")
            if raw is None:
                continue
            try:
                values[name] = parse(raw)
            except ValueError as e:
                raise ValkeyConfigurationError(f"Invalid VALKEY_{name.upper()}={raw!r}: {e}") from e

        config = cls(**values)
        logger.debug(f"Loaded {config} from environment")
        return config

    def to_connection_kwargs(self) -> Dict[str, Any]:
        """
        Keyword arguments for a single Valkey connection.

        Returns:
            Dict[str, Any]: host, port, db, timeouts and health checks; password only when set
        """
        kwargs: Dict[str, Any] = {
            "host": self.host,
            "port": self.port,
            "db": self.database,
            "socket_timeout": self.socket_timeout,
            "socket_connect_timeout": self.socket_connect_timeout,
            "retry_on_timeout": self.retry_on_timeout,
            "health_check_interval": self.health_check_interval,
            "decode_responses": False,
        }
        if self.password:
            kwargs["password"] = self.password
        return kwargs

    def to_connection_pool_kwargs(self) -> Dict[str, Any]:
        """Connection kwargs plus the pool size."""
        return {**self.to_connection_kwargs(), "max_connections": self.max_connections}

    def __str__(self) -> str:
        # Never render the password itself.
        masked = "***" if self.password else None
        return f"ValkeyConfig({self.host}:{self.port}/{self.database}, password={masked})"
