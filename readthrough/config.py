"""
Environment configuration loader with validation for the read-through cache.
"""

import os
from enum import Enum
from typing import Optional, Dict, Any

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, field_validator


class InvalidationPolicy(str, Enum):
    """What happens to an in-flight load when its key is invalidated."""

    # The invalidated load delivers to its waiters but never stores.
    SUPPRESS_STORE = "suppress_store"
    # The in-flight load stores its result when it completes.
    LAST_WRITER_WINS = "last_writer_wins"


class CacheSettings(BaseModel):
    """Configuration model for the cache layer with validation."""

    model_config = ConfigDict(frozen=True)

    default_ttl: float = Field(
        default=3600.0, ge=0, description="TTL in seconds used when fetch() gets none"
    )
    wait_timeout: Optional[float] = Field(
        default=None, gt=0, description="Default waiter deadline in seconds (None waits forever)"
    )
    ttl_jitter: float = Field(
        default=0.0, ge=0.0, le=1.0, description="Random TTL spread as a fraction of the TTL"
    )
    min_jittered_ttl: float = Field(
        default=1.0, gt=0, description="Floor in seconds for a jittered TTL"
    )
    invalidation_policy: InvalidationPolicy = Field(
        default=InvalidationPolicy.SUPPRESS_STORE,
        description="Resolution of invalidate() racing an in-flight load",
    )
    key_prefix: str = Field(default="", description="Namespace prepended to backend keys")
    log_level: str = Field(default="INFO", description="Logging level")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is one of the standard levels."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of: {valid_levels}")
        return v.upper()


def load_settings(env_file: Optional[str] = None) -> CacheSettings:
    """
    Load cache settings from environment variables and .env file.

    Args:
        env_file: Optional path to .env file. If None, looks for .env in current directory.

    Returns:
        CacheSettings: Validated settings object

    Raises:
        ValueError: If a setting is missing or invalid
    """
    if env_file is None:
        env_file = ".env"

    if os.path.exists(env_file):
        load_dotenv(env_file)

    wait_timeout = os.getenv("READTHROUGH_WAIT_TIMEOUT")

    try:
        settings_data: Dict[str, Any] = {
            "default_ttl": float(os.getenv("READTHROUGH_DEFAULT_TTL", "3600")),
            "wait_timeout": float(wait_timeout) if wait_timeout else None,
            "ttl_jitter": float(os.getenv("READTHROUGH_TTL_JITTER", "0")),
            "min_jittered_ttl": float(os.getenv("READTHROUGH_MIN_JITTERED_TTL", "1")),
            "invalidation_policy": os.getenv(
                "READTHROUGH_INVALIDATION_POLICY", InvalidationPolicy.SUPPRESS_STORE.value
            ).lower(),
            "key_prefix": os.getenv("READTHROUGH_KEY_PREFIX", ""),
            "log_level": os.getenv("READTHROUGH_LOG_LEVEL", "INFO"),
        }
        return CacheSettings(**settings_data)
    except Exception as e:
        raise ValueError(f"Configuration validation failed: {e}") from e
