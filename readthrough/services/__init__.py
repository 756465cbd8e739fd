"""
Services built on the cache layer.
"""

from .invalidation import InvalidationRegistry

__all__ = ["InvalidationRegistry"]
