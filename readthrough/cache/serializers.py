"""
Typed serialization strategies.

Backends only ever see bytes; a Serializer turns values into bytes on the
way in and back into typed values on the way out. A cache holds a default
serializer and each fetch() may override it for its own value type.
"""

import abc
import json
from typing import Any, Generic, Type, TypeVar

from pydantic import TypeAdapter, ValidationError

from .exceptions import SerializationError

T = TypeVar("T")


class Serializer(abc.ABC, Generic[T]):
    """Encode values to bytes and decode them back."""

    @abc.abstractmethod
    def dumps(self, value: T) -> bytes:
        pass

    @abc.abstractmethod
    def loads(self, data: bytes) -> T:
        pass


class JsonSerializer(Serializer[Any]):
    """
    Plain JSON encoding.

    Values JSON has no native type for (dates, decimals, models) raise
    SerializationError instead of being stringified, so a cache hit never
    returns a different type than the load did. Use PydanticSerializer
    for those.
    """

    def dumps(self, value: Any) -> bytes:
        try:
            return json.dumps(value, separators=(",", ":")).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise SerializationError(f"Cannot encode {type(value).__name__} as JSON: {e}") from e

    def loads(self, data: bytes) -> Any:
        try:
            return json.loads(data)
        except (UnicodeDecodeError, json.JSONDecodeError, TypeError) as e:
            raise SerializationError(f"Cached payload is not valid JSON: {e}") from e


class PydanticSerializer(Serializer[T]):
    """
    Serializer for a pydantic-validated type.

    Works for models as well as containers of them, e.g.
    ``PydanticSerializer(list[Cat])``.
    """

    def __init__(self, type_: Type[T]):
        self.type_ = type_
        self._adapter = TypeAdapter(type_)

    def dumps(self, value: T) -> bytes:
        try:
            return self._adapter.dump_json(value)
        except Exception as e:
            raise SerializationError(f"Cannot encode value as {self.type_!r}: {e}") from e

    def loads(self, data: bytes) -> T:
        try:
            return self._adapter.validate_json(data)
        except ValidationError as e:
            raise SerializationError(f"Cached payload does not match {self.type_!r}: {e}") from e


class BytesSerializer(Serializer[bytes]):
    """Identity serializer for callers that store pre-encoded bytes."""

    def dumps(self, value: bytes) -> bytes:
        if isinstance(value, str):
            return value.encode("utf-8")
        if not isinstance(value, (bytes, bytearray, memoryview)):
            raise SerializationError(f"BytesSerializer expects bytes, got {type(value).__name__}")
        return bytes(value)

    def loads(self, data: bytes) -> bytes:
        return data
