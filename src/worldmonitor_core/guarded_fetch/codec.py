"""Serialization contract for the persistent cache tier."""

from typing import Any, Generic, Protocol, TypeVar

from pydantic import BaseModel, ValidationError

from worldmonitor_core.guarded_fetch.exceptions import CacheDecodeError
from worldmonitor_core.guarded_fetch.state import CacheEntry

T = TypeVar("T")


class CacheCodec(Protocol[T]):
    """Encode cache entries to bytes and back."""

    def encode(self, entry: CacheEntry[T]) -> bytes:
        """Serialize one cache entry."""

    def decode(self, key: str, payload: bytes) -> CacheEntry[T]:
        """Deserialize one cache entry, raising ``CacheDecodeError`` if invalid."""


class _PersistedEntry(BaseModel, Generic[T]):
    value: T
    stored_at_ms: float


class PydanticCacheCodec(Generic[T]):
    """JSON codec validating cached values against a pydantic-compatible type.

    ``value_type`` may be anything pydantic can validate: models, dataclasses,
    ``TypedDict`` or builtin containers such as ``list[dict[str, float]]``.
    """

    def __init__(self, value_type: Any) -> None:
        self.value_type = value_type
        self._model: type[_PersistedEntry[Any]] = _PersistedEntry[value_type]

    def encode(self, entry: CacheEntry[T]) -> bytes:
        document = self._model(value=entry.value, stored_at_ms=entry.stored_at_ms)
        return document.model_dump_json().encode("utf-8")

    def decode(self, key: str, payload: bytes) -> CacheEntry[T]:
        try:
            document = self._model.model_validate_json(payload)
        except ValidationError as exc:
            reason = f"{exc.error_count()} validation errors"
            raise CacheDecodeError(key, reason) from exc
        return CacheEntry(value=document.value, stored_at_ms=document.stored_at_ms)
