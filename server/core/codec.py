"""Value codecs for persisted payloads.

The persist store only moves bytes; a codec turns caller values into bytes
and back into a requested type.
"""

from functools import lru_cache
from typing import Any, Protocol, Type, TypeVar

import orjson
from pydantic import BaseModel, TypeAdapter, ValidationError

from core.exceptions import SerializationError

T = TypeVar("T")


class Codec(Protocol):
    """Encode values to bytes and decode bytes into a requested type."""

    def encode(self, value: Any) -> bytes: ...

    def decode(self, data: bytes, as_type: Type[T]) -> T: ...


@lru_cache(maxsize=256)
def _adapter(as_type: Any) -> TypeAdapter:
    return TypeAdapter(as_type)


def _default(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    raise TypeError(f"Type is not JSON serializable: {type(value).__name__}")


class JSONCodec:
    """JSON codec: orjson for encoding, pydantic for typed decoding.

    Decoding is strict: a JSON string never becomes an int or a bool. It
    raises `pydantic.ValidationError` when the payload does not fit
    `as_type`; the store maps that to `InvalidConversionError`.
    """

    def encode(self, value: Any) -> bytes:
        try:
            return orjson.dumps(value, default=_default)
        except (orjson.JSONEncodeError, TypeError) as e:
            raise SerializationError(str(e)) from e

    def decode(self, data: bytes, as_type: Type[T]) -> T:
        return _adapter(as_type).validate_json(data, strict=True)


DECODE_ERRORS = (ValidationError, ValueError, TypeError)
