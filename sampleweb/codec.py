"""
JSON codec: Python values <-> UTF-8 JSON bytes.

Decoding can validate against a shape (a pydantic model, ``dict[str, str]``,
``list[int]``...). Shape validation is strict, so ``"1"`` never becomes ``1``.
"""
import json
from functools import lru_cache
from typing import Any, Dict, Optional, Union

import structlog
from pydantic import BaseModel, TypeAdapter, ValidationError

from sampleweb.errors import DecodingError, EncodingError

logger = structlog.get_logger(__name__)

Payload = Union[bytes, bytearray, str]


def _reject_constant(name: str):
    raise ValueError(f"{name} is not valid JSON")


def _default(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _check_keys(value: Any, active: set) -> None:
    # json.dumps turns int/float/bool/None keys into strings, which doesn't round-trip
    if not isinstance(value, (dict, list, tuple)):
        return
    if id(value) in active:
        raise ValueError("Circular reference detected")
    active.add(id(value))
    if isinstance(value, dict):
        for key in value:
            if not isinstance(key, str):
                raise TypeError(f"keys must be str, not {type(key).__name__}")
        children = value.values()
    else:
        children = value
    for child in children:
        _check_keys(child, active)
    active.discard(id(value))


def _as_text(payload: Payload) -> str:
    if isinstance(payload, str):
        return payload
    if not isinstance(payload, (bytes, bytearray, memoryview)):
        raise TypeError(f"Expected bytes or str, got {type(payload).__name__}")
    # strict UTF-8: json.loads would otherwise sniff UTF-16/32 from raw bytes
    return bytes(payload).decode('utf-8')


@lru_cache(maxsize=128)
def _adapter(shape: Any) -> TypeAdapter:
    return TypeAdapter(shape)


class JsonCodec:
    def __init__(self, sort_keys: bool = True, indent: Optional[int] = None, ensure_ascii: bool = False):
        self.sort_keys = sort_keys
        self.indent = indent
        self.ensure_ascii = ensure_ascii

    @classmethod
    def from_config(cls, codec_config: Dict[str, Any]) -> "JsonCodec":
        """Build a codec from the ``codec`` section of the configuration."""
        return cls(
            sort_keys=codec_config.get('sort_keys', True),
            indent=codec_config.get('indent'),
            ensure_ascii=codec_config.get('ensure_ascii', False),
        )

    def encode(self, value: Any) -> bytes:
        """Encode a value to JSON bytes.

        Raises:
            EncodingError: non-finite floats, cycles, unsupported types or keys.
        """
        try:
            _check_keys(value, set())
            text = json.dumps(
                value,
                default=_default,
                allow_nan=False,
                sort_keys=self.sort_keys,
                indent=self.indent,
                ensure_ascii=self.ensure_ascii,
                separators=None if self.indent is not None else (',', ':'),
            )
        except (TypeError, ValueError, RecursionError) as e:
            logger.warning("encode_failed", value_type=type(value).__name__, error=str(e))
            raise EncodingError(str(e)) from e
        return text.encode('utf-8')

    def decode(self, payload: Payload, shape: Any = None) -> Any:
        """Decode JSON bytes, optionally validating them against ``shape``.

        Raises:
            DecodingError: malformed, truncated or non-UTF-8 input, or data that
                doesn't fit the shape.
        """
        try:
            text = _as_text(payload)
            data = json.loads(text, parse_constant=_reject_constant)
        except (ValueError, TypeError, RecursionError) as e:
            # JSONDecodeError and UnicodeDecodeError are both ValueErrors
            logger.warning("decode_failed", stage="parse", error=str(e))
            raise DecodingError(f"Malformed JSON: {e}") from e

        if shape is None:
            return data

        try:
            return _adapter(shape).validate_json(text, strict=True)
        except ValidationError as e:
            logger.warning("decode_failed", stage="validate", shape=repr(shape), error_count=e.error_count())
            raise DecodingError(
                f"Payload does not match {getattr(shape, '__name__', repr(shape))}",
                errors=e.errors(include_url=False),
            ) from e


default_codec = JsonCodec()


def encode(value: Any) -> bytes:
    return default_codec.encode(value)


def decode(payload: Payload, shape: Any = None) -> Any:
    return default_codec.decode(payload, shape)
