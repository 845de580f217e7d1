"""Wire value codecs.

Statement parameters are encoded to bytes before they are sent and hashed;
result documents come back as bytes and are decoded on iteration.
"""

from __future__ import annotations

import json
from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class ValueCodec(Protocol):
    """Converts between Python values and the ledger's wire format."""

    def encode(self, value: Any) -> bytes:
        """Encode a parameter value."""
        ...

    def decode(self, blob: bytes) -> Any:
        """Decode a result document."""
        ...


class JsonValueCodec:
    """UTF-8 JSON codec.

    Keys are sorted on encode so that equal values always produce equal bytes
    and therefore equal parameter digests.
    """

    def __init__(self, default: Any = None) -> None:
        self._default = default

    def encode(self, value: Any) -> bytes:
        return json.dumps(
            value, sort_keys=True, separators=(",", ":"), default=self._default
        ).encode("utf-8")

    def decode(self, blob: bytes) -> Any:
        return json.loads(blob.decode("utf-8"))


class BytesCodec:
    """Pass-through codec for callers that already hold encoded values."""

    def encode(self, value: Any) -> bytes:
        if not isinstance(value, (bytes, bytearray)):
            raise TypeError(f"BytesCodec can only encode bytes, got {type(value).__name__}")
        return bytes(value)

    def decode(self, blob: bytes) -> Any:
        return blob


__all__ = ["ValueCodec", "JsonValueCodec", "BytesCodec"]
