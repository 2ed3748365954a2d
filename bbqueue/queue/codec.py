"""Value codecs (port) used to turn Python values into Redis list elements.

Encoding must be deterministic: ``remove_all`` matches elements by their
encoded bytes.
"""

from __future__ import annotations

import json
from typing import Any, Protocol


class Codec(Protocol):
    """Port: converts values to and from the bytes stored in Redis."""

    def encode(self, value: Any) -> bytes: ...

    def decode(self, data: bytes) -> Any: ...


class JsonCodec:
    """Compact JSON with sorted keys."""

    def encode(self, value: Any) -> bytes:
        return json.dumps(value, separators=(",", ":"), sort_keys=True).encode("utf-8")

    def decode(self, data: bytes) -> Any:
        return json.loads(data)


class StringCodec:
    """UTF-8 strings stored as-is."""

    def encode(self, value: Any) -> bytes:
        if isinstance(value, bytes):
            return value
        return str(value).encode("utf-8")

    def decode(self, data: bytes) -> Any:
        if isinstance(data, str):
            return data
        return data.decode("utf-8")


CODECS: dict[str, type] = {
    "json": JsonCodec,
    "str": StringCodec,
}


def get_codec(name: str) -> Codec:
    try:
        return CODECS[name]()
    except KeyError:
        raise ValueError(f"Unknown codec {name!r}, expected one of {sorted(CODECS)}") from None
