"""Encoding of JSON payloads as websocket text (JSON) or binary (compact CBOR)."""

from __future__ import annotations

import enum
import io
import json
import math
import datetime
from typing import Any, Union

import cbor2

Message = Union[str, bytes]


class StreamFormat(enum.Enum):
    JSON = "json"
    CBOR = "cbor"


_SHORT_KEYS = {
    "command": "cmd",
    "cmd": "cmd",
    "query": "q",
    "q": "q",
    "data": "d",
    "d": "d",
    "pattern": "p",
    "p": "p",
    "format": "f",
    "f": "f",
    "events": "ev",
    "ev": "ev",
    "metrics": "mt",
    "mt": "mt",
    "meta": "m",
    "source": "src",
    "src": "src",
}

_LONG_KEYS = {
    "d": "data",
    "p": "pattern",
    "f": "format",
    "ev": "events",
    "mt": "metrics",
    "m": "meta",
    "src": "source",
}


def shorten_key(key: str) -> str:
    return _SHORT_KEYS.get(key, key)


def expand_key(key: str) -> str:
    return _LONG_KEYS.get(key, key)


def json_to_cbor(value: Any) -> Any:
    """Convert a JSON value to its CBOR form, shortening object keys."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, (list, tuple)):
        return [json_to_cbor(item) for item in value]
    if isinstance(value, dict):
        return {shorten_key(str(key)): json_to_cbor(item) for key, item in value.items()}
    return None


def _debug_key(key: Any) -> str:
    if key is None:
        return "Null"
    if isinstance(key, bool):
        return f"Bool({'true' if key else 'false'})"
    if isinstance(key, int):
        return f"Integer({key})"
    if isinstance(key, float):
        return f"Float({key!r})"
    if isinstance(key, bytes):
        return f"Bytes({list(key)})"
    return repr(key)


def cbor_to_json(value: Any) -> Any:
    """Convert a decoded CBOR value to JSON, expanding short object keys."""
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, (bytes, bytearray)):
        return list(value)
    if isinstance(value, (list, tuple)):
        return [cbor_to_json(item) for item in value]
    if isinstance(value, dict):
        out: dict[str, Any] = {}
        for key, item in value.items():
            name = key if isinstance(key, str) else _debug_key(key)
            out[expand_key(name)] = cbor_to_json(item)
        return dict(sorted(out.items()))
    if isinstance(value, cbor2.CBORTag):
        return cbor_to_json(value.value)
    if isinstance(value, (datetime.datetime, datetime.date)):
        return value.isoformat()
    return None


def encode_message(value: Any, fmt: StreamFormat) -> Message:
    """Encode a JSON value as a text frame (JSON) or a binary frame (CBOR)."""
    if fmt is StreamFormat.JSON:
        return json.dumps(value, separators=(",", ":"), ensure_ascii=False, sort_keys=True, allow_nan=False)
    return cbor2.dumps(json_to_cbor(value))


def _loads_cbor(data: bytes) -> Any:
    try:
        with io.BytesIO(data) as fp:
            value = cbor2.CBORDecoder(fp).decode()
            trailing = fp.read(1)
    except (cbor2.CBORDecodeError, ValueError, TypeError) as exc:
        raise ValueError(f"invalid CBOR message: {exc}") from exc
    if trailing:
        raise ValueError("trailing data after CBOR message")
    return value


def decode_message(message: Any) -> tuple[Any, StreamFormat]:
    """Decode a websocket frame and report which format it was sent in."""
    if isinstance(message, str):
        return json.loads(message), StreamFormat.JSON
    if isinstance(message, (bytes, bytearray, memoryview)):
        return cbor_to_json(_loads_cbor(bytes(message))), StreamFormat.CBOR
    raise ValueError(f"unsupported websocket message: {message!r}")