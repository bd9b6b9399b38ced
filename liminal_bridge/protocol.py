"""Wire protocol between a host and the bridge: config, pushes, events and packages."""

from __future__ import annotations

import enum
import io
import json
import math
import re
import struct
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Union

import cbor2

U16_MAX = (1 << 16) - 1
U32_MAX = (1 << 32) - 1

EventId = Union[int, str]


class ProtocolError(ValueError):
    """Raised when a protocol message cannot be decoded or is malformed."""


class ImpulseKind(enum.Enum):
    AFFECT = "affect"
    QUERY = "query"
    WRITE = "write"


class Hint(enum.Enum):
    SLOW_TICK = "slow_tick"
    FAST_TICK = "fast_tick"
    TRIM_FIELD = "trim_field"
    WAKE_SEEDS = "wake_seeds"


@dataclass
class Impulse:
    """An impulse as the field engine understands it."""

    kind: ImpulseKind
    pattern: str
    strength: float
    ttl_ms: int
    tags: list[str] = field(default_factory=list)


def _loads_cbor(data: bytes) -> Any:
    """Decode exactly one CBOR item; trailing bytes are an error."""
    try:
        with io.BytesIO(bytes(data)) as fp:
            value = cbor2.CBORDecoder(fp).decode()
            trailing = fp.read(1)
    except (cbor2.CBORDecodeError, ValueError, TypeError) as exc:
        raise ProtocolError(f"invalid CBOR: {exc}") from exc
    if trailing:
        raise ProtocolError("trailing data after CBOR item")
    return value


def _require_mapping(value: Any, what: str) -> Mapping:
    if not isinstance(value, Mapping):
        raise ProtocolError(f"{what} must be a map")
    return value


def _require_uint(value: Any, limit: int, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= limit:
        raise ProtocolError(f"{name} must be an integer in 0..={limit}")
    return value


def _require_number(value: Any, name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ProtocolError(f"{name} must be a number")
    return float(value)


def _require_str(value: Any, name: str) -> str:
    if not isinstance(value, str):
        raise ProtocolError(f"{name} must be a string")
    return value


def _optional_uint(data: Mapping, key: str, limit: int) -> Optional[int]:
    value = data.get(key)
    return None if value is None else _require_uint(value, limit, key)


def _require_key(data: Mapping, key: str) -> Any:
    if key not in data:
        raise ProtocolError(f"missing field `{key}`")
    return data[key]


@dataclass
class BridgeConfig:
    tick_ms: int
    store_path: Optional[str] = None
    snap_interval: Optional[int] = None
    snap_maxwal: Optional[int] = None
    ws_port: Optional[int] = None
    ws_format: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"tick_ms": self.tick_ms}
        for key in ("store_path", "snap_interval", "snap_maxwal", "ws_port", "ws_format"):
            value = getattr(self, key)
            if value is not None:
                out[key] = value
        return out

    def to_cbor(self) -> bytes:
        return cbor2.dumps(self.to_dict())

    @classmethod
    def from_cbor(cls, data: bytes) -> "BridgeConfig":
        raw = _require_mapping(_loads_cbor(data), "bridge config")
        store_path = raw.get("store_path")
        ws_format = raw.get("ws_format")
        return cls(
            tick_ms=_require_uint(_require_key(raw, "tick_ms"), U32_MAX, "tick_ms"),
            store_path=None if store_path is None else _require_str(store_path, "store_path"),
            snap_interval=_optional_uint(raw, "snap_interval", U32_MAX),
            snap_maxwal=_optional_uint(raw, "snap_maxwal", U32_MAX),
            ws_port=_optional_uint(raw, "ws_port", U16_MAX),
            ws_format=None if ws_format is None else _require_str(ws_format, "ws_format"),
        )


_KIND_BY_CODE = {0: ImpulseKind.AFFECT, 1: ImpulseKind.QUERY, 2: ImpulseKind.WRITE}


@dataclass
class ProtocolImpulse:
    kind: int
    pattern: str
    strength: float
    ttl_ms: int
    tags: list[str] = field(default_factory=list)

    def to_core(self) -> Impulse:
        return Impulse(
            kind=_KIND_BY_CODE.get(self.kind, ImpulseKind.QUERY),
            pattern=self.pattern,
            strength=self.strength,
            ttl_ms=self.ttl_ms,
            tags=list(self.tags),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "k": self.kind,
            "p": self.pattern,
            "s": self.strength,
            "t": self.ttl_ms,
            "tg": list(self.tags),
        }

    @classmethod
    def from_dict(cls, data: Mapping) -> "ProtocolImpulse":
        data = _require_mapping(data, "impulse")
        tags = data.get("tg", [])
        if not isinstance(tags, list):
            raise ProtocolError("tg must be a list of strings")
        return cls(
            kind=_require_uint(_require_key(data, "k"), 255, "k"),
            pattern=_require_str(_require_key(data, "p"), "p"),
            strength=_require_number(_require_key(data, "s"), "s"),
            ttl_ms=_require_uint(_require_key(data, "t"), U32_MAX, "t"),
            tags=[_require_str(tag, "tg") for tag in tags],
        )


# Command name -> (attribute carrying its payload, key on the wire).
_COMMAND_PAYLOAD: dict[str, Optional[tuple[str, str]]] = {
    "trs_set": ("cfg", "cfg"),
    "trs_target": ("value", "value"),
    "lql": ("query", "q"),
    "dream.now": None,
    "dream.set": ("cfg", "cfg"),
    "dream.get": None,
    "sync.set": ("cfg", "cfg"),
    "sync.get": None,
    "sync.now": None,
}


@dataclass
class ProtocolCommand:
    """A command tagged by its `cmd` name; only the payload it needs is set."""

    cmd: str
    cfg: Optional[dict[str, Any]] = None
    value: Optional[float] = None
    query: Optional[str] = None

    def __post_init__(self) -> None:
        if self.cmd not in _COMMAND_PAYLOAD:
            raise ProtocolError(f"unknown command: {self.cmd!r}")
        payload = _COMMAND_PAYLOAD[self.cmd]
        if payload is not None and getattr(self, payload[0]) is None:
            raise ProtocolError(f"command {self.cmd!r} requires `{payload[1]}`")

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"cmd": self.cmd}
        payload = _COMMAND_PAYLOAD[self.cmd]
        if payload is not None:
            attr, key = payload
            out[key] = getattr(self, attr)
        return out

    @classmethod
    def from_dict(cls, data: Mapping) -> "ProtocolCommand":
        data = _require_mapping(data, "command")
        cmd = _require_str(_require_key(data, "cmd"), "cmd")
        if cmd not in _COMMAND_PAYLOAD:
            raise ProtocolError(f"unknown command: {cmd!r}")
        payload = _COMMAND_PAYLOAD[cmd]
        if payload is None:
            return cls(cmd=cmd)
        attr, key = payload
        raw = _require_key(data, key)
        if attr == "cfg":
            return cls(cmd=cmd, cfg=dict(_require_mapping(raw, key)))
        if attr == "value":
            return cls(cmd=cmd, value=_require_number(raw, key))
        return cls(cmd=cmd, query=_require_str(raw, key))


ProtocolPush = Union[ProtocolImpulse, ProtocolCommand]


def decode_push(data: bytes) -> ProtocolPush:
    """Decode a CBOR push: an impulse if it reads as one, otherwise a command."""
    raw = _loads_cbor(data)
    try:
        return ProtocolImpulse.from_dict(raw)
    except ProtocolError:
        pass
    try:
        return ProtocolCommand.from_dict(raw)
    except ProtocolError as exc:
        raise ProtocolError("message is neither an impulse nor a command") from exc


def encode_push(message: ProtocolPush) -> bytes:
    return cbor2.dumps(message.to_dict())


def _round_half_away(value: float) -> float:
    return math.floor(value + 0.5) if value >= 0 else math.ceil(value - 0.5)


@dataclass
class ProtocolMetrics:
    cells: int
    sleeping: float
    avg_met: float
    avg_latency: int

    @classmethod
    def from_core(cls, metrics: Any) -> "ProtocolMetrics":
        """Build from an object with cells, sleeping_pct, avg_metabolism, avg_latency_ms."""
        latency = float(metrics.avg_latency_ms)
        if math.isnan(latency):
            avg_latency = 0
        else:
            avg_latency = int(min(max(_round_half_away(latency), 0.0), float(U32_MAX)))
        return cls(
            cells=min(int(metrics.cells), U32_MAX),
            sleeping=float(metrics.sleeping_pct),
            avg_met=float(metrics.avg_metabolism),
            avg_latency=avg_latency,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "cells": self.cells,
            "sleeping": self.sleeping,
            "avgMet": self.avg_met,
            "avgLat": self.avg_latency,
        }

    @classmethod
    def from_dict(cls, data: Mapping) -> "ProtocolMetrics":
        data = _require_mapping(data, "metrics")
        return cls(
            cells=_require_uint(_require_key(data, "cells"), U32_MAX, "cells"),
            sleeping=_require_number(_require_key(data, "sleeping"), "sleeping"),
            avg_met=_require_number(_require_key(data, "avgMet"), "avgMet"),
            avg_latency=_require_uint(_require_key(data, "avgLat"), U32_MAX, "avgLat"),
        )


@dataclass
class ProtocolEvent:
    ev: str
    id: EventId
    dt: int
    meta: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ev": self.ev,
            "id": self.id,
            "dt": self.dt,
            "meta": dict(sorted(self.meta.items())),
        }

    @classmethod
    def from_dict(cls, data: Mapping) -> "ProtocolEvent":
        data = _require_mapping(data, "event")
        raw_id = _require_key(data, "id")
        if isinstance(raw_id, str):
            event_id: EventId = raw_id
        else:
            event_id = _require_uint(raw_id, (1 << 64) - 1, "id")
        meta = _require_mapping(data.get("meta", {}), "meta")
        return cls(
            ev=_require_str(_require_key(data, "ev"), "ev"),
            id=event_id,
            dt=_require_uint(_require_key(data, "dt"), U32_MAX, "dt"),
            meta={_require_str(k, "meta key"): v for k, v in meta.items()},
        )


@dataclass
class ProtocolPackage:
    events: list[ProtocolEvent] = field(default_factory=list)
    metrics: Optional[ProtocolMetrics] = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        if self.events:
            out["events"] = [event.to_dict() for event in self.events]
        if self.metrics is not None:
            out["metrics"] = self.metrics.to_dict()
        return out

    @classmethod
    def from_dict(cls, data: Mapping) -> "ProtocolPackage":
        data = _require_mapping(data, "package")
        events = data.get("events", [])
        if not isinstance(events, list):
            raise ProtocolError("events must be a list")
        metrics = data.get("metrics")
        return cls(
            events=[ProtocolEvent.from_dict(item) for item in events],
            metrics=None if metrics is None else ProtocolMetrics.from_dict(metrics),
        )

    def to_cbor(self) -> bytes:
        return cbor2.dumps(self.to_dict())

    @classmethod
    def from_cbor(cls, data: bytes) -> "ProtocolPackage":
        return cls.from_dict(_loads_cbor(data))


class Outbox:
    """Queue of pending events plus the latest metrics, drained as one package."""

    def __init__(self) -> None:
        self._events: deque[ProtocolEvent] = deque()
        self._metrics: Optional[ProtocolMetrics] = None

    def push_event(self, event: ProtocolEvent) -> None:
        self._events.append(event)

    def set_metrics(self, metrics: ProtocolMetrics) -> None:
        self._metrics = metrics

    def take(self) -> Optional[ProtocolPackage]:
        if not self._events and self._metrics is None:
            return None
        package = ProtocolPackage(events=list(self._events), metrics=self._metrics)
        self._events.clear()
        self._metrics = None
        return package

    def restore(self, package: ProtocolPackage) -> None:
        """Put an undelivered package back in front of anything queued since."""
        self._events.extendleft(reversed(package.events))
        if self._metrics is None:
            self._metrics = package.metrics


_U64_RE = re.compile(r"\+?[0-9]+")
_F32_RE = re.compile(
    r"[+-]?(?:infinity|inf|nan|(?:[0-9]+\.?[0-9]*|\.[0-9]+)(?:[eE][+-]?[0-9]+)?)",
    re.IGNORECASE,
)


def _parse_u64(text: str) -> Optional[int]:
    if not _U64_RE.fullmatch(text):
        return None
    value = int(text)
    return value if value < (1 << 64) else None


def _to_f32(value: float) -> float:
    try:
        return struct.unpack("<f", struct.pack("<f", value))[0]
    except OverflowError:
        return math.copysign(math.inf, value)


def _parse_f32(text: str) -> Optional[float]:
    if not _F32_RE.fullmatch(text):
        return None
    return _to_f32(float(text))


def _reject_constant(name: str) -> Any:
    raise ValueError(f"invalid JSON constant {name}")


def _json_to_value(value: Any) -> Any:
    if isinstance(value, bool) or value is None or isinstance(value, (str, float)):
        return value
    if isinstance(value, int):
        return value if -(1 << 63) <= value < (1 << 64) else float(value)
    if isinstance(value, list):
        return [_json_to_value(item) for item in value]
    if isinstance(value, dict):
        return {key: _json_to_value(item) for key, item in value.items()}
    return None


def _json_event_id(value: Any) -> Optional[EventId]:
    if isinstance(value, str):
        return value
    if isinstance(value, int) and not isinstance(value, bool) and 0 <= value < (1 << 64):
        return value
    return None


def _event_from_json(value: Any, tick_ms: int) -> Optional[ProtocolEvent]:
    if not isinstance(value, dict):
        return None
    ev = value.get("ev")
    if not isinstance(ev, str):
        return None
    event_id: Optional[EventId] = None
    if "id" in value:
        event_id = _json_event_id(value["id"])
    meta_raw = value.get("meta")
    meta = (
        {key: _json_to_value(item) for key, item in meta_raw.items()}
        if isinstance(meta_raw, dict)
        else {}
    )
    return ProtocolEvent(ev=ev, id=ev if event_id is None else event_id, dt=tick_ms, meta=meta)


def _trim_end_matches(text: str, suffix: str) -> str:
    while suffix and text.endswith(suffix):
        text = text[: -len(suffix)]
    return text


def _divide_event(rest: str, tick_ms: int) -> Optional[ProtocolEvent]:
    parent_part, sep, rest = rest.partition(" -> child=n")
    if not sep:
        return None
    parent_id = _parse_u64(parent_part)
    if parent_id is None:
        return None
    child_part, sep, rest = rest.partition(" (aff ")
    if not sep:
        return None
    child_id = _parse_u64(child_part)
    if child_id is None:
        return None
    aff_part, sep, _ = rest.partition(")")
    if not sep:
        return None
    aff_before, sep, aff_after = aff_part.partition("->")
    if not sep:
        return None
    parent_aff = _parse_f32(aff_before.strip())
    child_aff = _parse_f32(aff_after.strip())
    if parent_aff is None or child_aff is None:
        return None
    meta = {
        "aff_after": child_aff,
        "aff_before": parent_aff,
        "child": child_id,
        "parent": parent_id,
    }
    return ProtocolEvent(ev="divide", id=child_id, dt=tick_ms, meta=meta)


def event_from_field_log(log: str, tick_ms: int) -> Optional[ProtocolEvent]:
    """Turn a field log line (JSON payload or text summary) into an event."""
    trimmed = log.strip()
    if trimmed.startswith("{"):
        try:
            parsed = json.loads(trimmed, parse_constant=_reject_constant)
        except ValueError:
            parsed = None
        event = _event_from_json(parsed, tick_ms)
        if event is not None:
            return event
    if trimmed.startswith("DIVIDE parent=n"):
        return _divide_event(trimmed[len("DIVIDE parent=n"):], tick_ms)
    for prefix, state in (("SLEEP n", "sleep"), ("DEAD n", "dead")):
        if trimmed.startswith(prefix):
            node_id = _parse_u64(trimmed[len(prefix):])
            if node_id is None:
                return None
            return ProtocolEvent(ev=state, id=node_id, dt=tick_ms, meta={"state": state})
    if trimmed.startswith("COLLECTIVE_DREAM "):
        meta: dict[str, Any] = {}
        for chunk in trimmed[len("COLLECTIVE_DREAM "):].split():
            key, sep, raw = chunk.partition("=")
            if not sep:
                continue
            number = _parse_u64(_trim_end_matches(raw, "ms"))
            if number is not None:
                meta[key] = number
        return ProtocolEvent(ev="collective_dream", id="collective_dream", dt=tick_ms, meta=meta)
    return None


def event_from_impulse_log(log: str) -> Optional[ProtocolEvent]:
    """Turn an impulse routing log line `n<id> <message>` into a hint event."""
    trimmed = log.strip()
    if not trimmed.startswith("n"):
        return None
    id_part, sep, rest = trimmed[1:].partition(" ")
    if not sep:
        return None
    node_id = _parse_u64(id_part)
    if node_id is None:
        return None
    meta = {"kind": "impulse", "message": rest.strip()}
    return ProtocolEvent(ev="hint", id=node_id, dt=0, meta=meta)


def event_from_snapshot(snapshot_id: int) -> ProtocolEvent:
    return ProtocolEvent(ev="snapshot", id=snapshot_id, dt=0, meta={"id": snapshot_id})


def event_from_hint(hint: Hint, tick_ms: int) -> ProtocolEvent:
    meta = {"hint": hint.value, "tick_ms": tick_ms}
    return ProtocolEvent(ev="hint", id="system", dt=tick_ms, meta=meta)


def event_from_metrics(metrics: ProtocolMetrics, dt: int) -> ProtocolEvent:
    meta = {
        "avgLat": metrics.avg_latency,
        "avgMet": float(metrics.avg_met),
        "cells": metrics.cells,
        "sleeping": float(metrics.sleeping),
    }
    return ProtocolEvent(ev="metrics", id="system", dt=dt, meta=meta)


def adjust_tick(tick: int, hint: Hint) -> int:
    """Return the tick interval after applying a pacing hint."""
    if hint is Hint.SLOW_TICK:
        return min(tick + 50, 400)
    if hint is Hint.FAST_TICK:
        return max(tick - 10, 100) if tick > 100 else tick
    return tick


class TickClock:
    """Thread-safe tick interval shared between the life loop and hint handlers."""

    def __init__(self, tick_ms: int) -> None:
        self._tick_ms = tick_ms
        self._lock = threading.Lock()

    @property
    def value(self) -> int:
        with self._lock:
            return self._tick_ms

    def adjust(self, hint: Hint) -> int:
        with self._lock:
            self._tick_ms = adjust_tick(self._tick_ms, hint)
            return self._tick_ms