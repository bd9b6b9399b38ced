"""Console command parsing: impulse lines, impulse JSON, dream config updates and `:ws` commands."""

from __future__ import annotations

import json
import math
import re
import struct
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from .hub import BridgeHub, format_clients, global_hub
from .protocol import Impulse, ImpulseKind

_U32_MAX = (1 << 32) - 1
_U64_LIMIT = 1 << 64

_F32_RE = re.compile(
    r"[+-]?(?:infinity|inf|nan|(?:[0-9]+\.?[0-9]*|\.[0-9]+)(?:[eE][+-]?[0-9]+)?)",
    re.IGNORECASE,
)

_COMMAND_KINDS = {"q": ImpulseKind.QUERY, "w": ImpulseKind.WRITE, "a": ImpulseKind.AFFECT}
_JSON_KINDS = {
    "affect": ImpulseKind.AFFECT,
    "a": ImpulseKind.AFFECT,
    "write": ImpulseKind.WRITE,
    "w": ImpulseKind.WRITE,
}

DEFAULT_STRENGTH = 0.6
CLI_TTL_MS = 1_500
WS_TTL_MS = 1_500


def _to_f32(value: float) -> float:
    try:
        return struct.unpack("<f", struct.pack("<f", value))[0]
    except OverflowError:
        return math.copysign(math.inf, value)


def _parse_f32(text: str) -> Optional[float]:
    if not _F32_RE.fullmatch(text):
        return None
    return _to_f32(float(text))


def _clamp(value: float, low: float, high: float) -> float:
    if math.isnan(value):
        return value
    return min(max(value, low), high)


def parse_command(line: str) -> Optional[Impulse]:
    """Parse `<q|w|a> <pattern> [strength]` into an impulse; None if it is not one."""
    parts = line.split()
    if len(parts) < 2:
        return None
    cmd, pattern = parts[0], parts[1]
    strength = _parse_f32(parts[2]) if len(parts) > 2 else None
    if strength is None:
        strength = DEFAULT_STRENGTH
    kind = _COMMAND_KINDS.get(cmd.lower())
    if kind is None:
        return None
    return Impulse(
        kind=kind,
        pattern=pattern,
        strength=_clamp(strength, 0.0, 1.0),
        ttl_ms=CLI_TTL_MS,
        tags=["cli"],
    )


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def parse_impulse_json(data: Any) -> Impulse:
    """Build an impulse from a network `impulse` command payload."""
    pattern = data.get("pattern") if isinstance(data, dict) else None
    if not isinstance(pattern, str):
        raise ValueError("impulse requires pattern")
    strength_raw = data.get("strength")
    strength = _to_f32(float(strength_raw)) if _is_number(strength_raw) else DEFAULT_STRENGTH
    ttl_raw = data.get("ttl_ms")
    ttl_ms = (
        ttl_raw
        if isinstance(ttl_raw, int) and not isinstance(ttl_raw, bool) and 0 <= ttl_raw < _U64_LIMIT
        else WS_TTL_MS
    )
    kind_raw = data.get("kind")
    kind_name = kind_raw if isinstance(kind_raw, str) else "query"
    kind = _JSON_KINDS.get(kind_name.lower(), ImpulseKind.QUERY)
    tags_raw = data.get("tags")
    if isinstance(tags_raw, list):
        tags = [item for item in tags_raw if isinstance(item, str)]
    else:
        tags = ["ws"]
    return Impulse(kind=kind, pattern=pattern, strength=strength, ttl_ms=ttl_ms, tags=tags)


@dataclass
class DreamConfig:
    min_idle_s: int
    window_ms: int
    strengthen_top_pct: float
    weaken_bottom_pct: float
    protect_salience: float
    adreno_protect: bool
    max_ops_per_cycle: int


def _opt_u32(data: Mapping, key: str) -> Optional[int]:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= _U32_MAX:
        raise ValueError(f"{key} must be an integer in 0..={_U32_MAX}")
    return value


def _opt_f32(data: Mapping, key: str) -> Optional[float]:
    value = data.get(key)
    if value is None:
        return None
    if not _is_number(value):
        raise ValueError(f"{key} must be a number")
    return _to_f32(float(value))


def _opt_bool(data: Mapping, key: str) -> Optional[bool]:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, bool):
        raise ValueError(f"{key} must be a boolean")
    return value


@dataclass
class DreamConfigUpdate:
    """A partial dream configuration; unset fields leave the current value alone."""

    min_idle_s: Optional[int] = None
    window_ms: Optional[int] = None
    strengthen_top_pct: Optional[float] = None
    weaken_bottom_pct: Optional[float] = None
    protect_salience: Optional[float] = None
    adreno_protect: Optional[bool] = None
    max_ops_per_cycle: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Any) -> "DreamConfigUpdate":
        if not isinstance(data, Mapping):
            raise ValueError("dream config update must be an object")
        return cls(
            min_idle_s=_opt_u32(data, "min_idle_s"),
            window_ms=_opt_u32(data, "window_ms"),
            strengthen_top_pct=_opt_f32(data, "strengthen_top_pct"),
            weaken_bottom_pct=_opt_f32(data, "weaken_bottom_pct"),
            protect_salience=_opt_f32(data, "protect_salience"),
            adreno_protect=_opt_bool(data, "adreno_protect"),
            max_ops_per_cycle=_opt_u32(data, "max_ops_per_cycle"),
        )

    def apply(self, cfg: DreamConfig) -> None:
        """Write the set fields into `cfg`, clamping percentages and the op budget."""
        if self.min_idle_s is not None:
            cfg.min_idle_s = self.min_idle_s
        if self.window_ms is not None:
            cfg.window_ms = self.window_ms
        if self.strengthen_top_pct is not None:
            cfg.strengthen_top_pct = _clamp(self.strengthen_top_pct, 0.0, 1.0)
        if self.weaken_bottom_pct is not None:
            cfg.weaken_bottom_pct = _clamp(self.weaken_bottom_pct, 0.0, 1.0)
        if self.protect_salience is not None:
            cfg.protect_salience = _clamp(self.protect_salience, 0.0, 1.0)
        if self.adreno_protect is not None:
            cfg.adreno_protect = self.adreno_protect
        if self.max_ops_per_cycle is not None:
            cfg.max_ops_per_cycle = max(self.max_ops_per_cycle, 1)


def _reject_constant(name: str) -> Any:
    raise ValueError(f"invalid JSON constant {name}")


def _parse_json(text: str) -> Any:
    return json.loads(text, parse_constant=_reject_constant)


async def handle_ws_command(command: str, remote: Any, hub: Optional[BridgeHub] = None) -> None:
    """Run a `:ws` console subcommand, printing its result.

    `remote` is the connected nexus client handle, or None.
    """
    if hub is None:
        hub = global_hub()
    sub, _, rest = command.partition(" ")
    sub = sub.strip()
    payload = rest.strip()
    if sub in ("", "help"):
        print("WS commands: info | send <json> | broadcast <json>")
    elif sub == "info":
        clients = hub.list_clients()
        if not clients:
            print("WS no clients connected")
        else:
            for line in format_clients(clients):
                print(f"WS {line}")
        if remote is not None:
            print("WS nexus-client connected")
    elif sub == "send":
        if not payload:
            raise ValueError("usage: :ws send <json>")
        value = _parse_json(payload)
        if remote is None:
            raise ConnectionError("no nexus client connection")
        await remote.send(value)
        print("WS send queued")
    elif sub == "broadcast":
        if not payload:
            raise ValueError("usage: :ws broadcast <json>")
        value = _parse_json(payload)
        hub.publish_event(value)
        print("WS broadcast queued")
    else:
        raise ValueError(f"unknown ws subcommand: {sub}")