"""Human-readable console lines for field events, LQL results and harmony snapshots."""

from __future__ import annotations

import enum
import json
from dataclasses import dataclass
from typing import Any, Optional

_U64_LIMIT = 1 << 64
_U32_MASK = (1 << 32) - 1


class SymmetryStatus(enum.Enum):
    OK = "ok"
    DRIFT = "drift"

    def as_str(self) -> str:
        return self.value


@dataclass
class HarmonyMetrics:
    avg_strength: float
    avg_latency: float
    entropy: float


@dataclass
class MirrorImpulse:
    kind: str
    pattern: str
    strength: float
    timestamp_ms: int


@dataclass
class HarmonySnapshot:
    metrics: HarmonyMetrics
    delta_strength: float
    delta_latency: float
    entropy_ratio: float
    dominant_pattern: Optional[str]
    status: SymmetryStatus
    mirror: Optional[MirrorImpulse]


class _Missing:
    """Marks a key that is absent, as distinct from a JSON null."""


_MISSING = _Missing()


def _get(value: Any, key: str) -> Any:
    if isinstance(value, dict) and key in value:
        return value[key]
    return _MISSING


def _as_u64(value: Any) -> Optional[int]:
    if isinstance(value, int) and not isinstance(value, bool) and 0 <= value < _U64_LIMIT:
        return value
    return None


def _as_f64(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def _as_str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


def _as_bool(value: Any) -> Optional[bool]:
    return value if isinstance(value, bool) else None


def _or(value: Optional[Any], default: Any) -> Any:
    return default if value is None else value


def format_top_nodes(items: list) -> str:
    """Render `[{"id":..,"hits":..}]` as `n<id>:<hits>` joined by commas, or `-`."""
    parts = []
    for item in items:
        node_id = _as_u64(_get(item, "id"))
        hits = _as_u64(_get(item, "hits"))
        if node_id is not None and hits is not None:
            parts.append(f"n{node_id}:{hits}")
    return ",".join(parts) if parts else "-"


def extract_stats(stats: Any) -> Optional[tuple[int, float, float, str]]:
    """Pull (count, avg_strength, avg_latency, top nodes) out of a stats object."""
    count = _as_u64(_get(stats, "count"))
    avg_strength = _as_f64(_get(stats, "avg_strength"))
    avg_latency = _as_f64(_get(stats, "avg_latency"))
    if count is None or avg_strength is None or avg_latency is None:
        return None
    top = _get(stats, "top_nodes")
    top_nodes = format_top_nodes(top) if isinstance(top, list) else "-"
    return count & _U32_MASK, avg_strength, avg_latency, top_nodes


def format_view_event(value: Any) -> Optional[str]:
    meta = _get(value, "meta")
    view_id = _as_u64(_get(meta, "id"))
    if view_id is None:
        return None
    pattern = _get(meta, "pattern")
    window = _get(meta, "window")
    stats = _get(meta, "stats")
    if pattern is _MISSING or window is _MISSING or stats is _MISSING:
        return None
    extracted = extract_stats(stats)
    if extracted is None:
        return None
    count, avg_strength, avg_latency, top_nodes = extracted
    return (
        f"VIEW id={view_id} pattern={_or(_as_str(pattern), '')} "
        f"window={_or(_as_u64(window), 0)}ms count={count} "
        f"avg_str={avg_strength:.2f} avg_lat={avg_latency:.1f} top=[{top_nodes}]"
    )


def _format_select(select: Any) -> Optional[str]:
    pattern = _get(select, "pattern")
    if pattern is _MISSING:
        return None
    window = _get(select, "window_ms")
    if window is _MISSING:
        return None
    min_strength = _as_f64(_get(select, "min_strength"))
    threshold = "-" if min_strength is None else f"{min_strength:.2f}"
    stats = _get(select, "stats")
    if stats is _MISSING:
        return None
    extracted = extract_stats(stats)
    if extracted is None:
        return None
    count, avg_strength, avg_latency, top_nodes = extracted
    return (
        f"LQL SELECT pattern={_or(_as_str(pattern), '')} "
        f"window={_or(_as_u64(window), 0)}ms min>={threshold} count={count} "
        f"avg_str={avg_strength:.2f} avg_lat={avg_latency:.1f} top=[{top_nodes}]"
    )


def _format_subscribe(subscribe: Any) -> Optional[str]:
    sub_id = _as_u64(_get(subscribe, "id"))
    if sub_id is None:
        return None
    pattern = _get(subscribe, "pattern")
    window = _get(subscribe, "window_ms")
    every = _get(subscribe, "every_ms")
    if pattern is _MISSING or window is _MISSING or every is _MISSING:
        return None
    return (
        f"LQL SUBSCRIBE id={sub_id} pattern={_or(_as_str(pattern), '')} "
        f"window={_or(_as_u64(window), 0)}ms every={_or(_as_u64(every), 0)}ms"
    )


def _format_unsubscribe(unsubscribe: Any) -> Optional[str]:
    sub_id = _as_u64(_get(unsubscribe, "id"))
    if sub_id is None:
        return None
    removed = _get(unsubscribe, "removed")
    if removed is _MISSING:
        return None
    flag = "true" if _or(_as_bool(removed), False) else "false"
    return f"LQL UNSUBSCRIBE id={sub_id} removed={flag}"


def format_lql_event(value: Any) -> Optional[str]:
    meta = _get(value, "meta")
    if meta is _MISSING:
        return None
    select = _get(meta, "select")
    if select is not _MISSING:
        return _format_select(select)
    subscribe = _get(meta, "subscribe")
    if subscribe is not _MISSING:
        return _format_subscribe(subscribe)
    unsubscribe = _get(meta, "unsubscribe")
    if unsubscribe is not _MISSING:
        return _format_unsubscribe(unsubscribe)
    error = _get(meta, "error")
    if error is not _MISSING:
        query = _or(_as_str(_get(meta, "query")), "")
        return f"LQL ERROR query='{query}' message={_or(_as_str(error), 'unknown')}"
    return None


def format_harmony_event(value: Any) -> Optional[str]:
    meta = _get(value, "meta")
    strength = _as_f64(_get(meta, "strength"))
    latency = _as_f64(_get(meta, "latency"))
    entropy = _as_f64(_get(meta, "entropy"))
    if strength is None or latency is None or entropy is None:
        return None
    delta_strength = _or(_as_f64(_get(meta, "delta_strength")), 0.0)
    delta_latency = _or(_as_f64(_get(meta, "delta_latency")), 0.0)
    status = _or(_as_str(_get(meta, "status")), "ok").upper()
    pattern = _or(_as_str(_get(meta, "pattern")), "-")
    mirror_raw = _get(meta, "mirror")
    if isinstance(mirror_raw, dict):
        mirror_strength = _or(_as_f64(_get(mirror_raw, "s")), 0.0)
        mirror_ts = _or(_as_u64(_get(mirror_raw, "t")), 0)
        mirror = f"{mirror_strength:.3f}@{mirror_ts}"
    else:
        mirror = "-"
    return (
        f"HARMONY status={status} strength={strength:.3f} latency={latency:.1f} "
        f"entropy={entropy:.3f} d_str={delta_strength:.3f} d_lat={delta_latency:.1f} "
        f"pattern={pattern} mirror={mirror}"
    )


_FORMATTERS = {
    "view": format_view_event,
    "lql": format_lql_event,
    "harmony": format_harmony_event,
}


def _reject_constant(name: str) -> Any:
    raise ValueError(f"invalid JSON constant {name}")


def format_event_line(raw: str) -> str:
    """The console line for a raw event string: a summary if recognised, else the raw text."""
    try:
        value = json.loads(raw, parse_constant=_reject_constant)
    except ValueError:
        return raw
    event = _as_str(_get(value, "ev"))
    formatter = _FORMATTERS.get(event) if event is not None else None
    if formatter is not None:
        line = formatter(value)
        if line is not None:
            return line
    return raw


def render_harmony_snapshot_line(snapshot: HarmonySnapshot) -> str:
    status = snapshot.status.as_str().upper()
    pattern = snapshot.dominant_pattern if snapshot.dominant_pattern is not None else "-"
    mirror = (
        f"{snapshot.mirror.strength:.3f}@{snapshot.mirror.timestamp_ms}"
        if snapshot.mirror is not None
        else "-"
    )
    return (
        f"HARMONY status={status} strength={snapshot.metrics.avg_strength:.3f} "
        f"latency={snapshot.metrics.avg_latency:.1f} entropy={snapshot.entropy_ratio:.3f} "
        f"d_str={snapshot.delta_strength:.3f} d_lat={snapshot.delta_latency:.1f} "
        f"pattern={pattern} mirror={mirror}"
    )