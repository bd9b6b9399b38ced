import threading
from types import SimpleNamespace

import cbor2
import pytest

from liminal_bridge.protocol import (
    BridgeConfig,
    Hint,
    ImpulseKind,
    Outbox,
    ProtocolCommand,
    ProtocolError,
    ProtocolEvent,
    ProtocolImpulse,
    ProtocolMetrics,
    ProtocolPackage,
    TickClock,
    adjust_tick,
    decode_push,
    encode_push,
    event_from_field_log,
    event_from_hint,
    event_from_impulse_log,
    event_from_metrics,
    event_from_snapshot,
)


def test_impulse_roundtrip():
    impulse = ProtocolImpulse(kind=0, pattern="cpu/load", strength=0.75, ttl_ms=900, tags=["cli", "test"])
    decoded = decode_push(encode_push(impulse))
    assert decoded == impulse


def test_event_roundtrip():
    event = ProtocolEvent(ev="sleep", id=5, dt=200, meta={"state": "sleep"})
    decoded = ProtocolEvent.from_dict(cbor2.loads(cbor2.dumps(event.to_dict())))
    assert decoded == event


def test_metrics_roundtrip():
    metrics = ProtocolMetrics(cells=12, sleeping=0.25, avg_met=0.66, avg_latency=180)
    decoded = ProtocolMetrics.from_dict(cbor2.loads(cbor2.dumps(metrics.to_dict())))
    assert decoded == metrics


def test_metrics_wire_keys():
    metrics = ProtocolMetrics(cells=1, sleeping=0.5, avg_met=0.25, avg_latency=3)
    assert metrics.to_dict() == {"cells": 1, "sleeping": 0.5, "avgMet": 0.25, "avgLat": 3}


def test_bridge_config_skips_missing_fields():
    assert BridgeConfig(tick_ms=200).to_cbor() == b"\xa1gtick_ms\x18\xc8"


def test_bridge_config_roundtrip():
    cfg = BridgeConfig(tick_ms=150, store_path="/tmp/store", snap_interval=30, snap_maxwal=100, ws_port=8787)
    assert BridgeConfig.from_cbor(cfg.to_cbor()) == cfg


def test_bridge_config_rejects_bad_port():
    data = cbor2.dumps({"tick_ms": 10, "ws_port": 70000})
    with pytest.raises(ProtocolError):
        BridgeConfig.from_cbor(data)


def test_bridge_config_requires_tick():
    with pytest.raises(ProtocolError):
        BridgeConfig.from_cbor(cbor2.dumps({"store_path": "x"}))


def test_decode_rejects_trailing_bytes():
    with pytest.raises(ProtocolError):
        BridgeConfig.from_cbor(BridgeConfig(tick_ms=1).to_cbor() + b"\x00")


@pytest.mark.parametrize(
    "code, kind",
    [(0, ImpulseKind.AFFECT), (1, ImpulseKind.QUERY), (2, ImpulseKind.WRITE), (9, ImpulseKind.QUERY)],
)
def test_impulse_to_core_kind(code, kind):
    core = ProtocolImpulse(kind=code, pattern="p", strength=0.5, ttl_ms=10, tags=["a"]).to_core()
    assert core.kind is kind
    assert (core.pattern, core.strength, core.ttl_ms, core.tags) == ("p", 0.5, 10, ["a"])


def test_impulse_tags_default_empty():
    decoded = decode_push(cbor2.dumps({"k": 1, "p": "x", "s": 1, "t": 5}))
    assert decoded == ProtocolImpulse(kind=1, pattern="x", strength=1.0, ttl_ms=5, tags=[])


def test_decode_push_lql_command():
    decoded = decode_push(cbor2.dumps({"cmd": "lql", "q": "SELECT cpu/*"}))
    assert decoded == ProtocolCommand(cmd="lql", query="SELECT cpu/*")


def test_decode_push_unit_command():
    assert decode_push(cbor2.dumps({"cmd": "dream.now"})) == ProtocolCommand(cmd="dream.now")


def test_command_roundtrip_with_cfg():
    command = ProtocolCommand(cmd="sync.set", cfg={"max_groups": 3})
    assert command.to_dict() == {"cmd": "sync.set", "cfg": {"max_groups": 3}}
    assert decode_push(encode_push(command)) == command


def test_trs_target_command():
    command = decode_push(cbor2.dumps({"cmd": "trs_target", "value": 0.5}))
    assert command.value == 0.5


def test_decode_push_unknown_command():
    with pytest.raises(ProtocolError):
        decode_push(cbor2.dumps({"cmd": "explode"}))


def test_command_missing_payload():
    with pytest.raises(ProtocolError):
        ProtocolCommand(cmd="lql")


def test_decode_push_invalid_cbor():
    with pytest.raises(ProtocolError):
        decode_push(b"\xff\xff")


def test_metrics_from_core_rounds_and_clamps():
    core = SimpleNamespace(cells=1 << 40, sleeping_pct=0.5, avg_metabolism=0.25, avg_latency_ms=12.5)
    metrics = ProtocolMetrics.from_core(core)
    assert metrics == ProtocolMetrics(cells=(1 << 32) - 1, sleeping=0.5, avg_met=0.25, avg_latency=13)


def test_metrics_from_core_negative_latency():
    core = SimpleNamespace(cells=2, sleeping_pct=0.0, avg_metabolism=0.0, avg_latency_ms=-7.0)
    assert ProtocolMetrics.from_core(core).avg_latency == 0


def test_outbox_take_empty():
    assert Outbox().take() is None


def test_outbox_take_and_restore_order():
    box = Outbox()
    first = event_from_snapshot(1)
    second = event_from_snapshot(2)
    box.push_event(first)
    box.push_event(second)
    box.set_metrics(ProtocolMetrics(cells=1, sleeping=0.0, avg_met=0.0, avg_latency=0))
    package = box.take()
    assert package.events == [first, second]
    assert box.take() is None
    third = event_from_snapshot(3)
    newer_metrics = ProtocolMetrics(cells=9, sleeping=0.0, avg_met=0.0, avg_latency=0)
    box.push_event(third)
    box.set_metrics(newer_metrics)
    box.restore(package)
    restored = box.take()
    assert [e.id for e in restored.events] == [1, 2, 3]
    assert restored.metrics == newer_metrics


def test_package_cbor_roundtrip():
    package = ProtocolPackage(
        events=[event_from_snapshot(4)],
        metrics=ProtocolMetrics(cells=3, sleeping=0.5, avg_met=0.5, avg_latency=10),
    )
    assert ProtocolPackage.from_cbor(package.to_cbor()) == package


def test_empty_package_encodes_empty_map():
    assert ProtocolPackage().to_dict() == {}


def test_field_log_divide():
    event = event_from_field_log("DIVIDE parent=n3 -> child=n7 (aff 0.5->0.25)", 200)
    assert event.ev == "divide"
    assert event.id == 7
    assert event.dt == 200
    assert event.meta == {"parent": 3, "child": 7, "aff_before": 0.5, "aff_after": 0.25}


def test_field_log_divide_malformed():
    assert event_from_field_log("DIVIDE parent=nX -> child=n7 (aff 0.5->0.25)", 200) is None


@pytest.mark.parametrize("line, ev", [("SLEEP n12", "sleep"), ("  DEAD n4  ", "dead")])
def test_field_log_states(line, ev):
    event = event_from_field_log(line, 100)
    assert (event.ev, event.meta["state"], event.dt) == (ev, ev, 100)


def test_field_log_collective_dream():
    event = event_from_field_log("COLLECTIVE_DREAM groups=2 shared=5 aligned=1 protected=0 took=12ms", 1000)
    assert event.id == "collective_dream"
    assert event.meta == {"groups": 2, "shared": 5, "aligned": 1, "protected": 0, "took": 12}


def test_field_log_collective_noop_has_empty_meta():
    event = event_from_field_log("COLLECTIVE_DREAM no-op (no qualifying groups)", 1000)
    assert event.ev == "collective_dream"
    assert event.meta == {}


def test_field_log_json():
    event = event_from_field_log('{"ev":"dream","meta":{"pruned":3,"ok":true}}', 1000)
    assert event == ProtocolEvent(ev="dream", id="dream", dt=1000, meta={"pruned": 3, "ok": True})


def test_field_log_json_numeric_id():
    event = event_from_field_log('{"ev":"view","id":9}', 5)
    assert event.id == 9


def test_field_log_json_negative_id_falls_back():
    event = event_from_field_log('{"ev":"view","id":-1}', 5)
    assert event.id == "view"


def test_field_log_unknown_lines():
    assert event_from_field_log("DREAM strengthened=1", 1000) is None
    assert event_from_field_log('{"no_ev": 1}', 1000) is None


def test_impulse_log():
    event = event_from_impulse_log("n42 matched cpu/load ")
    assert event == ProtocolEvent(ev="hint", id=42, dt=0, meta={"kind": "impulse", "message": "matched cpu/load"})


def test_impulse_log_rejects_other_lines():
    assert event_from_impulse_log("n42") is None
    assert event_from_impulse_log("x1 hello") is None


def test_event_from_hint():
    event = event_from_hint(Hint.SLOW_TICK, 250)
    assert event == ProtocolEvent(ev="hint", id="system", dt=250, meta={"hint": "slow_tick", "tick_ms": 250})


def test_event_from_metrics():
    metrics = ProtocolMetrics(cells=4, sleeping=0.5, avg_met=0.25, avg_latency=90)
    event = event_from_metrics(metrics, 1000)
    assert event.meta == {"cells": 4, "sleeping": 0.5, "avgMet": 0.25, "avgLat": 90}
    assert (event.ev, event.id, event.dt) == ("metrics", "system", 1000)


@pytest.mark.parametrize(
    "tick, hint, expected",
    [
        (200, Hint.SLOW_TICK, 250),
        (380, Hint.SLOW_TICK, 400),
        (200, Hint.FAST_TICK, 190),
        (105, Hint.FAST_TICK, 100),
        (80, Hint.FAST_TICK, 80),
        (200, Hint.TRIM_FIELD, 200),
        (200, Hint.WAKE_SEEDS, 200),
    ],
)
def test_adjust_tick(tick, hint, expected):
    assert adjust_tick(tick, hint) == expected


def test_tick_clock_concurrent_adjust():
    clock = TickClock(100)
    threads = [threading.Thread(target=clock.adjust, args=(Hint.SLOW_TICK,)) for _ in range(10)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert clock.value == 400