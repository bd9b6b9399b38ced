import math

import pytest

from liminal_bridge.cli_commands import (
    DreamConfig,
    DreamConfigUpdate,
    handle_ws_command,
    parse_command,
    parse_impulse_json,
)
from liminal_bridge.hub import BridgeHub, ClientSnapshot
from liminal_bridge.protocol import ImpulseKind
from liminal_bridge.stream_codec import StreamFormat


def make_cfg():
    return DreamConfig(
        min_idle_s=5,
        window_ms=1000,
        strengthen_top_pct=0.2,
        weaken_bottom_pct=0.2,
        protect_salience=0.5,
        adreno_protect=True,
        max_ops_per_cycle=100,
    )


class FakeRemote:
    def __init__(self):
        self.sent = []

    async def send(self, value):
        self.sent.append(value)


# parse_command


def test_parse_command_query_with_strength():
    impulse = parse_command("q cpu/load 0.5")
    assert impulse.kind is ImpulseKind.QUERY
    assert impulse.pattern == "cpu/load"
    assert impulse.strength == 0.5
    assert impulse.ttl_ms == 1500
    assert impulse.tags == ["cli"]


@pytest.mark.parametrize(
    "cmd,kind",
    [("w", ImpulseKind.WRITE), ("A", ImpulseKind.AFFECT), ("Q", ImpulseKind.QUERY)],
)
def test_parse_command_kinds(cmd, kind):
    assert parse_command(f"{cmd} mem/free").kind is kind


def test_parse_command_default_strength():
    assert parse_command("w mem/free").strength == pytest.approx(0.6)


def test_parse_command_bad_strength_falls_back():
    assert parse_command("a x/y notanumber").strength == pytest.approx(0.6)


def test_parse_command_clamps_strength():
    assert parse_command("q x 3.5").strength == 1.0
    assert parse_command("q x -2").strength == 0.0


@pytest.mark.parametrize("line", ["", "q", "z cpu/load 0.5", "hello world"])
def test_parse_command_rejects(line):
    assert parse_command(line) is None


# parse_impulse_json


def test_parse_impulse_json_full():
    impulse = parse_impulse_json(
        {"pattern": "cpu/load", "strength": 0.5, "ttl_ms": 900, "kind": "Write", "tags": ["x", 3, "y"]}
    )
    assert impulse.kind is ImpulseKind.WRITE
    assert impulse.pattern == "cpu/load"
    assert impulse.strength == 0.5
    assert impulse.ttl_ms == 900
    assert impulse.tags == ["x", "y"]


def test_parse_impulse_json_defaults():
    impulse = parse_impulse_json({"pattern": "p"})
    assert impulse.kind is ImpulseKind.QUERY
    assert impulse.strength == pytest.approx(0.6)
    assert impulse.ttl_ms == 1500
    assert impulse.tags == ["ws"]


def test_parse_impulse_json_short_kind_and_bad_ttl():
    impulse = parse_impulse_json({"pattern": "p", "kind": "a", "ttl_ms": -5})
    assert impulse.kind is ImpulseKind.AFFECT
    assert impulse.ttl_ms == 1500


def test_parse_impulse_json_unknown_kind_is_query():
    assert parse_impulse_json({"pattern": "p", "kind": "other"}).kind is ImpulseKind.QUERY


@pytest.mark.parametrize("data", [{}, {"pattern": 3}, None, "text"])
def test_parse_impulse_json_requires_pattern(data):
    with pytest.raises(ValueError, match="impulse requires pattern"):
        parse_impulse_json(data)


# DreamConfigUpdate


def test_dream_update_empty_leaves_config():
    cfg = make_cfg()
    DreamConfigUpdate.from_dict({}).apply(cfg)
    assert cfg == make_cfg()


def test_dream_update_sets_and_clamps():
    cfg = make_cfg()
    update = DreamConfigUpdate.from_dict(
        {
            "min_idle_s": 9,
            "window_ms": 2500,
            "strengthen_top_pct": 1.5,
            "weaken_bottom_pct": -0.3,
            "protect_salience": 0.25,
            "adreno_protect": False,
            "max_ops_per_cycle": 0,
        }
    )
    update.apply(cfg)
    assert cfg.min_idle_s == 9
    assert cfg.window_ms == 2500
    assert cfg.strengthen_top_pct == 1.0
    assert cfg.weaken_bottom_pct == 0.0
    assert cfg.protect_salience == 0.25
    assert cfg.adreno_protect is False
    assert cfg.max_ops_per_cycle == 1


def test_dream_update_null_and_unknown_ignored():
    update = DreamConfigUpdate.from_dict({"window_ms": None, "extra": 1})
    assert update == DreamConfigUpdate()


@pytest.mark.parametrize(
    "data",
    [
        {"min_idle_s": -1},
        {"window_ms": 1.5},
        {"adreno_protect": 1},
        {"strengthen_top_pct": "x"},
        {"max_ops_per_cycle": True},
        [1, 2],
    ],
)
def test_dream_update_rejects_bad_types(data):
    with pytest.raises(ValueError):
        DreamConfigUpdate.from_dict(data)


def test_dream_update_nan_stays_nan():
    cfg = make_cfg()
    DreamConfigUpdate(protect_salience=float("nan")).apply(cfg)
    assert str(cfg.protect_salience) == "nan"
    assert math.isnan(cfg.protect_salience) is True
    assert cfg.min_idle_s == 5
    assert cfg.window_ms == 1000
    assert cfg.strengthen_top_pct == 0.2
    assert cfg.max_ops_per_cycle == 100


# handle_ws_command


@pytest.mark.asyncio
async def test_ws_help(capsys):
    await handle_ws_command("", None, BridgeHub())
    assert capsys.readouterr().out.strip() == "WS commands: info | send <json> | broadcast <json>"


@pytest.mark.asyncio
async def test_ws_info_no_clients(capsys):
    await handle_ws_command("info", None, BridgeHub())
    assert capsys.readouterr().out.splitlines() == ["WS no clients connected"]


@pytest.mark.asyncio
async def test_ws_info_lists_clients_and_remote(capsys):
    hub = BridgeHub()
    hub.register_client(ClientSnapshot(id=7, addr="127.0.0.1:5000", format=StreamFormat.CBOR))
    await handle_ws_command("info", FakeRemote(), hub)
    lines = capsys.readouterr().out.splitlines()
    assert len(lines) == 2
    assert lines[0].startswith("WS id=7 addr=127.0.0.1:5000 connected=")
    assert lines[1] == "WS nexus-client connected"


@pytest.mark.asyncio
async def test_ws_send_forwards_value(capsys):
    remote = FakeRemote()
    await handle_ws_command('send {"cmd": "lql", "q": "SELECT x"}', remote, BridgeHub())
    assert remote.sent == [{"cmd": "lql", "q": "SELECT x"}]
    assert capsys.readouterr().out.strip() == "WS send queued"


@pytest.mark.asyncio
async def test_ws_send_without_remote():
    with pytest.raises(ConnectionError, match="no nexus client connection"):
        await handle_ws_command('send {"a": 1}', None, BridgeHub())


@pytest.mark.asyncio
async def test_ws_send_requires_payload():
    with pytest.raises(ValueError, match="usage: :ws send <json>"):
        await handle_ws_command("send", FakeRemote(), BridgeHub())


@pytest.mark.asyncio
async def test_ws_send_invalid_json():
    remote = FakeRemote()
    with pytest.raises(ValueError):
        await handle_ws_command("send {not json", remote, BridgeHub())
    assert remote.sent == []


@pytest.mark.asyncio
async def test_ws_broadcast_publishes(capsys):
    hub = BridgeHub()
    queue = hub.subscribe_events()
    await handle_ws_command('broadcast {"ev": "harmony"}', None, hub)
    event = queue.get_nowait()
    assert event.payload["ev"] == "harmony"
    assert event.payload["meta"]["source"] == "ws"
    assert capsys.readouterr().out.strip() == "WS broadcast queued"


@pytest.mark.asyncio
async def test_ws_broadcast_requires_payload():
    with pytest.raises(ValueError, match="usage: :ws broadcast <json>"):
        await handle_ws_command("broadcast   ", None, BridgeHub())


@pytest.mark.asyncio
async def test_ws_unknown_subcommand():
    with pytest.raises(ValueError, match="unknown ws subcommand: bogus"):
        await handle_ws_command("bogus", None, BridgeHub())