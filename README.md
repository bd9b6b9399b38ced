# liminal_bridge

The messaging layer around a cluster-field database:

- `liminal_bridge.protocol` – the compact CBOR wire protocol for bridge
  configuration, impulses, commands, events, metrics and packages, plus the
  `Outbox` that gathers outgoing traffic.
- `liminal_bridge.stream_codec` – JSON text frames and short-key CBOR binary
  frames for stream clients.
- `liminal_bridge.hub` – an in-process `BridgeHub` that fans events and metrics
  out to subscribers, queues commands from clients and tracks connected clients.
- `liminal_bridge.ws_server` and `liminal_bridge.ws_client` – an asyncio
  WebSocket server and client built on `websockets`.
- `liminal_bridge.cli_format`, `liminal_bridge.cli_commands` and
  `liminal_bridge.cli_options` – the pieces a console front end needs: event
  renderers, impulse and command parsing, and command-line options.

Install with `pip install .`; the tests need the `test` extra.

## Wire protocol

A push into the bridge is either a `ProtocolImpulse` (keys `k`, `p`, `s`, `t`,
`tg`) or a `ProtocolCommand` tagged by `cmd` (`trs_set`, `trs_target`, `lql`,
`dream.now`, `dream.set`, `dream.get`, `sync.set`, `sync.get`, `sync.now`).
`decode_push` reads CBOR bytes as an impulse if it can, otherwise as a command,
and raises `ProtocolError` when it is neither; `encode_push` writes one.
`BridgeConfig.to_cbor` / `from_cbor` handle the configuration map.

Outgoing events are queued in an `Outbox`; `take()` drains them, together with
the latest metrics, into a `ProtocolPackage`, and `restore()` puts an
undelivered package back in front of anything queued since.

```python
from liminal_bridge.protocol import Outbox, ProtocolPackage, event_from_field_log

outbox = Outbox()
outbox.push_event(event_from_field_log("SLEEP n7", 200))

package = outbox.take()
payload = package.to_cbor()
assert ProtocolPackage.from_cbor(payload) == package
```

`event_from_field_log` understands JSON objects with an `"ev"` key and the text
lines `DIVIDE parent=n1 -> child=n2 (aff 0.4->0.6)`, `SLEEP n3`, `DEAD n3` and
`COLLECTIVE_DREAM groups=...`; anything else gives `None`.
`event_from_impulse_log`, `event_from_snapshot`, `event_from_hint` and
`event_from_metrics` build the other event kinds.

`adjust_tick(tick, hint)` applies a pacing `Hint`: a slow tick adds 50 ms up to
a ceiling of 400 ms, a fast tick above 100 ms takes off 10 ms down to a floor of
100 ms, and other hints leave it unchanged. `TickClock` does the same under a
lock for values shared between threads.

## Stream codec

```python
from liminal_bridge.stream_codec import StreamFormat, decode_message, encode_message

message = encode_message({"cmd": "impulse", "data": {"pattern": "cpu/load"}}, StreamFormat("cbor"))
value, fmt = decode_message(message)
assert fmt is StreamFormat.CBOR
assert value["data"]["pattern"] == "cpu/load"
```

JSON travels as text frames (`str`); CBOR travels as binary frames (`bytes`)
with long keys shortened by `shorten_key` (`data` → `d`, `pattern` → `p`,
`meta` → `m`, `source` → `src`, ...) and expanded again by `expand_key`.

## Hub and WebSocket

`global_hub()` returns the process-wide `BridgeHub`. `publish_event` tags the
event's `meta` with `source: ws` and broadcasts it; `publish_metrics`
broadcasts metrics. Each subscriber gets its own bounded `asyncio.Queue` from
`subscribe_events` or `subscribe_metrics` (the oldest item is dropped when it
falls behind) and gives it back with `unsubscribe`. Commands are put with
`send_command` and read from the queue that `take_command_receiver` hands out
once.

`start_ws_server("127.0.0.1:8787", hub)` starts serving and returns the running
server. Every client receives hub events and metrics in the format it last
sent in (starting from `hub.default_format`), is pinged every 30 seconds, and
on connecting first gets the latest `harmony` event seen. Client messages are
mapped by `parse_incoming_command` to `IncomingCommand`s (a `subscribe` becomes
an LQL `SUBSCRIBE <pattern>` query; unknown or untagged messages become `RAW`)
and sent to the hub's command queue. `list_clients` and `format_clients`
describe who is connected.

`connect_ws(url)` returns a `WsHandle` whose `send` queues JSON values,
`recv` returns the next decoded value (or `None` once the connection is gone)
and `close` shuts it down.

## Console helpers

```python
from liminal_bridge.cli_commands import parse_command
from liminal_bridge.cli_options import parse_cli_args

impulse = parse_command("q cpu/load 0.8")
options = parse_cli_args(["--store", "data", "--ws-format", "cbor"])
config = options.bridge_config()
```

- `parse_command` reads `<q|w|a> <pattern> [strength]`; `parse_impulse_json`
  reads the payload of a network `impulse` command.
- `DreamConfigUpdate.from_dict(...).apply(cfg)` updates a `DreamConfig`,
  clamping percentages to 0..1 and the op budget to at least 1.
- `handle_ws_command` runs the `info`, `send <json>` and `broadcast <json>`
  subcommands against a hub and an optional remote handle.
- `parse_cli_args` accepts `--pipe-cbor`, `--store`, `--snap-interval`,
  `--snap-maxwal`, `--ws-port`, `--ws-format`, `--nexus-client` and
  `--mirror-interval`, raising `CliError` on bad input.
- `format_event_line` renders raw event strings (`view`, `lql` and `harmony`
  events get a summary line) and `render_harmony_snapshot_line` renders a
  `HarmonySnapshot`.

## What this package does not do

It has no field engine: routing impulses, running LQL queries, dream and sync
cycles, reflexes and the tick loop are not here, so nothing in the package
turns a pushed impulse or command into field activity. It has no storage
(journal, snapshots, replay). It installs no console command; the console
helpers above parse and format, but there is no interactive program or CBOR
pipe loop that drives them.