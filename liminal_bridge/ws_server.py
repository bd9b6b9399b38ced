"""Websocket server streaming hub events to clients and forwarding their commands."""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass
from typing import Any, Optional

import websockets
from websockets.exceptions import ConnectionClosed

from .hub import BridgeHub, ClientSnapshot, CommandKind, IncomingCommand, global_hub
from .stream_codec import StreamFormat, decode_message, encode_message

logger = logging.getLogger(__name__)

_PING_INTERVAL_S = 30.0
_OUTGOING_CAPACITY = 256

_client_ids = itertools.count(1)

_BARE_COMMANDS = {
    "dream.now": CommandKind.DREAM_NOW,
    "dream.get": CommandKind.DREAM_GET,
    "sync.now": CommandKind.SYNC_NOW,
    "sync.get": CommandKind.SYNC_GET,
}
_DATA_COMMANDS = {"impulse": CommandKind.IMPULSE, "policy.set": CommandKind.POLICY_SET}
_CFG_COMMANDS = {"dream.set": CommandKind.DREAM_SET, "sync.set": CommandKind.SYNC_SET}


def parse_incoming_command(value: Any) -> Optional[IncomingCommand]:
    """Map a decoded client message to a command; None when it should be ignored."""
    cmd = value.get("cmd") if isinstance(value, dict) else None
    if not isinstance(cmd, str):
        return IncomingCommand(CommandKind.RAW, data=value)
    if cmd in _DATA_COMMANDS:
        return IncomingCommand(_DATA_COMMANDS[cmd], data=value.get("data"))
    if cmd in _CFG_COMMANDS:
        return IncomingCommand(_CFG_COMMANDS[cmd], cfg=value.get("cfg"))
    if cmd in _BARE_COMMANDS:
        return IncomingCommand(_BARE_COMMANDS[cmd])
    if cmd == "lql":
        query = value.get("q")
        return IncomingCommand(CommandKind.LQL, query=query) if isinstance(query, str) else None
    if cmd == "subscribe":
        pattern = value.get("pattern")
        if not isinstance(pattern, str):
            return None
        return IncomingCommand(CommandKind.LQL, query=f"SUBSCRIBE {pattern}")
    logger.warning("ws_server.unknown_cmd: %s", cmd)
    return IncomingCommand(CommandKind.RAW, data=value)


@dataclass
class _HarmonyCache:
    latest: Any = None


@dataclass
class _ClientState:
    fmt: StreamFormat


def _split_addr(addr: str) -> tuple[str, int]:
    host, sep, port = addr.rpartition(":")
    if not sep or not port.isdigit():
        raise ValueError(f"invalid listen address: {addr!r}")
    return host.strip("[]"), int(port)


def _is_harmony(payload: Any) -> bool:
    return isinstance(payload, dict) and payload.get("ev") == "harmony"


def _encode(payload: Any, fmt: StreamFormat) -> Optional[Any]:
    try:
        return encode_message(payload, fmt)
    except (ValueError, TypeError):
        return None


async def _pump(
    source: asyncio.Queue,
    outgoing: asyncio.Queue,
    state: _ClientState,
    cache: Optional[_HarmonyCache] = None,
) -> None:
    while True:
        payload = (await source.get()).payload
        if cache is not None and _is_harmony(payload):
            cache.latest = payload
        message = _encode(payload, state.fmt)
        if message is not None:
            await outgoing.put(message)


async def _send_loop(websocket: Any, outgoing: asyncio.Queue) -> None:
    while True:
        message = await outgoing.get()
        try:
            await websocket.send(message)
        except ConnectionClosed:
            return


async def _ping_loop(websocket: Any, hub: BridgeHub, client_id: int) -> None:
    while True:
        hub.update_ping(client_id)
        try:
            await websocket.ping()
        except ConnectionClosed:
            return
        await asyncio.sleep(_PING_INTERVAL_S)


async def _read_loop(websocket: Any, hub: BridgeHub, client_id: int, state: _ClientState) -> None:
    try:
        async for message in websocket:
            try:
                value, detected = decode_message(message)
            except ValueError as exc:
                logger.warning("ws_server.decode_failed: %s", exc)
                continue
            if detected is not state.fmt:
                state.fmt = detected
                hub.update_client_format(client_id, detected)
            command = parse_incoming_command(value)
            if command is not None:
                await hub.send_command(command)
    except ConnectionClosed as exc:
        logger.warning("ws_server.recv_error: %s", exc)


async def _serve_client(websocket: Any, hub: BridgeHub, cache: _HarmonyCache) -> None:
    remote = websocket.remote_address
    peer = f"{remote[0]}:{remote[1]}" if remote else "unknown"
    client_id = next(_client_ids)
    state = _ClientState(hub.default_format)

    events = hub.subscribe_events()
    metrics = hub.subscribe_metrics()
    now = time.monotonic()
    hub.register_client(
        ClientSnapshot(id=client_id, addr=peer, format=state.fmt, last_ping=now, connected_at=now)
    )

    outgoing: asyncio.Queue = asyncio.Queue(maxsize=_OUTGOING_CAPACITY)
    if cache.latest is not None:
        message = _encode(cache.latest, state.fmt)
        if message is not None:
            outgoing.put_nowait(message)

    tasks = [
        asyncio.create_task(_send_loop(websocket, outgoing)),
        asyncio.create_task(_pump(events, outgoing, state, cache)),
        asyncio.create_task(_pump(metrics, outgoing, state)),
        asyncio.create_task(_ping_loop(websocket, hub, client_id)),
        asyncio.create_task(_read_loop(websocket, hub, client_id, state)),
    ]
    try:
        await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        hub.unsubscribe(events)
        hub.unsubscribe(metrics)
        hub.remove_client(client_id)


async def start_ws_server(addr: str, hub: Optional[BridgeHub] = None) -> Any:
    """Listen on `host:port` and serve hub streams; returns the running server to close later."""
    if hub is None:
        hub = global_hub()
    host, port = _split_addr(addr)
    cache = _HarmonyCache()

    async def handler(websocket: Any) -> None:
        await _serve_client(websocket, hub, cache)

    try:
        server = await websockets.serve(handler, host, port)
    except OSError as exc:
        raise OSError(f"failed to bind websocket server to {addr}") from exc
    logger.info("ws_server.listening addr=%s", addr)
    return server