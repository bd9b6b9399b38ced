"""Process-wide hub that fans events and metrics out to stream clients and queues their commands."""

from __future__ import annotations

import asyncio
import dataclasses
import enum
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from .stream_codec import StreamFormat


@dataclass
class StreamEvent:
    payload: Any


@dataclass
class StreamMetrics:
    payload: Any


class CommandKind(enum.Enum):
    IMPULSE = "impulse"
    LQL = "lql"
    POLICY_SET = "policy.set"
    SUBSCRIBE = "subscribe"
    DREAM_NOW = "dream.now"
    DREAM_SET = "dream.set"
    DREAM_GET = "dream.get"
    SYNC_NOW = "sync.now"
    SYNC_SET = "sync.set"
    SYNC_GET = "sync.get"
    RAW = "raw"


@dataclass
class IncomingCommand:
    """A command received from a stream client; only the fields its kind uses are set."""

    kind: CommandKind
    data: Any = None
    query: Optional[str] = None
    pattern: Optional[str] = None
    cfg: Any = None


@dataclass
class ClientSnapshot:
    id: int
    addr: str
    format: StreamFormat = StreamFormat.JSON
    last_ping: float = field(default_factory=time.monotonic)
    connected_at: float = field(default_factory=time.monotonic)


@dataclass
class _Subscriber:
    queue: asyncio.Queue
    loop: Optional[asyncio.AbstractEventLoop]


def _running_loop() -> Optional[asyncio.AbstractEventLoop]:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


def _deliver(queue: asyncio.Queue, item: Any) -> None:
    """Put an item, dropping the oldest one when the subscriber lags behind."""
    if queue.full():
        try:
            queue.get_nowait()
        except asyncio.QueueEmpty:
            pass
    queue.put_nowait(item)


class BridgeHub:
    """Broadcast channels for events and metrics, a command queue and the client registry."""

    EVENT_CAPACITY = 1024
    METRICS_CAPACITY = 32
    COMMAND_CAPACITY = 128

    def __init__(self, default_format: StreamFormat = StreamFormat.JSON) -> None:
        self._lock = threading.Lock()
        self._event_subscribers: list[_Subscriber] = []
        self._metrics_subscribers: list[_Subscriber] = []
        self._commands: asyncio.Queue = asyncio.Queue(maxsize=self.COMMAND_CAPACITY)
        self._commands_taken = False
        self._clients: list[ClientSnapshot] = []
        self.default_format = default_format

    def _broadcast(self, subscribers: list[_Subscriber], item: Any) -> None:
        with self._lock:
            targets = list(subscribers)
        current = _running_loop()
        for subscriber in targets:
            if subscriber.loop is None or subscriber.loop is current:
                _deliver(subscriber.queue, item)
            else:
                try:
                    subscriber.loop.call_soon_threadsafe(_deliver, subscriber.queue, item)
                except RuntimeError:
                    self.unsubscribe(subscriber.queue)

    def publish_event(self, payload: Any) -> None:
        """Broadcast an event, tagging its meta with `source: ws`."""
        if isinstance(payload, dict):
            payload = dict(payload)
            meta = payload.setdefault("meta", {})
            if isinstance(meta, dict):
                meta = dict(meta)
                meta["source"] = "ws"
                payload["meta"] = meta
        self._broadcast(self._event_subscribers, StreamEvent(payload))

    def publish_metrics(self, payload: Any) -> None:
        self._broadcast(self._metrics_subscribers, StreamMetrics(payload))

    def _subscribe(self, subscribers: list[_Subscriber], capacity: int) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=capacity)
        with self._lock:
            subscribers.append(_Subscriber(queue, _running_loop()))
        return queue

    def subscribe_events(self) -> asyncio.Queue:
        return self._subscribe(self._event_subscribers, self.EVENT_CAPACITY)

    def subscribe_metrics(self) -> asyncio.Queue:
        return self._subscribe(self._metrics_subscribers, self.METRICS_CAPACITY)

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        with self._lock:
            self._event_subscribers[:] = [s for s in self._event_subscribers if s.queue is not queue]
            self._metrics_subscribers[:] = [
                s for s in self._metrics_subscribers if s.queue is not queue
            ]

    async def send_command(self, command: IncomingCommand) -> None:
        await self._commands.put(command)

    def take_command_receiver(self) -> Optional[asyncio.Queue]:
        """Hand out the command queue once; later calls get None."""
        with self._lock:
            if self._commands_taken:
                return None
            self._commands_taken = True
            return self._commands

    def list_clients(self) -> list[ClientSnapshot]:
        with self._lock:
            return [dataclasses.replace(client) for client in self._clients]

    def register_client(self, snapshot: ClientSnapshot) -> None:
        with self._lock:
            self._clients.append(snapshot)

    def _find(self, client_id: int) -> Optional[ClientSnapshot]:
        return next((c for c in self._clients if c.id == client_id), None)

    def update_ping(self, client_id: int) -> None:
        with self._lock:
            client = self._find(client_id)
            if client is not None:
                client.last_ping = time.monotonic()

    def remove_client(self, client_id: int) -> None:
        with self._lock:
            self._clients[:] = [c for c in self._clients if c.id != client_id]

    def update_client_format(self, client_id: int, fmt: StreamFormat) -> None:
        with self._lock:
            client = self._find(client_id)
            if client is not None:
                client.format = fmt


_GLOBAL_HUB = BridgeHub()


def global_hub() -> BridgeHub:
    return _GLOBAL_HUB


def _format_name(fmt: Union[StreamFormat, Any]) -> str:
    return fmt.name.capitalize() if isinstance(fmt, StreamFormat) else str(fmt)


def format_clients(clients: list[ClientSnapshot]) -> list[str]:
    """One descriptive line per connected client."""
    now = time.monotonic()
    return [
        f"id={client.id} addr={client.addr} "
        f"connected={int(max(now - client.connected_at, 0.0))}s ago "
        f"format={_format_name(client.format)}"
        for client in clients
    ]