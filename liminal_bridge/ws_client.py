"""Websocket client that exchanges JSON values with a remote stream server."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from .stream_codec import StreamFormat, decode_message, encode_message

logger = logging.getLogger(__name__)

_QUEUE_CAPACITY = 64


class WsHandle:
    """Queues outgoing values to a connection and collects decoded incoming ones."""

    def __init__(self, connection: Any) -> None:
        self._connection = connection
        self._outgoing: asyncio.Queue = asyncio.Queue(maxsize=_QUEUE_CAPACITY)
        self._incoming: asyncio.Queue = asyncio.Queue(maxsize=_QUEUE_CAPACITY)
        self._writer = asyncio.create_task(self._write_loop())
        self._reader = asyncio.create_task(self._read_loop())

    async def _write_loop(self) -> None:
        while True:
            value = await self._outgoing.get()
            try:
                message = encode_message(value, StreamFormat.JSON)
            except (ValueError, TypeError) as exc:
                logger.warning("ws_client.encode_failed: %s", exc)
                continue
            try:
                await self._connection.send(message)
            except ConnectionClosed:
                return

    async def _read_loop(self) -> None:
        try:
            async for message in self._connection:
                try:
                    value, _ = decode_message(message)
                except ValueError as exc:
                    logger.warning("ws_client.decode_failed: %s", exc)
                    continue
                await self._incoming.put(value)
        except ConnectionClosed as exc:
            logger.warning("ws_client.recv_error: %s", exc)

    async def send(self, value: Any) -> None:
        """Queue a value for sending; raises ConnectionError once the link is gone."""
        if self._writer.done():
            raise ConnectionError("ws client disconnected")
        await self._outgoing.put(value)

    async def recv(self) -> Optional[Any]:
        """Next decoded value, or None once the connection has closed and nothing is left."""
        if not self._incoming.empty():
            return self._incoming.get_nowait()
        if self._reader.done():
            return None
        getter = asyncio.ensure_future(self._incoming.get())
        try:
            done, _ = await asyncio.wait(
                {getter, self._reader}, return_when=asyncio.FIRST_COMPLETED
            )
            if getter in done:
                return getter.result()
        finally:
            if not getter.done():
                getter.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await getter
        return None if self._incoming.empty() else self._incoming.get_nowait()

    async def close(self) -> None:
        for task in (self._writer, self._reader):
            task.cancel()
        await asyncio.gather(self._writer, self._reader, return_exceptions=True)
        with contextlib.suppress(ConnectionClosed, OSError):
            await self._connection.close()


async def connect_ws(url: str) -> WsHandle:
    """Open a websocket to `url` and return a handle for exchanging JSON values."""
    try:
        connection = await websockets.connect(url)
    except (OSError, WebSocketException, asyncio.TimeoutError) as exc:
        raise ConnectionError(f"failed to connect to websocket {url}") from exc
    return WsHandle(connection)