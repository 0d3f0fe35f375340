"""Duplex JSON transport to the remote audio agent.

Every frame is one JSON object. The client sends ``{"setup": {...}}`` once,
waits for ``{"setupComplete": {}}``, then streams ``realtimeAudio``,
``clientText`` and ``toolResponse`` messages while reading events.
"""

import asyncio
import json
import logging
from typing import AsyncIterator

import websockets

from session_events import EventKind, TransportError, TransportEvent, parse_message

logger = logging.getLogger(__name__)

HANDSHAKE_TIMEOUT = 10.0


class WebSocketTransport:
    """JSON-over-WebSocket transport.

    Use ``await WebSocketTransport.open(url, setup)``; the returned transport
    has completed the setup handshake.
    """

    def __init__(self, ws):
        self._ws = ws
        self._closed = False
        self._pending_events: list[TransportEvent] = []
        self._send_tasks: set[asyncio.Task] = set()

    @classmethod
    async def open(cls, url: str, setup: dict, api_key: str | None = None,
                   handshake_timeout: float = HANDSHAKE_TIMEOUT) -> "WebSocketTransport":
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        try:
            ws = await websockets.connect(
                url,
                additional_headers=headers,
                ping_interval=20,
                max_size=None,
            )
        except (OSError, websockets.exceptions.WebSocketException) as e:
            raise TransportError(f"could not connect to {url}: {e}") from e

        transport = cls(ws)
        try:
            await transport.send({"setup": setup})
            await asyncio.wait_for(transport._await_setup_complete(), handshake_timeout)
        except (TransportError, asyncio.TimeoutError) as e:
            await transport.close()
            if isinstance(e, asyncio.TimeoutError):
                raise TransportError("setup handshake timed out") from e
            raise
        return transport

    async def _await_setup_complete(self):
        while True:
            try:
                message = await self._ws.recv()
            except websockets.exceptions.ConnectionClosed as e:
                raise TransportError(f"closed during setup: {e}") from e
            for event in self._decode(message):
                if event.kind == EventKind.SETUP_COMPLETE:
                    return
                if event.kind == EventKind.ERROR:
                    raise TransportError(f"setup rejected: {event.data}")
                # Anything sent ahead of the acknowledgement is replayed later
                self._pending_events.append(event)

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, message: dict):
        if self._closed:
            raise TransportError("transport is closed")
        try:
            await self._ws.send(json.dumps(message))
        except websockets.exceptions.ConnectionClosed as e:
            raise TransportError(f"send failed: {e}") from e

    def send_nowait(self, message: dict):
        """Fire-and-forget send. Failures are logged, never raised."""
        if self._closed:
            return
        task = asyncio.get_running_loop().create_task(self.send(message))
        self._send_tasks.add(task)
        task.add_done_callback(self._send_done)

    def _send_done(self, task: asyncio.Task):
        self._send_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Transport send dropped: %s", exc)

    async def events(self) -> AsyncIterator[TransportEvent]:
        """Yield inbound events until the connection closes.

        Returns normally on a clean close; raises TransportError otherwise.
        """
        while self._pending_events:
            yield self._pending_events.pop(0)
        try:
            async for message in self._ws:
                for event in self._decode(message):
                    yield event
        except websockets.exceptions.ConnectionClosedError as e:
            raise TransportError(f"connection lost: {e}") from e

    def _decode(self, message) -> list[TransportEvent]:
        if isinstance(message, bytes):
            message = message.decode("utf-8", errors="replace")
        try:
            data = json.loads(message)
        except json.JSONDecodeError:
            logger.warning("Non-JSON message from transport: %.80s", message)
            return [TransportEvent(EventKind.UNKNOWN, data=message)]
        return parse_message(data)

    async def close(self):
        if self._closed:
            return
        self._closed = True
        for task in list(self._send_tasks):
            task.cancel()
        self._send_tasks.clear()
        await self._ws.close()
