"""WebSocket transport backed by the `websockets` package."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from typing import Any

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from .errors import TransportError
from .interface import Transport, UpstreamConnection

logger = logging.getLogger(__name__)


class WebsocketConnection(UpstreamConnection):
    """UpstreamConnection over an open `websockets` client connection."""

    def __init__(self, ws: Any) -> None:
        self._ws = ws

    async def send(self, message: str) -> None:
        try:
            await self._ws.send(message)
        except (ConnectionClosed, WebSocketException, OSError) as e:
            raise TransportError(f"send failed: {e}") from e

    async def recv(self) -> str | bytes:
        try:
            return await self._ws.recv()
        except ConnectionClosed as e:
            raise TransportError(f"connection closed: {e}") from e
        except (WebSocketException, OSError) as e:
            raise TransportError(f"receive failed: {e}") from e

    async def ping(self) -> Awaitable[object]:
        try:
            return await self._ws.ping()
        except (ConnectionClosed, WebSocketException, OSError) as e:
            raise TransportError(f"ping failed: {e}") from e

    async def close(self) -> None:
        try:
            await self._ws.close()
        except (WebSocketException, OSError) as e:
            logger.debug("Error while closing websocket: %s", e)


class WebsocketTransport(Transport):
    """Opens websocket connections with library-level keepalive disabled.

    Liveness is driven by the supervisor's own heartbeat, so `ping_interval`
    is always None here.
    """

    def __init__(
        self,
        open_timeout: float = 10.0,
        close_timeout: float = 5.0,
        max_size: int | None = 2**22,
    ) -> None:
        self._open_timeout = open_timeout
        self._close_timeout = close_timeout
        self._max_size = max_size

    async def connect(self, url: str) -> WebsocketConnection:
        logger.info("Connecting to %s", url)
        try:
            ws = await websockets.connect(
                url,
                ping_interval=None,
                open_timeout=self._open_timeout,
                close_timeout=self._close_timeout,
                max_size=self._max_size,
            )
        except (WebSocketException, OSError, asyncio.TimeoutError) as e:
            raise TransportError(f"connect to {url} failed: {e}") from e
        return WebsocketConnection(ws)
