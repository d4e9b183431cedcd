"""Abstract interfaces at the upstream boundary."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Iterable

from .models import StreamKey


class UpstreamConnection(ABC):
    """One open, full-duplex message connection to the upstream feed.

    Every method raises TransportError on connection-level failure.
    """

    @abstractmethod
    async def send(self, message: str) -> None:
        """Send one text frame."""

    @abstractmethod
    async def recv(self) -> str | bytes:
        """Wait for the next inbound frame. Raises TransportError once closed."""

    @abstractmethod
    async def ping(self) -> Awaitable[object]:
        """Send a liveness probe.

        Returns an awaitable that completes when the matching acknowledgment
        arrives. It may never complete on a silently dead socket.
        """

    @abstractmethod
    async def close(self) -> None:
        """Close the connection. Safe to call more than once."""


class Transport(ABC):
    """Factory for upstream connections.

    Lifecycle:
        conn = await transport.connect(url)
        await conn.send(...)
        frame = await conn.recv()
        await conn.close()
    """

    @abstractmethod
    async def connect(self, url: str) -> UpstreamConnection:
        """Open a connection. Raises TransportError if it cannot be established."""


class UpstreamControl(ABC):
    """The only way other components affect the upstream connection."""

    @abstractmethod
    def issue_subscribe(self, keys: Iterable[StreamKey]) -> None:
        """Start the given streams upstream. No-op while not connected."""

    @abstractmethod
    def issue_unsubscribe(self, keys: Iterable[StreamKey]) -> None:
        """Stop the given streams upstream. No-op while not connected."""
