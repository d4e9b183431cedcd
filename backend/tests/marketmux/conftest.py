"""Fixtures for multiplexer tests.

The upstream is faked in-process: FakeTransport hands out FakeConnections whose
inbound frames are scripted by the test and whose outbound commands are
recorded. Time is controlled with FakeClock (monotonic clock) and
RecordingSleep (reconnect backoff), so no network and no real waiting.
"""

import asyncio
import json
from collections.abc import Iterable

import pytest

from marketmux.errors import TransportError
from marketmux.interface import Transport, UpstreamConnection, UpstreamControl
from marketmux.models import StreamKey


class FakeConnection(UpstreamConnection):
    def __init__(self, auto_pong: bool = True) -> None:
        self.sent: list[dict] = []
        self.inbound: asyncio.Queue = asyncio.Queue()
        self.closed = False
        self.auto_pong = auto_pong
        self.pings = 0

    async def send(self, message: str) -> None:
        if self.closed:
            raise TransportError("send on closed connection")
        self.sent.append(json.loads(message))

    async def recv(self):
        item = await self.inbound.get()
        if isinstance(item, BaseException):
            raise item
        return item

    async def ping(self):
        self.pings += 1
        waiter = asyncio.get_running_loop().create_future()
        if self.auto_pong:
            waiter.set_result(0.0)
        return waiter

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.inbound.put_nowait(TransportError("closed locally"))

    # --- Test helpers ---

    def push(self, payload) -> None:
        """Queue one inbound frame. Dicts are JSON-encoded."""
        if not isinstance(payload, (str, bytes)):
            payload = json.dumps(payload)
        self.inbound.put_nowait(payload)

    def push_data(self, stream: str, data: dict) -> None:
        self.push({"stream": stream, "data": data})

    def drop(self) -> None:
        """Simulate an abrupt remote close."""
        self.inbound.put_nowait(TransportError("connection reset by peer"))

    def commands(self, method: str | None = None) -> list[dict]:
        return [c for c in self.sent if method is None or c["method"] == method]


class FakeTransport(Transport):
    def __init__(self, auto_pong: bool = True) -> None:
        self.connections: list[FakeConnection] = []
        self.urls: list[str] = []
        self.fail_next = 0
        self.auto_pong = auto_pong

    async def connect(self, url: str) -> FakeConnection:
        self.urls.append(url)
        if self.fail_next > 0:
            self.fail_next -= 1
            raise TransportError("connection refused")
        conn = FakeConnection(auto_pong=self.auto_pong)
        self.connections.append(conn)
        return conn

    @property
    def connect_calls(self) -> int:
        return len(self.urls)

    @property
    def latest(self) -> FakeConnection:
        return self.connections[-1]


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Stands in for asyncio.sleep in the backoff path; records requested delays.

    hold() makes the next sleeps block until release(), to freeze the
    supervisor in RECONNECTING.
    """

    def __init__(self) -> None:
        self.delays: list[float] = []
        self._gate: asyncio.Event | None = None

    def hold(self) -> None:
        self._gate = asyncio.Event()

    def release(self) -> None:
        if self._gate is not None:
            self._gate.set()
            self._gate = None

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        gate = self._gate
        if gate is not None:
            await gate.wait()
        else:
            await asyncio.sleep(0)


class FakeUpstream(UpstreamControl):
    """Records issue_subscribe/issue_unsubscribe calls from the registry."""

    def __init__(self) -> None:
        self.subscribed: list[frozenset[StreamKey]] = []
        self.unsubscribed: list[frozenset[StreamKey]] = []
        self.active: set[StreamKey] = set()

    def issue_subscribe(self, keys: Iterable[StreamKey]) -> None:
        keys = frozenset(keys)
        self.subscribed.append(keys)
        self.active |= keys

    def issue_unsubscribe(self, keys: Iterable[StreamKey]) -> None:
        keys = frozenset(keys)
        self.unsubscribed.append(keys)
        self.active -= keys


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def backoff_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


# --- Wire payload builders ---


def ticker_payload(last: str = "65000.12", event_ms: int = 1707580800000) -> dict:
    return {
        "e": "24hrTicker",
        "E": event_ms,
        "s": "BTCUSDT",
        "c": last,
        "P": "1.25",
        "v": "12345.678",
        "h": "66000.00",
        "l": "64000.00",
        "b": "65000.10",
        "a": "65000.20",
    }


def trade_payload(price: str = "3200.50", qty: str = "0.75", buyer_is_maker: bool = False) -> dict:
    return {
        "e": "trade",
        "E": 1707580800123,
        "s": "ETHUSDT",
        "t": 12345,
        "p": price,
        "q": qty,
        "T": 1707580800100,
        "m": buyer_is_maker,
    }


def depth_payload() -> dict:
    return {
        "lastUpdateId": 160,
        "bids": [["64999.90", "1.5"], ["64999.80", "2.0"]],
        "asks": [["65000.10", "0.5"], ["65000.20", "3.25"]],
    }


def candle_payload(interval: str = "1m", closed: bool = False) -> dict:
    return {
        "e": "kline",
        "E": 1707580859999,
        "s": "BTCUSDT",
        "k": {
            "t": 1707580800000,
            "T": 1707580859999,
            "s": "BTCUSDT",
            "i": interval,
            "o": "65000.00",
            "c": "65100.50",
            "h": "65200.00",
            "l": "64950.25",
            "v": "42.5",
            "n": 310,
            "x": closed,
        },
    }


@pytest.fixture
def payloads():
    """Namespace of wire payload builders."""

    class _Payloads:
        ticker = staticmethod(ticker_payload)
        trade = staticmethod(trade_payload)
        depth = staticmethod(depth_payload)
        candle = staticmethod(candle_payload)

    return _Payloads
