"""Data models for the market data multiplexer."""

from __future__ import annotations

import enum
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Union

DEPTH_LEVELS = 20
DEPTH_UPDATE_SPEED = "1000ms"
DEFAULT_CANDLE_INTERVAL = "1m"

CANDLE_INTERVALS: frozenset[str] = frozenset(
    {"1m", "3m", "5m", "15m", "30m", "1h", "2h", "4h", "6h", "8h", "12h", "1d", "3d", "1w", "1M"}
)


class StreamKind(str, enum.Enum):
    """Kind of upstream feed for one symbol."""

    TICKER = "ticker"
    DEPTH = "depth"
    TRADE = "trade"
    CANDLE = "candle"


class ConnectionState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"
    RECONNECTING = "reconnecting"
    STOPPED = "stopped"


@dataclass(frozen=True, slots=True)
class StreamKey:
    """Identifies one logical upstream feed: (symbol, kind[, interval]).

    Only candle keys carry an interval. Symbols are stored upper-case.
    """

    symbol: str
    kind: StreamKind
    interval: str | None = None

    @classmethod
    def of(cls, symbol: str, kind: StreamKind | str, interval: str | None = None) -> StreamKey:
        """Build a validated key from loose caller input.

        Raises ValueError for an empty symbol, unknown kind or unknown interval.
        """
        symbol = symbol.upper().strip()
        if not symbol:
            raise ValueError("symbol must not be empty")
        kind = StreamKind(kind)
        if kind is StreamKind.CANDLE:
            interval = interval or DEFAULT_CANDLE_INTERVAL
            if interval not in CANDLE_INTERVALS:
                raise ValueError(f"unsupported candle interval: {interval!r}")
        else:
            interval = None
        return cls(symbol=symbol, kind=kind, interval=interval)

    @property
    def stream_name(self) -> str:
        """Upstream stream identifier, e.g. 'btcusdt@ticker'."""
        base = self.symbol.lower()
        if self.kind is StreamKind.DEPTH:
            return f"{base}@depth{DEPTH_LEVELS}@{DEPTH_UPDATE_SPEED}"
        if self.kind is StreamKind.CANDLE:
            return f"{base}@kline_{self.interval}"
        return f"{base}@{self.kind.value}"

    def __str__(self) -> str:
        return self.stream_name


def build_stream_keys(
    symbols: list[str],
    kinds: list[StreamKind | str],
    interval: str | None = None,
) -> frozenset[StreamKey]:
    """Cross product of symbols and kinds as a set of StreamKeys."""
    return frozenset(StreamKey.of(symbol, kind, interval) for symbol in symbols for kind in kinds)


# --- Normalized records ---


@dataclass(frozen=True, slots=True)
class Ticker:
    """Rolling 24h ticker for one symbol."""

    symbol: str
    price: float
    change_percent: float
    volume: float
    high: float
    low: float
    bid: float
    ask: float
    timestamp: float  # Unix seconds

    @property
    def stream_key(self) -> StreamKey:
        return StreamKey(self.symbol, StreamKind.TICKER)

    @property
    def spread(self) -> float:
        return round(self.ask - self.bid, 8)

    def to_dict(self) -> dict:
        return {
            "kind": StreamKind.TICKER.value,
            "symbol": self.symbol,
            "price": self.price,
            "change_percent": self.change_percent,
            "volume": self.volume,
            "high": self.high,
            "low": self.low,
            "bid": self.bid,
            "ask": self.ask,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True, slots=True)
class Depth:
    """Top-of-book snapshot: (price, quantity) levels, best first."""

    symbol: str
    bids: tuple[tuple[float, float], ...]
    asks: tuple[tuple[float, float], ...]
    timestamp: float

    @property
    def stream_key(self) -> StreamKey:
        return StreamKey(self.symbol, StreamKind.DEPTH)

    @property
    def best_bid(self) -> float | None:
        return self.bids[0][0] if self.bids else None

    @property
    def best_ask(self) -> float | None:
        return self.asks[0][0] if self.asks else None

    def to_dict(self) -> dict:
        return {
            "kind": StreamKind.DEPTH.value,
            "symbol": self.symbol,
            "bids": [list(level) for level in self.bids],
            "asks": [list(level) for level in self.asks],
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True, slots=True)
class Trade:
    symbol: str
    price: float
    quantity: float
    side: str  # 'buy' or 'sell' (taker side)
    timestamp: float

    @property
    def stream_key(self) -> StreamKey:
        return StreamKey(self.symbol, StreamKind.TRADE)

    def to_dict(self) -> dict:
        return {
            "kind": StreamKind.TRADE.value,
            "symbol": self.symbol,
            "price": self.price,
            "quantity": self.quantity,
            "side": self.side,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True, slots=True)
class Candle:
    """One OHLCV bar. is_final is False while the bar is still forming."""

    symbol: str
    interval: str
    open_time: float
    close_time: float
    open: float
    high: float
    low: float
    close: float
    volume: float
    trades: int
    is_final: bool
    timestamp: float

    @property
    def stream_key(self) -> StreamKey:
        return StreamKey(self.symbol, StreamKind.CANDLE, self.interval)

    def to_dict(self) -> dict:
        return {
            "kind": StreamKind.CANDLE.value,
            "symbol": self.symbol,
            "interval": self.interval,
            "open_time": self.open_time,
            "close_time": self.close_time,
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
            "volume": self.volume,
            "trades": self.trades,
            "is_final": self.is_final,
            "timestamp": self.timestamp,
        }


NormalizedRecord = Union[Ticker, Depth, Trade, Candle]
RecordCallback = Callable[[NormalizedRecord], None]


# --- Subscriptions and stats ---


@dataclass(frozen=True, slots=True)
class SubscriptionHandle:
    """Returned to callers of subscribe(); pass it back to unsubscribe()."""

    id: str
    stream_keys: frozenset[StreamKey]


@dataclass(slots=True)
class Subscription:
    """One caller's registration. Owned by the SubscriptionRegistry."""

    id: str
    stream_keys: frozenset[StreamKey]
    callback: RecordCallback = field(repr=False)

    @property
    def handle(self) -> SubscriptionHandle:
        return SubscriptionHandle(id=self.id, stream_keys=self.stream_keys)


@dataclass(frozen=True, slots=True)
class MultiplexerStats:
    connected: bool
    state: ConnectionState
    active_subscriptions: int
    active_stream_keys: int
    messages_processed: int
    reconnect_attempts: int
    total_reconnects: int
    dropped_messages: int
    cached_records: int

    def to_dict(self) -> dict:
        return {
            "connected": self.connected,
            "state": self.state.value,
            "active_subscriptions": self.active_subscriptions,
            "active_stream_keys": self.active_stream_keys,
            "messages_processed": self.messages_processed,
            "reconnect_attempts": self.reconnect_attempts,
            "total_reconnects": self.total_reconnects,
            "dropped_messages": self.dropped_messages,
            "cached_records": self.cached_records,
        }
