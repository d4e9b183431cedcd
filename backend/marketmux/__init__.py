"""Real-time market data multiplexer.

Public API:
    MarketDataMultiplexer - One upstream connection shared by many subscribers
    MultiplexerSettings   - Tunables, loadable from MARKETMUX_* env vars
    create_multiplexer    - Factory that wires settings and the websocket transport
    StreamKey, StreamKind - Identify one upstream feed
    Ticker, Depth, Trade, Candle - Normalized records
    SnapshotCache         - Thread-safe latest-value store with staleness
    create_stream_router  - FastAPI router factory for SSE and snapshot endpoints
"""

from .cache import SnapshotCache
from .config import MultiplexerSettings
from .errors import (
    ExhaustedReconnectError,
    MalformedMessageError,
    MultiplexerError,
    SubscriberCallbackError,
    TransportError,
)
from .factory import create_multiplexer
from .models import (
    Candle,
    ConnectionState,
    Depth,
    MultiplexerStats,
    NormalizedRecord,
    StreamKey,
    StreamKind,
    SubscriptionHandle,
    Ticker,
    Trade,
)
from .multiplexer import MarketDataMultiplexer
from .stream import create_stream_router

__all__ = [
    "Candle",
    "ConnectionState",
    "Depth",
    "ExhaustedReconnectError",
    "MalformedMessageError",
    "MarketDataMultiplexer",
    "MultiplexerError",
    "MultiplexerSettings",
    "MultiplexerStats",
    "NormalizedRecord",
    "SnapshotCache",
    "StreamKey",
    "StreamKind",
    "SubscriberCallbackError",
    "SubscriptionHandle",
    "Ticker",
    "Trade",
    "TransportError",
    "create_multiplexer",
    "create_stream_router",
]
