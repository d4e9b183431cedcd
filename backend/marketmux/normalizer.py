"""Convert upstream wire payloads into normalized records.

Pure functions, no state. The upstream transmits numbers as strings; they are
parsed to float here and nowhere else. Any problem with a payload raises
MalformedMessageError, which the caller counts and drops.

Both the compact exchange field names ('c', 'p', 'k.o', ...) and the long
names ('lastPrice', 'price', 'kline.openPrice', ...) are accepted.
"""

from __future__ import annotations

import math
import time
from collections.abc import Callable, Mapping
from typing import Any

from .errors import MalformedMessageError
from .models import (
    CANDLE_INTERVALS,
    Candle,
    Depth,
    NormalizedRecord,
    StreamKey,
    StreamKind,
    Ticker,
    Trade,
)


def parse_stream_name(stream: str) -> StreamKey:
    """Recover the StreamKey from an upstream stream name.

    'btcusdt@ticker'         -> (BTCUSDT, ticker)
    'btcusdt@depth20@1000ms' -> (BTCUSDT, depth)
    'btcusdt@trade'          -> (BTCUSDT, trade)
    'btcusdt@kline_1m'       -> (BTCUSDT, candle, 1m)
    """
    symbol, sep, suffix = stream.partition("@")
    if not sep or not symbol or not suffix:
        raise MalformedMessageError("unrecognized stream name", stream)

    kind_part = suffix.split("@", 1)[0]
    if kind_part == "ticker":
        return StreamKey(symbol.upper(), StreamKind.TICKER)
    if kind_part == "trade":
        return StreamKey(symbol.upper(), StreamKind.TRADE)
    if kind_part.startswith("depth"):
        return StreamKey(symbol.upper(), StreamKind.DEPTH)
    if kind_part.startswith("kline_"):
        interval = kind_part[len("kline_"):]
        if interval not in CANDLE_INTERVALS:
            raise MalformedMessageError(f"unknown candle interval {interval!r}", stream)
        return StreamKey(symbol.upper(), StreamKind.CANDLE, interval)
    raise MalformedMessageError(f"unknown stream kind {kind_part!r}", stream)


def normalize(stream: str, data: Any) -> NormalizedRecord:
    """Normalize one data frame's payload received on `stream`."""
    key = parse_stream_name(stream)
    if not isinstance(data, Mapping):
        raise MalformedMessageError(f"payload is {type(data).__name__}, expected object", stream)
    try:
        return _NORMALIZERS[key.kind](key, data)
    except (KeyError, TypeError, ValueError, IndexError, OverflowError) as e:
        raise MalformedMessageError(f"{type(e).__name__}: {e}", stream) from e


# --- Field helpers ---


def _field(data: Mapping[str, Any], *names: str) -> Any:
    """First present value among alternative field names."""
    for name in names:
        if name in data:
            return data[name]
    raise KeyError(names[0])


def _num(value: Any) -> float:
    """Parse a wire number. Rejects NaN/inf and booleans."""
    if isinstance(value, bool):
        raise TypeError(f"boolean is not a number: {value!r}")
    result = float(value)
    if not math.isfinite(result):
        raise ValueError(f"non-finite number: {value!r}")
    return result


def _ms_to_seconds(value: Any) -> float:
    return _num(value) / 1000.0


def _levels(raw: Any) -> tuple[tuple[float, float], ...]:
    return tuple((_num(price), _num(qty)) for price, qty in raw)


# --- Per-kind normalizers ---


def _ticker(key: StreamKey, data: Mapping[str, Any]) -> Ticker:
    return Ticker(
        symbol=key.symbol,
        price=_num(_field(data, "c", "lastPrice")),
        change_percent=_num(_field(data, "P", "priceChangePercent")),
        volume=_num(_field(data, "v", "volume")),
        high=_num(_field(data, "h", "highPrice")),
        low=_num(_field(data, "l", "lowPrice")),
        bid=_num(_field(data, "b", "bidPrice")),
        ask=_num(_field(data, "a", "askPrice")),
        timestamp=_ms_to_seconds(_field(data, "E", "C", "closeTime")),
    )


def _depth(key: StreamKey, data: Mapping[str, Any]) -> Depth:
    # Partial book depth payloads carry no event time
    event_time = data.get("E")
    return Depth(
        symbol=key.symbol,
        bids=_levels(_field(data, "bids", "b")),
        asks=_levels(_field(data, "asks", "a")),
        timestamp=_ms_to_seconds(event_time) if event_time is not None else time.time(),
    )


def _trade(key: StreamKey, data: Mapping[str, Any]) -> Trade:
    buyer_is_maker = _field(data, "m", "isBuyerMaker")
    if not isinstance(buyer_is_maker, bool):
        raise TypeError(f"buyer-maker flag must be boolean, got {buyer_is_maker!r}")
    return Trade(
        symbol=key.symbol,
        price=_num(_field(data, "p", "price")),
        quantity=_num(_field(data, "q", "qty")),
        side="sell" if buyer_is_maker else "buy",
        timestamp=_ms_to_seconds(_field(data, "T", "time")),
    )


def _candle(key: StreamKey, data: Mapping[str, Any]) -> Candle:
    k = _field(data, "k", "kline")
    if not isinstance(k, Mapping):
        raise TypeError("kline payload must be an object")
    is_final = _field(k, "x", "isFinal")
    if not isinstance(is_final, bool):
        raise TypeError(f"kline final flag must be boolean, got {is_final!r}")
    interval = _field(k, "i", "interval")
    if interval != key.interval:
        raise ValueError(f"interval {interval!r} does not match stream")
    close_time = _ms_to_seconds(_field(k, "T", "endTime"))
    return Candle(
        symbol=key.symbol,
        interval=key.interval,
        open_time=_ms_to_seconds(_field(k, "t", "startTime")),
        close_time=close_time,
        open=_num(_field(k, "o", "openPrice")),
        high=_num(_field(k, "h", "highPrice")),
        low=_num(_field(k, "l", "lowPrice")),
        close=_num(_field(k, "c", "closePrice")),
        volume=_num(_field(k, "v", "volume")),
        trades=int(_field(k, "n", "numberOfTrades")),
        is_final=is_final,
        timestamp=close_time,
    )


_NORMALIZERS: dict[StreamKind, Callable[[StreamKey, Mapping[str, Any]], NormalizedRecord]] = {
    StreamKind.TICKER: _ticker,
    StreamKind.DEPTH: _depth,
    StreamKind.TRADE: _trade,
    StreamKind.CANDLE: _candle,
}
