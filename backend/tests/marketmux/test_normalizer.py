"""Tests for the wire-to-record normalizer."""

import pytest

from marketmux.errors import MalformedMessageError
from marketmux.models import Candle, Depth, StreamKey, StreamKind, Ticker, Trade
from marketmux.normalizer import normalize, parse_stream_name


class TestParseStreamName:
    """Unit tests for parse_stream_name."""

    @pytest.mark.parametrize(
        ("stream", "expected"),
        [
            ("btcusdt@ticker", StreamKey("BTCUSDT", StreamKind.TICKER)),
            ("ethusdt@trade", StreamKey("ETHUSDT", StreamKind.TRADE)),
            ("btcusdt@depth20@1000ms", StreamKey("BTCUSDT", StreamKind.DEPTH)),
            ("btcusdt@depth", StreamKey("BTCUSDT", StreamKind.DEPTH)),
            ("solusdt@kline_1h", StreamKey("SOLUSDT", StreamKind.CANDLE, "1h")),
        ],
    )
    def test_known_streams(self, stream, expected):
        """Test recovering symbol and kind from stream names."""
        assert parse_stream_name(stream) == expected

    def test_round_trips_stream_key_names(self):
        """Test that every key's own stream name parses back to the key."""
        for key in [
            StreamKey.of("BTCUSDT", "ticker"),
            StreamKey.of("BTCUSDT", "depth"),
            StreamKey.of("BTCUSDT", "trade"),
            StreamKey.of("BTCUSDT", "candle", "1M"),
        ]:
            assert parse_stream_name(key.stream_name) == key

    @pytest.mark.parametrize("stream", ["btcusdt", "@ticker", "btcusdt@", "btcusdt@bookTicker", "btcusdt@kline_7m"])
    def test_unrecognized_streams(self, stream):
        """Test that unknown suffixes raise MalformedMessageError."""
        with pytest.raises(MalformedMessageError):
            parse_stream_name(stream)


class TestNormalize:
    """Unit tests for normalize()."""

    def test_ticker(self, payloads):
        """Test that ticker strings are parsed to floats."""
        record = normalize("btcusdt@ticker", payloads.ticker("65000.12"))
        assert isinstance(record, Ticker)
        assert record.symbol == "BTCUSDT"
        assert record.price == 65000.12
        assert record.change_percent == 1.25
        assert record.bid == 65000.10
        assert record.ask == 65000.20

    def test_ticker_timestamp_in_seconds(self, payloads):
        """Test that millisecond event times become Unix seconds."""
        record = normalize("btcusdt@ticker", payloads.ticker(event_ms=1707580800500))
        assert record.timestamp == 1707580800.5

    def test_ticker_long_field_names(self):
        """Test that descriptive field names are accepted too."""
        data = {
            "symbol": "BTCUSDT",
            "lastPrice": "100.5",
            "priceChangePercent": "-2.0",
            "volume": "10",
            "highPrice": "110",
            "lowPrice": "90",
            "bidPrice": "100.4",
            "askPrice": "100.6",
            "closeTime": 1707580800000,
        }
        record = normalize("btcusdt@ticker", data)
        assert record.price == 100.5
        assert record.change_percent == -2.0
        assert record.timestamp == 1707580800.0

    def test_depth(self, payloads):
        """Test that depth levels become (price, quantity) float tuples."""
        record = normalize("btcusdt@depth20@1000ms", payloads.depth())
        assert isinstance(record, Depth)
        assert record.bids == ((64999.90, 1.5), (64999.80, 2.0))
        assert record.asks[1] == (65000.20, 3.25)
        assert record.timestamp > 0

    def test_trade_taker_buy(self, payloads):
        """Test that a buyer-taker trade is a 'buy'."""
        record = normalize("ethusdt@trade", payloads.trade(buyer_is_maker=False))
        assert isinstance(record, Trade)
        assert record.price == 3200.50
        assert record.quantity == 0.75
        assert record.side == "buy"
        assert record.timestamp == 1707580800.1

    def test_trade_buyer_maker_is_sell(self, payloads):
        """Test that a buyer-maker trade is a 'sell'."""
        record = normalize("ethusdt@trade", payloads.trade(buyer_is_maker=True))
        assert record.side == "sell"

    def test_candle(self, payloads):
        """Test candle OHLCV parsing."""
        record = normalize("btcusdt@kline_1m", payloads.candle("1m", closed=True))
        assert isinstance(record, Candle)
        assert record.interval == "1m"
        assert record.open == 65000.00
        assert record.close == 65100.50
        assert record.high == 65200.00
        assert record.low == 64950.25
        assert record.trades == 310
        assert record.is_final is True
        assert record.open_time == 1707580800.0
        assert record.timestamp == record.close_time

    def test_candle_interval_mismatch(self, payloads):
        """Test that a payload for a different interval is rejected."""
        with pytest.raises(MalformedMessageError):
            normalize("btcusdt@kline_1m", payloads.candle("5m"))

    def test_symbol_comes_from_stream_name(self, payloads):
        """Test that the stream name, not the payload, decides the symbol."""
        record = normalize("ethusdt@ticker", payloads.ticker())
        assert record.symbol == "ETHUSDT"

    def test_unparseable_number(self, payloads):
        """Test that a non-numeric string is a malformed message."""
        with pytest.raises(MalformedMessageError) as exc_info:
            normalize("btcusdt@ticker", payloads.ticker("not-a-price"))
        assert exc_info.value.stream == "btcusdt@ticker"

    def test_non_finite_number(self, payloads):
        """Test that NaN is rejected."""
        with pytest.raises(MalformedMessageError):
            normalize("btcusdt@ticker", payloads.ticker("NaN"))

    def test_missing_field(self, payloads):
        """Test that a missing required field is a malformed message."""
        data = payloads.trade()
        del data["p"]
        with pytest.raises(MalformedMessageError):
            normalize("ethusdt@trade", data)

    def test_bad_depth_level(self):
        """Test that a depth level with the wrong shape is rejected."""
        with pytest.raises(MalformedMessageError):
            normalize("btcusdt@depth20@1000ms", {"bids": [["1.0"]], "asks": []})

    def test_non_object_payload(self):
        """Test that list payloads are rejected."""
        with pytest.raises(MalformedMessageError):
            normalize("btcusdt@ticker", ["65000"])

    def test_unknown_stream_kind(self, payloads):
        """Test that an unrecognized stream suffix is rejected."""
        with pytest.raises(MalformedMessageError):
            normalize("btcusdt@aggTrade", payloads.trade())

    def test_oversized_integer_number(self, payloads):
        """Test that an integer too large for a float is a malformed message."""
        data = payloads.ticker()
        data["c"] = 10**400
        with pytest.raises(MalformedMessageError):
            normalize("btcusdt@ticker", data)

    def test_oversized_trade_count(self, payloads):
        """Test that an infinite kline trade count is a malformed message."""
        data = payloads.candle()
        data["k"]["n"] = float("inf")
        with pytest.raises(MalformedMessageError):
            normalize("btcusdt@kline_1m", data)

    @pytest.mark.parametrize("flag", ["false", "true", 0, None])
    def test_candle_final_flag_must_be_boolean(self, payloads, flag):
        """Test that a non-boolean kline final flag is rejected."""
        data = payloads.candle()
        data["k"]["x"] = flag
        with pytest.raises(MalformedMessageError):
            normalize("btcusdt@kline_1m", data)
