"""Factory for a configured multiplexer."""

from __future__ import annotations

import logging
from collections.abc import Callable

from .config import MultiplexerSettings
from .errors import ExhaustedReconnectError
from .interface import Transport
from .multiplexer import MarketDataMultiplexer

logger = logging.getLogger(__name__)


def create_multiplexer(
    settings: MultiplexerSettings | None = None,
    transport: Transport | None = None,
    on_exhausted: Callable[[ExhaustedReconnectError], None] | None = None,
) -> MarketDataMultiplexer:
    """Create a multiplexer from environment-driven settings.

    - settings omitted -> MultiplexerSettings.from_env()
    - transport omitted -> WebsocketTransport (the `websockets` package)

    Returns an unstarted multiplexer. Caller must await mux.start().
    """
    settings = settings or MultiplexerSettings.from_env()

    if transport is None:
        from .transport import WebsocketTransport

        transport = WebsocketTransport()

    logger.info(
        "Market data multiplexer: %s (heartbeat %.0fs, backoff %.1fs..%.1fs, %d attempts)",
        settings.url,
        settings.heartbeat_interval,
        settings.reconnect_base,
        settings.reconnect_cap,
        settings.max_reconnect_attempts,
    )
    return MarketDataMultiplexer(transport, settings, on_exhausted=on_exhausted)
