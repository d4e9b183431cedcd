"""SSE streaming endpoints for live market records."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncGenerator

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import StreamingResponse

from .models import NormalizedRecord, StreamKey, SubscriptionHandle
from .multiplexer import MarketDataMultiplexer

logger = logging.getLogger(__name__)


def create_stream_router(multiplexer: MarketDataMultiplexer, queue_size: int = 1000) -> APIRouter:
    """Create the streaming router bound to one multiplexer instance.

    This factory pattern lets us inject the multiplexer without globals.
    """
    router = APIRouter(prefix="/api/stream", tags=["streaming"])

    @router.get("/records")
    async def stream_records(
        request: Request,
        symbols: str = Query(..., description="Comma-separated symbols, e.g. BTCUSDT,ETHUSDT"),
        kinds: str = Query("ticker", description="Comma-separated kinds: ticker,depth,trade,candle"),
        interval: str | None = Query(None, description="Candle interval, e.g. 1m"),
    ) -> StreamingResponse:
        """SSE endpoint for live normalized records.

        Each event is one record:

            data: {"kind": "ticker", "symbol": "BTCUSDT", "price": 65000.12, ...}

        The subscription lives exactly as long as the HTTP connection.
        """
        symbol_list = _split(symbols)
        kind_list = _split(kinds)
        queue: asyncio.Queue[NormalizedRecord] = asyncio.Queue(maxsize=queue_size)

        def on_record(record: NormalizedRecord) -> None:
            try:
                queue.put_nowait(record)
            except asyncio.QueueFull:
                logger.warning("SSE queue full, dropping %s record", record.stream_key)

        try:
            handle = multiplexer.subscribe(symbol_list, kind_list, on_record, interval=interval)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e

        return StreamingResponse(
            _generate_events(multiplexer, handle, queue, request),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",  # Disable nginx buffering if proxied
            },
        )

    @router.get("/snapshot/{symbol}/{kind}")
    async def get_snapshot(symbol: str, kind: str, interval: str | None = None) -> dict:
        """Latest cached record for one stream. 404 when absent or stale."""
        try:
            key = StreamKey.of(symbol, kind, interval)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        record = multiplexer.snapshot(key)
        if record is None:
            raise HTTPException(status_code=404, detail=f"no fresh data for {key}")
        return record.to_dict()

    @router.get("/stats")
    async def get_stats() -> dict:
        return multiplexer.stats().to_dict()

    return router


def _split(raw: str) -> list[str]:
    return [part.strip() for part in raw.split(",") if part.strip()]


async def _generate_events(
    multiplexer: MarketDataMultiplexer,
    handle: SubscriptionHandle,
    queue: asyncio.Queue[NormalizedRecord],
    request: Request,
    poll_interval: float = 1.0,
) -> AsyncGenerator[str, None]:
    """Yield SSE-formatted records until the client disconnects.

    Always unsubscribes on exit.
    """
    # Tell the client to retry after 1 second if the connection drops
    yield "retry: 1000\n\n"

    client_ip = request.client.host if request.client else "unknown"
    logger.info("SSE client connected: %s (%s)", client_ip, handle.id)

    try:
        while True:
            if await request.is_disconnected():
                logger.info("SSE client disconnected: %s", client_ip)
                break
            try:
                record = await asyncio.wait_for(queue.get(), timeout=poll_interval)
            except asyncio.TimeoutError:
                continue
            yield f"data: {json.dumps(record.to_dict())}\n\n"
    except asyncio.CancelledError:
        logger.info("SSE stream cancelled for: %s", client_ip)
        raise
    finally:
        multiplexer.unsubscribe(handle)
