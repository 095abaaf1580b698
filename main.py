#!/usr/bin/env python3
"""
Active-Set Feed - Entry Point
Snapshot API + SSE fanout of the current active identifier set
"""
import logging
import os
from typing import Optional

from aiohttp import web

from activeset.api import (
    STORE_KEY, STREAM_KEY,
    api_active_ids, api_active_ids_replace, api_active_ids_stream
)
from activeset.broadcaster import Broadcaster
from activeset.state import StateStore
from activeset.stream import StreamEndpoint

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger("activeset")

HEARTBEAT_INTERVAL = float(os.environ.get("ACTIVESET_HEARTBEAT_INTERVAL", 15))
MAX_SUBSCRIBERS = int(os.environ.get("ACTIVESET_MAX_SUBSCRIBERS", 100))
QUEUE_SIZE = int(os.environ.get("ACTIVESET_QUEUE_SIZE", 16))


async def close_streams(app: web.Application) -> None:
    """Release every open stream before the server stops"""
    logger.info(f"🛑 Closing {app[STREAM_KEY].connection_count} stream(s)")
    app[STREAM_KEY].close_all()


def create_app(
    store: Optional[StateStore] = None,
    *,
    heartbeat_interval: float = HEARTBEAT_INTERVAL,
    max_subscribers: int = MAX_SUBSCRIBERS,
    queue_size: int = QUEUE_SIZE,
) -> web.Application:
    """Create and configure the aiohttp application"""
    if store is None:
        # 0 disables the subscriber ceiling
        store = StateStore(Broadcaster(max_subscribers=max_subscribers or None))

    app = web.Application()
    app[STORE_KEY] = store
    app[STREAM_KEY] = StreamEndpoint(
        store,
        store.broadcaster,
        heartbeat_interval=heartbeat_interval,
        queue_size=queue_size,
    )

    # API routes
    app.router.add_get("/api/active-ids", api_active_ids)
    app.router.add_post("/api/active-ids", api_active_ids_replace)

    # SSE for real-time updates
    app.router.add_get("/api/active-ids/stream", api_active_ids_stream)

    app.on_shutdown.append(close_streams)

    logger.info(f"💡 Active-set feed ready • heartbeat {heartbeat_interval}s • SSE enabled")
    return app


def main():
    app = create_app()
    port = int(os.environ.get("PORT", 3000))
    host = os.environ.get("SERVER_HOST", "0.0.0.0")

    logger.info(f"🚀 Starting server on {host}:{port}")

    web.run_app(app, host=host, port=port)


if __name__ == "__main__":
    main()
