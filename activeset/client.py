"""
Reconnecting client for the active-set SSE feed
Fetch once, then follow the stream; on any error retry after a fixed delay, forever
"""
import argparse
import asyncio
import json
import logging
import os
from typing import Callable, List, Optional, Tuple

import aiohttp

from .state import ActiveSetSnapshot

logger = logging.getLogger("activeset")

SNAPSHOT_PATH = "/api/active-ids"
STREAM_PATH = "/api/active-ids/stream"
RETRY_DELAY = 1.5

# Anything that should end the current connection and trigger a reconnect
STREAM_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, ConnectionError, ValueError)


def parse_snapshot(payload: str) -> Optional[ActiveSetSnapshot]:
    """Parse an SSE data payload, returning None for anything malformed"""
    try:
        return ActiveSetSnapshot.from_dict(json.loads(payload))
    except ValueError:
        return None


class ClientSubscription:
    """
    Keeps a local copy of the server's current snapshot

    A single background task owns the connection and the retry delay, so
    there is never more than one of either.
    """

    def __init__(
        self,
        base_url: str,
        *,
        on_update: Optional[Callable[[ActiveSetSnapshot], None]] = None,
        retry_delay: float = RETRY_DELAY,
        read_timeout: float = 45.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.on_update = on_update
        self.retry_delay = retry_delay
        self.read_timeout = read_timeout
        self.snapshot: Optional[ActiveSetSnapshot] = None
        self.connections_opened = 0
        self.heartbeats_received = 0
        self._session = session
        self._owns_session = session is None
        self._task: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def active_ids(self) -> Tuple[str, ...]:
        return self.snapshot.active_ids if self.snapshot is not None else ()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self._closed:
            raise RuntimeError("subscription is closed")
        if self._task is not None:
            return
        if self._session is None:
            self._session = aiohttp.ClientSession()
        self._task = asyncio.create_task(self._run(), name="activeset-subscription")

    async def close(self) -> None:
        """Stop following the feed; no reconnect is attempted afterwards"""
        if self._closed:
            return
        self._closed = True

        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        if self._owns_session and self._session is not None:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> "ClientSubscription":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def _run(self) -> None:
        await self._fetch_initial()
        while True:
            try:
                await self._listen()
            except STREAM_ERRORS as e:
                logger.warning(f"⚠️ Stream error ({e!r}), reconnecting in {self.retry_delay}s")
            else:
                logger.info(f"Stream ended, reconnecting in {self.retry_delay}s")
            await asyncio.sleep(self.retry_delay)

    async def _fetch_initial(self) -> None:
        timeout = aiohttp.ClientTimeout(total=self.read_timeout)
        try:
            async with self._session.get(self.base_url + SNAPSHOT_PATH, timeout=timeout) as resp:
                if resp.status != 200:
                    logger.debug(f"Initial fetch returned {resp.status}, waiting for stream")
                    return
                data = await resp.json()
        except STREAM_ERRORS as e:
            logger.debug(f"Initial fetch failed ({e!r}), waiting for stream")
            return

        try:
            snapshot = ActiveSetSnapshot.from_dict(data)
        except ValueError:
            logger.debug("Initial fetch returned a malformed snapshot")
            return
        self._apply(snapshot)

    async def _listen(self) -> None:
        # No total timeout; a stream silent for longer than read_timeout
        # (several missed heartbeats) counts as dead
        timeout = aiohttp.ClientTimeout(total=None, sock_read=self.read_timeout)
        headers = {"Accept": "text/event-stream", "Cache-Control": "no-cache"}
        async with self._session.get(self.base_url + STREAM_PATH, timeout=timeout, headers=headers) as resp:
            resp.raise_for_status()
            self.connections_opened += 1
            logger.info(f"📡 Stream connected to {self.base_url}")

            data_lines: List[str] = []
            async for raw in resp.content:
                line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                if not line:
                    # Blank line terminates an event
                    if data_lines:
                        self._dispatch("\n".join(data_lines))
                        data_lines = []
                    continue
                if line.startswith(":"):
                    self.heartbeats_received += 1
                    continue

                field, _, value = line.partition(":")
                if field == "data":
                    data_lines.append(value[1:] if value.startswith(" ") else value)

    def _dispatch(self, payload: str) -> None:
        snapshot = parse_snapshot(payload)
        if snapshot is None:
            logger.debug(f"Discarding malformed message: {payload[:200]!r}")
            return
        self._apply(snapshot)

    def _apply(self, snapshot: ActiveSetSnapshot) -> None:
        self.snapshot = snapshot
        if self.on_update is None:
            return
        try:
            self.on_update(snapshot)
        except Exception:
            logger.exception("on_update callback failed")


async def watch(base_url: str, retry_delay: float = RETRY_DELAY) -> None:
    """Log every snapshot from ``base_url`` until cancelled"""
    def show(snapshot: ActiveSetSnapshot) -> None:
        logger.info("💡 Active: %s", ", ".join(snapshot.active_ids) or "(none)")

    async with ClientSubscription(base_url, on_update=show, retry_delay=retry_delay):
        await asyncio.Event().wait()


def main():
    parser = argparse.ArgumentParser(
        prog="activeset-watch",
        description="Follow the active-set feed of a running server.",
    )
    parser.add_argument(
        "url", nargs="?",
        default=os.environ.get("ACTIVESET_URL", "http://localhost:3000"),
        help="Server base URL",
    )
    parser.add_argument("--retry-delay", type=float, default=RETRY_DELAY, help="Seconds between reconnects")
    args = parser.parse_args()

    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
    try:
        asyncio.run(watch(args.url, args.retry_delay))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
