"""
Server-Sent Events stream of active-set snapshots
One StreamConnection per client: Opening -> Streaming -> Closed
"""
import asyncio
import enum
import logging
from typing import Callable, Optional, Set

from aiohttp import web

from .broadcaster import Broadcaster, SubscriberLimitError
from .state import ActiveSetSnapshot, StateStore
from .utils import generate_connection_id

logger = logging.getLogger("activeset")

HEARTBEAT = b": heartbeat\n\n"

SSE_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
}


def format_event(snapshot: ActiveSetSnapshot) -> bytes:
    """Encode a snapshot as a single SSE data event"""
    return f"data: {snapshot.to_json()}\n\n".encode("utf-8")


class ConnectionState(enum.Enum):
    OPENING = "opening"
    STREAMING = "streaming"
    CLOSED = "closed"


class StreamConnection:
    """
    Per-client stream state machine

    Only the writer loop in stream() touches the response. Broadcaster
    callbacks and the heartbeat task enqueue frames; close() is the single
    teardown path and is safe to call any number of times from any exit.
    """

    def __init__(
        self,
        request: web.Request,
        store: StateStore,
        broadcaster: Broadcaster,
        *,
        heartbeat_interval: float = 15.0,
        queue_size: int = 16,
    ):
        self.id = generate_connection_id()
        self.state = ConnectionState.OPENING
        self._request = request
        self._store = store
        self._broadcaster = broadcaster
        self._heartbeat_interval = heartbeat_interval
        # Frames are bytes; None tells the writer loop to stop
        self._queue: "asyncio.Queue[Optional[bytes]]" = asyncio.Queue(maxsize=max(1, queue_size))
        self._loop = asyncio.get_running_loop()
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._heartbeat_task: Optional[asyncio.Task] = None

    def open(self) -> None:
        """
        Register with the broadcaster, then queue the current snapshot

        Raises SubscriberLimitError before anything has been sent.
        """
        self._unsubscribe = self._broadcaster.subscribe(self._on_snapshot)
        self._enqueue(format_event(self._store.get()))

    async def stream(self) -> web.StreamResponse:
        response = web.StreamResponse(headers=SSE_HEADERS)
        try:
            await response.prepare(self._request)
            if self.state is ConnectionState.OPENING:
                self.state = ConnectionState.STREAMING
                self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

            while True:
                frame = await self._queue.get()
                if frame is None:
                    break
                await response.write(frame)
        except ConnectionResetError as e:
            logger.debug(f"Stream {self.id} write failed: {e}")
        finally:
            self.close()
        return response

    def close(self) -> None:
        if self.state is ConnectionState.CLOSED:
            return
        self.state = ConnectionState.CLOSED

        task = self._heartbeat_task
        if task is not None and task is not asyncio.current_task():
            task.cancel()
        self._heartbeat_task = None

        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

        # Make room so the stop marker always lands
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(None)

    def _on_snapshot(self, snapshot: ActiveSetSnapshot) -> None:
        frame = format_event(snapshot)
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is self._loop:
            self._enqueue(frame)
        else:
            self._loop.call_soon_threadsafe(self._enqueue, frame)

    def _enqueue(self, frame: bytes) -> None:
        if self.state is ConnectionState.CLOSED:
            return
        if self._queue.full():
            # A newer snapshot supersedes the oldest pending frame
            self._queue.get_nowait()
        self._queue.put_nowait(frame)

    async def _heartbeat_loop(self) -> None:
        while self.state is ConnectionState.STREAMING:
            await asyncio.sleep(self._heartbeat_interval)

            transport = self._request.transport
            if transport is None or transport.is_closing():
                logger.debug(f"Stream {self.id} transport gone, closing")
                self.close()
                return

            if self._queue.empty():
                self._enqueue(HEARTBEAT)


class StreamEndpoint:
    """aiohttp handler that opens one StreamConnection per request"""

    def __init__(
        self,
        store: StateStore,
        broadcaster: Broadcaster,
        *,
        heartbeat_interval: float = 15.0,
        queue_size: int = 16,
    ):
        self.store = store
        self.broadcaster = broadcaster
        self.heartbeat_interval = heartbeat_interval
        self.queue_size = queue_size
        self._connections: Set[StreamConnection] = set()

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    async def handle(self, request: web.Request) -> web.StreamResponse:
        conn = StreamConnection(
            request,
            self.store,
            self.broadcaster,
            heartbeat_interval=self.heartbeat_interval,
            queue_size=self.queue_size,
        )
        try:
            conn.open()
        except SubscriberLimitError as e:
            conn.close()
            return web.json_response({"ok": False, "error": str(e)}, status=503)

        self._connections.add(conn)
        logger.info(f"📡 Stream client connected: {conn.id} (total: {len(self._connections)})")
        try:
            return await conn.stream()
        finally:
            self._connections.discard(conn)
            logger.info(f"📡 Stream client disconnected: {conn.id} (remaining: {len(self._connections)})")

    def close_all(self) -> None:
        """Close every open stream, e.g. on application shutdown"""
        for conn in list(self._connections):
            conn.close()
