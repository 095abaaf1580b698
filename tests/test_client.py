"""Tests for activeset.client — the reconnecting subscription."""

from __future__ import annotations

import asyncio

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from activeset.api import STORE_KEY, STREAM_KEY
from activeset.client import ClientSubscription, parse_snapshot
from activeset.state import ActiveSetSnapshot
from main import create_app
from tests.conftest import eventually


def _base_url(server: TestServer) -> str:
    return str(server.make_url(""))


class TestParseSnapshot:
    """Message parsing is forgiving: bad payloads become None."""

    def test_valid(self) -> None:
        snap = parse_snapshot('{"activeIds":["a"],"updatedAt":7}')
        assert snap == ActiveSetSnapshot(active_ids=("a",), updated_at=7)

    @pytest.mark.parametrize(
        "payload",
        [
            "",
            "not json",
            "[]",
            '{"foo": 1}',
            '{"activeIds": "a"}',
            '{"activeIds": [1]}',
        ],
    )
    def test_malformed(self, payload: str) -> None:
        assert parse_snapshot(payload) is None


class TestClientSubscription:
    """Behaviour against a live server."""

    @pytest.mark.asyncio
    async def test_receives_initial_and_updates(self) -> None:
        app = create_app(heartbeat_interval=0.05)
        app[STORE_KEY].replace(["a"])
        seen: list[tuple[str, ...]] = []

        async with TestServer(app) as server:
            sub = ClientSubscription(
                _base_url(server), on_update=lambda s: seen.append(s.active_ids), retry_delay=0.05
            )
            await sub.start()
            await eventually(lambda: sub.active_ids == ("a",))
            await eventually(lambda: sub.connections_opened == 1)

            app[STORE_KEY].replace(["c", "b"])
            await eventually(lambda: sub.active_ids == ("b", "c"))
            assert seen[-1] == ("b", "c")
            await sub.close()

    @pytest.mark.asyncio
    async def test_heartbeats_do_not_trigger_reconnect(self) -> None:
        app = create_app(heartbeat_interval=0.05)
        async with TestServer(app) as server:
            async with ClientSubscription(_base_url(server), retry_delay=0.05) as sub:
                await eventually(lambda: sub.heartbeats_received >= 2)
                assert sub.connections_opened == 1
                assert sub.running

    @pytest.mark.asyncio
    async def test_reconnects_after_stream_is_dropped(self) -> None:
        app = create_app(heartbeat_interval=0.05)
        async with TestServer(app) as server:
            async with ClientSubscription(_base_url(server), retry_delay=0.05) as sub:
                await eventually(lambda: sub.connections_opened == 1)

                app[STREAM_KEY].close_all()
                await eventually(lambda: sub.connections_opened == 2)

                app[STORE_KEY].replace(["after-reconnect"])
                await eventually(lambda: sub.active_ids == ("after-reconnect",))

    @pytest.mark.asyncio
    async def test_close_stops_reconnecting(self) -> None:
        app = create_app(heartbeat_interval=0.05)
        async with TestServer(app) as server:
            sub = ClientSubscription(_base_url(server), retry_delay=0.05)
            await sub.start()
            await eventually(lambda: sub.connections_opened == 1)

            await sub.close()
            await sub.close()
            assert not sub.running

            app[STREAM_KEY].close_all()
            await asyncio.sleep(0.2)
            assert sub.connections_opened == 1
            await eventually(lambda: app[STREAM_KEY].connection_count == 0)

    @pytest.mark.asyncio
    async def test_keeps_retrying_while_server_is_down(self) -> None:
        server = TestServer(web.Application())
        await server.start_server()
        url = _base_url(server)
        await server.close()

        sub = ClientSubscription(url, retry_delay=0.02)
        await sub.start()
        await asyncio.sleep(0.2)
        assert sub.running
        assert sub.snapshot is None
        assert sub.connections_opened == 0
        await sub.close()

    @pytest.mark.asyncio
    async def test_malformed_messages_are_skipped(self) -> None:
        async def garbled_stream(request: web.Request) -> web.StreamResponse:
            resp = web.StreamResponse(headers={"Content-Type": "text/event-stream"})
            await resp.prepare(request)
            await resp.write(b"data: {not json\n\n")
            await resp.write(b'data: {"something": "else"}\n\n')
            await resp.write(b"event: custom\nid: 1\n\n")
            await resp.write(b'data: {"activeIds":["ok"],"updatedAt":1}\n\n')
            await asyncio.sleep(0.5)
            return resp

        app = web.Application()
        app.router.add_get("/api/active-ids/stream", garbled_stream)

        async with TestServer(app) as server:
            # No snapshot route: the initial fetch 404s and is ignored
            async with ClientSubscription(_base_url(server), retry_delay=0.05) as sub:
                await eventually(lambda: sub.active_ids == ("ok",))
                assert sub.connections_opened == 1

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_stop_subscription(self) -> None:
        app = create_app(heartbeat_interval=0.05)

        def explode(_snapshot: ActiveSetSnapshot) -> None:
            raise RuntimeError("consumer bug")

        async with TestServer(app) as server:
            async with ClientSubscription(_base_url(server), on_update=explode, retry_delay=0.05) as sub:
                await eventually(lambda: sub.connections_opened == 1)
                app[STORE_KEY].replace(["z"])
                await eventually(lambda: sub.active_ids == ("z",))
                assert sub.running
