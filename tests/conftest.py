"""Shared helpers for the active-set feed tests."""

from __future__ import annotations

import asyncio
import json
import time
from typing import Callable

from aiohttp import ClientResponse


async def eventually(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll ``predicate`` until it holds, failing the test after ``timeout``."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met within %.1fs" % timeout)
        await asyncio.sleep(0.01)


async def read_event(resp: ClientResponse, timeout: float = 2.0) -> str | None:
    """Read one SSE event block (lines joined by newline); None at end of stream."""
    lines: list[str] = []
    while True:
        raw = await asyncio.wait_for(resp.content.readline(), timeout)
        if not raw:
            return None
        line = raw.decode().rstrip("\r\n")
        if not line:
            if lines:
                return "\n".join(lines)
            continue
        lines.append(line)


def event_ids(event: str) -> list[str]:
    """Extract activeIds from a ``data:`` event block."""
    assert event.startswith("data: "), event
    return json.loads(event[len("data: "):])["activeIds"]
