"""
HTTP API handlers for the active-set feed
Snapshot fetch (ETag) + replace (validated) + SSE stream
"""
import hashlib
import logging
from typing import Any, List

from aiohttp import web

from .state import StateStore
from .stream import StreamEndpoint

logger = logging.getLogger("activeset")

STORE_KEY = web.AppKey("store", StateStore)
STREAM_KEY = web.AppKey("stream", StreamEndpoint)

# ============================================================
# VALIDATION
# ============================================================

def parse_replace_payload(data: Any) -> List[str]:
    """
    Extract the ID list from a replace request body

    Raises ValueError with a short human-readable message
    """
    if not isinstance(data, dict):
        raise ValueError("Expected a JSON object.")
    if "activeIds" not in data:
        raise ValueError("activeIds is required.")
    ids = data["activeIds"]
    if not isinstance(ids, list):
        raise ValueError("activeIds must be an array.")
    if not all(isinstance(i, str) for i in ids):
        raise ValueError("activeIds must only contain strings.")
    return ids

# ============================================================
# SNAPSHOT
# ============================================================

async def api_active_ids(request: web.Request) -> web.Response:
    """Return the current snapshot with ETag caching"""
    snapshot = request.app[STORE_KEY].get()
    content = snapshot.to_json()
    etag = hashlib.md5(content.encode()).hexdigest()

    if request.headers.get("If-None-Match") == etag:
        return web.Response(status=304)

    response = web.json_response(snapshot.to_dict())
    response.headers["ETag"] = etag
    response.headers["Cache-Control"] = "no-cache"
    return response


async def api_active_ids_replace(request: web.Request) -> web.Response:
    """Replace the active set wholesale"""
    try:
        data = await request.json()
    except ValueError:
        return web.json_response(
            {"ok": False, "error": "Invalid JSON payload."},
            status=400
        )

    try:
        ids = parse_replace_payload(data)
    except ValueError as e:
        logger.info("Rejected replace request: %s", e)
        return web.json_response(
            {"ok": False, "error": str(e)},
            status=422
        )

    snapshot = request.app[STORE_KEY].replace(ids)
    return web.json_response(snapshot.to_dict())

# ============================================================
# SERVER-SENT EVENTS
# ============================================================

async def api_active_ids_stream(request: web.Request) -> web.StreamResponse:
    """Long-lived SSE stream: initial snapshot, then one event per replace"""
    return await request.app[STREAM_KEY].handle(request)
