"""
Stream relay router - the front door for browser playback.

Accepts the upstream URL either as ``?url=...`` or embedded in the path
(``/http://host:8000/stream``) and answers with a chunked audio response
that carries only audio bytes.
"""
import asyncio
import logging
from typing import AsyncIterator, Awaitable, Optional

from fastapi import APIRouter, Request
from fastapi.responses import PlainTextResponse, Response, StreamingResponse

from icyrelay.errors import InvalidTargetError, RelayExhaustedError
from icyrelay.services.relay_service import RelayStream
from icyrelay.services.target_service import extract_target

logger = logging.getLogger(__name__)

router = APIRouter()

MISSING_TARGET_MESSAGE = "Missing ?url=... or /http(s)://… in path"

# How often to check for a client that gave up while we are still connecting
DISCONNECT_POLL_INTERVAL = 0.5

# Status used in logs for clients that left before the upstream was opened
CLIENT_CLOSED_REQUEST = 499


async def open_unless_disconnected(
    request: Request, opening: Awaitable[RelayStream]
) -> Optional[RelayStream]:
    """
    Wait for the upstream to open, cancelling it if the client goes away.

    Mount discovery and backoff sleeps can take a while; there is no point
    finishing them for a client that has already disconnected.

    Returns:
        The opened stream, or None if the client disconnected first
    """
    task = asyncio.ensure_future(opening)
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=DISCONNECT_POLL_INTERVAL)
            if done:
                return task.result()
            if await request.is_disconnected():
                logger.info("Client disconnected while connecting upstream, cancelling")
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
                if not task.cancelled() and task.exception() is None:
                    # Opened just as the client left
                    await task.result().aclose()
                return None
    except asyncio.CancelledError:
        task.cancel()
        raise


async def relay_body(stream: RelayStream) -> AsyncIterator[bytes]:
    """Audio chunks for the client; stops abruptly if the upstream is lost for good."""
    try:
        async for chunk in stream.iter_audio():
            yield chunk
    except RelayExhaustedError as e:
        # Re-raised so the server drops the connection instead of ending the
        # chunked body cleanly
        logger.error("Stream for %s ended abnormally: %s", stream.target.url, e)
        raise
    finally:
        await stream.aclose()
        logger.info(
            "Client stream for %s closed after %d bytes (%d reconnects)",
            stream.target.url, stream.bytes_sent, stream.reconnects,
        )


async def relay(request: Request, raw_target: Optional[str]) -> Response:
    if not raw_target:
        return PlainTextResponse(MISSING_TARGET_MESSAGE, status_code=400)

    orchestrator = request.app.state.orchestrator
    range_header = request.headers.get("Range")

    try:
        stream = await open_unless_disconnected(
            request, orchestrator.open_stream(raw_target, range_header)
        )
    except InvalidTargetError as e:
        logger.info("Rejected target %r: %s", raw_target, e)
        return PlainTextResponse(str(e), status_code=400)
    except RelayExhaustedError as e:
        return PlainTextResponse(f"Upstream unavailable: {e}", status_code=502)

    if stream is None:
        return Response(status_code=CLIENT_CLOSED_REQUEST)

    headers = {
        "Cache-Control": "no-cache, no-store",
        **stream.response_headers,
    }
    return StreamingResponse(
        relay_body(stream),
        status_code=stream.status_code,
        media_type=stream.content_type,
        headers=headers,
    )


@router.get("/")
async def relay_root(request: Request, url: Optional[str] = None):
    """Relay the stream named by ``?url=``."""
    return await relay(request, url)


@router.get("/stream")
async def relay_stream(request: Request, url: Optional[str] = None):
    """
    Relay an ICY/Shoutcast/Icecast stream as plain audio.

    - ``url``: upstream stream URL (http://, https:// or icy://)
    - ``Range`` is forwarded to the upstream
    - Inline ICY metadata is removed; the response is audio only

    Returns 400 for a missing/invalid URL and 502 when no strategy could
    reach the upstream.
    """
    return await relay(request, url)


@router.get("/{target_path:path}")
async def relay_path(request: Request, target_path: str, url: Optional[str] = None):
    """Relay a stream whose URL is embedded in the path."""
    raw_target = extract_target(url, request.url.path, request.url.query)
    return await relay(request, raw_target)
