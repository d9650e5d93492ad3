"""
Mount resolver - finds the stream path on an origin given without one.

Order of discovery:
1. Icecast status-json.xsl (icestats.source[].listenurl)
2. listen.pls playlist (first FileN= entry)
3. Ranged probes of conventional Shoutcast mounts
4. "/;" as the Shoutcast v1 default

No step is fatal; every network error or timeout just moves on to the next.
"""

import asyncio
import json
import logging
from typing import List, Optional
from urllib.parse import urljoin, urlsplit

import aiohttp
from multidict import CIMultiDict

from icyrelay.config.settings import RelaySettings
from icyrelay.models import StreamTarget
from icyrelay.services.dialect_client import build_ssl_context
from icyrelay.services.target_service import build_headers, build_tls_options

logger = logging.getLogger(__name__)

STATUS_JSON_PATH = "/status-json.xsl"
PLS_PATH = "/listen.pls"

# Probed in this order
MOUNT_CANDIDATES: List[str] = ["/;?sid=1", "/;", "/stream", "/"]

DEFAULT_MOUNT = "/;"

PLS_CONTENT_TYPES = ("audio/x-scpls", "application/pls+xml", "application/pls")

# Discovery documents are small; don't read a live stream by mistake
MAX_DOCUMENT_BYTES = 64 * 1024


def path_and_query(url: str) -> Optional[str]:
    parts = urlsplit(url)
    if not parts.path and not parts.query:
        return None
    path = parts.path or "/"
    return f"{path}?{parts.query}" if parts.query else path


def listenurl_from_status(data) -> Optional[str]:
    """Pull the first source's listenurl out of an Icecast status document."""
    if not isinstance(data, dict):
        return None
    icestats = data.get("icestats")
    if not isinstance(icestats, dict):
        return None
    source = icestats.get("source")
    if isinstance(source, list):
        source = source[0] if source else None
    if not isinstance(source, dict):
        return None
    listenurl = source.get("listenurl")
    if isinstance(listenurl, str) and listenurl.strip():
        return listenurl.strip()
    return None


def first_pls_entry(text: str) -> Optional[str]:
    """Value of the first FileN= line of a PLS playlist."""
    for line in text.splitlines():
        name, sep, value = line.strip().partition("=")
        if sep and name.lower().startswith("file") and name[4:].isdigit() and value.strip():
            return value.strip()
    return None


def decode_document(body: bytes, charset: Optional[str]) -> str:
    """Decode with the declared charset; an unknown one falls back to UTF-8."""
    try:
        return body.decode(charset or "utf-8", errors="replace")
    except LookupError:
        logger.debug("Unknown charset %r, decoding as UTF-8", charset)
        return body.decode("utf-8", errors="replace")


def is_pls_response(content_type: str, text: str) -> bool:
    content_type = content_type.lower()
    if any(pls in content_type for pls in PLS_CONTENT_TYPES) or "scpls" in content_type:
        return True
    # Plenty of servers send text/plain; trust the section header then
    return text.lstrip().lower().startswith("[playlist]")


class MountResolver:
    """Discovers a mount point for a bare origin."""

    def __init__(self, settings: RelaySettings):
        self._settings = settings

    async def resolve(self, target: StreamTarget) -> str:
        """
        Find the stream path for an origin.

        Args:
            target: Target whose path is empty or "/"

        Returns:
            Path (plus query), always starting with "/"
        """
        async with aiohttp.ClientSession(auto_decompress=False) as session:
            path = await self._from_status_json(session, target)
            if path:
                logger.info("Resolved mount for %s via status-json: %s", target.origin, path)
                return path

            path = await self._from_pls(session, target)
            if path:
                logger.info("Resolved mount for %s via listen.pls: %s", target.origin, path)
                return path

            for candidate in MOUNT_CANDIDATES:
                if await self._probe(session, target, candidate):
                    logger.info("Resolved mount for %s by probing: %s", target.origin, candidate)
                    return candidate

        logger.warning("No mount found for %s, defaulting to %s", target.origin, DEFAULT_MOUNT)
        return DEFAULT_MOUNT

    def _request_kwargs(self, target: StreamTarget, headers=None) -> dict:
        kwargs = {
            "headers": headers,
            "timeout": aiohttp.ClientTimeout(total=self._settings.probe_timeout_ms / 1000),
            "allow_redirects": self._settings.follow_redirects,
            "max_redirects": self._settings.max_redirects,
        }
        tls = build_tls_options(target, self._settings)
        if tls is not None:
            kwargs["ssl"] = build_ssl_context(tls)
        return kwargs

    def _plain_headers(self, target: StreamTarget) -> CIMultiDict:
        headers = build_headers(target, self._settings, self._settings.user_agents[0])
        # Discovery documents must not come back with metadata frames
        del headers["Icy-MetaData"]
        return headers

    async def _fetch_text(self, session: aiohttp.ClientSession, target: StreamTarget, path: str):
        """GET a small document; returns (content_type, text) or None."""
        url = f"{target.origin}{path}"
        try:
            async with session.get(url, **self._request_kwargs(target, self._plain_headers(target))) as response:
                if response.status != 200:
                    logger.debug("%s returned HTTP %d", url, response.status)
                    return None
                body = bytearray()
                async for chunk in response.content.iter_chunked(8192):
                    body += chunk
                    if len(body) >= MAX_DOCUMENT_BYTES:
                        break
                return response.headers.get("Content-Type", ""), decode_document(bytes(body), response.charset)
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError, ValueError) as e:
            logger.debug("Fetching %s failed: %s", url, e)
            return None

    async def _from_status_json(self, session: aiohttp.ClientSession, target: StreamTarget) -> Optional[str]:
        fetched = await self._fetch_text(session, target, STATUS_JSON_PATH)
        if fetched is None:
            return None
        _, text = fetched
        try:
            data = json.loads(text)
        except ValueError:
            logger.debug("status-json.xsl on %s is not JSON", target.origin)
            return None
        listenurl = listenurl_from_status(data)
        if listenurl is None:
            return None
        return path_and_query(urljoin(target.origin + "/", listenurl))

    async def _from_pls(self, session: aiohttp.ClientSession, target: StreamTarget) -> Optional[str]:
        fetched = await self._fetch_text(session, target, PLS_PATH)
        if fetched is None:
            return None
        content_type, text = fetched
        if not is_pls_response(content_type, text):
            logger.debug("listen.pls on %s is not a PLS playlist (%s)", target.origin, content_type)
            return None
        entry = first_pls_entry(text)
        if entry is None:
            return None
        return path_and_query(urljoin(target.origin + "/", entry))

    async def _probe(self, session: aiohttp.ClientSession, target: StreamTarget, candidate: str) -> bool:
        """Small ranged GET; accepted when it answers 200/206 with audio."""
        url = f"{target.origin}{candidate}"
        headers = build_headers(target, self._settings, self._settings.user_agents[0], "bytes=0-1")
        try:
            async with session.get(url, **self._request_kwargs(target, headers)) as response:
                content_type = response.headers.get("Content-Type", "").lower()
                accepted = response.status in (200, 206) and content_type.startswith("audio/")
                logger.debug("Probe %s: HTTP %d %s", url, response.status, content_type or "-")
                # Leave the (possibly endless) body unread
                response.close()
                return accepted
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError, ValueError) as e:
            logger.debug("Probe %s failed: %s", url, e)
            return False
