"""
Target normalizer - turns client input into a StreamTarget and builds the
outbound header set for each upstream attempt.
"""

import base64
import logging
import re
from typing import Optional
from urllib.parse import unquote, urlsplit

from multidict import CIMultiDict

from icyrelay.config.settings import RelaySettings
from icyrelay.errors import InvalidTargetError
from icyrelay.models import StreamTarget, TlsOptions, UpstreamRequestOptions

logger = logging.getLogger(__name__)

SUPPORTED_SCHEMES = ("http", "https", "icy")

# Sent on every upstream request
ACCEPT_AUDIO = "audio/mpeg, audio/aac, audio/ogg, audio/*;q=0.9, */*;q=0.5"

COLLAPSED_SCHEME_RE = re.compile(r"^(https?|icy):/(?!/)", re.IGNORECASE)


def parse_target(raw: Optional[str]) -> StreamTarget:
    """
    Parse and validate a client-supplied stream URL.

    icy:// is a private alias for http:// and is rewritten before any
    connection is attempted. Credentials in the URL are kept on the target
    for Basic auth and removed from its netloc.

    Raises:
        InvalidTargetError: if the input is empty, unparsable, uses another
            scheme or has no host.
    """
    if raw is None or not raw.strip():
        raise InvalidTargetError("Missing stream URL")
    raw = raw.strip()

    try:
        parts = urlsplit(raw)
        port = parts.port
    except ValueError as e:
        raise InvalidTargetError(f"Invalid stream URL: {e}") from e

    scheme = parts.scheme.lower()
    if scheme not in SUPPORTED_SCHEMES:
        raise InvalidTargetError(
            f"Unsupported scheme '{parts.scheme}' (expected http, https or icy)"
        )
    if scheme == "icy":
        logger.debug("Rewriting icy:// target %s to http://", raw)
        scheme = "http"

    if not parts.hostname:
        raise InvalidTargetError("Stream URL has no host")

    if port is None:
        port = 443 if scheme == "https" else 80

    return StreamTarget(
        scheme=scheme,
        host=parts.hostname,
        port=port,
        path=parts.path or "/",
        query=parts.query,
        username=unquote(parts.username) if parts.username else None,
        password=unquote(parts.password) if parts.password is not None else None,
    )


def extract_target(query_url: Optional[str], path: str, query: str = "") -> Optional[str]:
    """
    Find the target URL in a front-door request.

    The ``url`` query parameter wins. Otherwise the request path itself may
    carry the URL (``/http://host:8000/stream``); any query string on the
    request then belongs to that URL.
    """
    if query_url:
        return query_url

    candidate = unquote(path.lstrip("/"))
    # Some proxies squash "//" in paths: /http:/host/stream
    candidate = COLLAPSED_SCHEME_RE.sub(r"\1://", candidate)
    if candidate.lower().startswith(tuple(f"{s}://" for s in SUPPORTED_SCHEMES)):
        if query:
            return f"{candidate}?{query}"
        return candidate
    return None


def basic_auth_header(username: str, password: str) -> str:
    token = base64.b64encode(f"{username}:{password}".encode("utf-8")).decode("ascii")
    return f"Basic {token}"


def build_headers(
    target: StreamTarget,
    settings: RelaySettings,
    user_agent: str,
    range_header: Optional[str] = None,
) -> CIMultiDict:
    """Canonical outbound headers for one attempt."""
    headers = CIMultiDict()
    headers["Icy-MetaData"] = "1"
    headers["User-Agent"] = user_agent
    headers["Accept"] = ACCEPT_AUDIO

    if range_header:
        headers["Range"] = range_header

    # Credentials in the URL take precedence over configured ones
    if target.username:
        headers["Authorization"] = basic_auth_header(target.username, target.password or "")
    elif settings.has_credentials:
        headers["Authorization"] = basic_auth_header(settings.username, settings.password)

    return headers


def build_tls_options(target: StreamTarget, settings: RelaySettings) -> Optional[TlsOptions]:
    if not target.is_tls:
        return None
    return TlsOptions(
        server_name=settings.tls_server_name or target.host,
        client_cert=settings.tls_client_cert,
        client_key=settings.tls_client_key,
        verify_peer=settings.tls_verify,
    )


def build_request_options(
    target: StreamTarget,
    settings: RelaySettings,
    user_agent: str,
    range_header: Optional[str] = None,
) -> UpstreamRequestOptions:
    """Fresh options for a single upstream attempt."""
    return UpstreamRequestOptions(
        headers=build_headers(target, settings, user_agent, range_header),
        follow_redirects=settings.follow_redirects,
        max_redirects=settings.max_redirects,
        connect_timeout=settings.connect_timeout_ms / 1000,
        read_timeout=settings.idle_timeout_ms / 1000,
        chunk_size=settings.chunk_size,
        tls=build_tls_options(target, settings),
    )
