"""
Dialect client - the three ways of talking to an ICY origin.

Each dialect is a separate strategy exposing the same ``connect`` call; the
orchestrator decides which one to try next. All of them return an
UpstreamResponse (headers + lazy body) or raise UpstreamError.

- StandardDialect: aiohttp GET with ICY headers, redirects and TLS.
- LegacyDialect: raw socket for servers whose bare status line breaks a
  conforming HTTP parser (Shoutcast v1 "ICY 200 OK", HTTP/0.9 style).
- RawRelayDialect: raw socket, every byte forwarded without parsing.
"""

import asyncio
import logging
import re
import ssl
from abc import ABC, abstractmethod
from typing import AsyncIterator, Optional, Tuple

import aiohttp
from multidict import CIMultiDict, CIMultiDictProxy

from icyrelay.errors import UpstreamError
from icyrelay.models import (
    DialectName,
    StreamTarget,
    TlsOptions,
    UpstreamErrorKind,
    UpstreamRequestOptions,
    UpstreamResponse,
)

logger = logging.getLogger(__name__)

# First line of a legacy header block: "ICY 200 OK" or "HTTP/1.0 200 OK"
STATUS_LINE_RE = re.compile(rb"^(ICY|HTTP/\d(?:\.\d)?)\s+(\d{3})(?:\s+(.*))?$")
HEADER_BLOCK_ENDS = (b"\r\n\r\n", b"\n\n")


def build_ssl_context(tls: Optional[TlsOptions]) -> Optional[ssl.SSLContext]:
    """SSL context for an upstream connection, or None for plain HTTP."""
    if tls is None:
        return None
    context = ssl.create_default_context()
    if not tls.verify_peer:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    if tls.client_cert:
        context.load_cert_chain(tls.client_cert, tls.client_key)
    return context


# What an upstream attempt can legitimately fail with; anything else is a bug
UPSTREAM_FAILURES = (UpstreamError, aiohttp.ClientError, asyncio.TimeoutError, OSError)


def classify_exception(exc: BaseException, action: str) -> UpstreamError:
    """Map a library exception to the relay's error taxonomy.

    Raises:
        TypeError: if exc is not one of UPSTREAM_FAILURES.
    """
    if isinstance(exc, UpstreamError):
        return exc
    if isinstance(exc, (asyncio.TimeoutError, aiohttp.ServerTimeoutError)):
        return UpstreamError(UpstreamErrorKind.TIMEOUT, f"{action} timed out")
    if isinstance(exc, aiohttp.TooManyRedirects):
        return UpstreamError(UpstreamErrorKind.NON_AUDIO_RESPONSE, f"{action}: too many redirects")
    if isinstance(exc, (aiohttp.ClientResponseError, aiohttp.InvalidURL)):
        # aiohttp reports an unparsable status line / header block this way
        return UpstreamError(UpstreamErrorKind.PROTOCOL_MISMATCH, f"{action}: {exc}")
    if isinstance(exc, (aiohttp.ClientError, OSError)):
        return UpstreamError(UpstreamErrorKind.CONNECTION_REFUSED, f"{action}: {exc}")
    raise TypeError(f"{action}: {exc!r} is not an upstream failure") from exc


class UpstreamDialect(ABC):
    """Something that can attempt one upstream connection."""

    name: DialectName

    @abstractmethod
    async def connect(
        self, target: StreamTarget, options: UpstreamRequestOptions
    ) -> UpstreamResponse:
        """Open the upstream and return its response, or raise UpstreamError."""


class StandardDialect(UpstreamDialect):
    """HTTP/1.x GET via aiohttp, accepting anything that looks like audio."""

    name = DialectName.STANDARD

    async def connect(
        self, target: StreamTarget, options: UpstreamRequestOptions
    ) -> UpstreamResponse:
        timeout = aiohttp.ClientTimeout(
            total=None,
            sock_connect=options.connect_timeout,
            sock_read=options.read_timeout,
        )
        session = aiohttp.ClientSession(timeout=timeout, auto_decompress=False)

        request_kwargs = {
            "headers": options.headers,
            "allow_redirects": options.follow_redirects,
            "max_redirects": options.max_redirects,
        }
        if options.tls is not None:
            try:
                request_kwargs["ssl"] = build_ssl_context(options.tls)
            except (OSError, ValueError) as e:
                await session.close()
                raise UpstreamError(UpstreamErrorKind.CONNECTION_REFUSED, f"TLS setup failed: {e}") from e
            if options.tls.server_name and options.tls.server_name != target.host:
                request_kwargs["server_hostname"] = options.tls.server_name

        try:
            response = await session.get(target.url, **request_kwargs)
        except UPSTREAM_FAILURES as e:
            await session.close()
            raise classify_exception(e, f"GET {target.url}") from e
        except BaseException:
            await session.close()
            raise

        headers = CIMultiDictProxy(CIMultiDict(response.headers))
        upstream = UpstreamResponse(
            status_code=response.status,
            headers=headers,
            body=self._iter_body(response, options.chunk_size),
            dialect=self.name,
            closer=lambda: self._close(response, session),
        )

        if not upstream.is_audio:
            # Leave the body unread
            await upstream.aclose()
            raise UpstreamError(
                UpstreamErrorKind.NON_AUDIO_RESPONSE,
                f"HTTP {response.status} with Content-Type {upstream.content_type!r}",
            )

        logger.debug(
            "Standard dialect connected to %s: HTTP %d, %s",
            target.url, response.status, upstream.content_type or "no content type",
        )
        return upstream

    @staticmethod
    async def _iter_body(response: aiohttp.ClientResponse, chunk_size: int) -> AsyncIterator[bytes]:
        try:
            async for chunk in response.content.iter_chunked(chunk_size):
                yield chunk
        except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as e:
            raise classify_exception(e, "Reading upstream body") from e

    @staticmethod
    async def _close(response: aiohttp.ClientResponse, session: aiohttp.ClientSession) -> None:
        response.close()
        await session.close()


class SocketDialect(UpstreamDialect):
    """Shared plumbing for the dialects that speak over a bare socket."""

    async def _open(
        self, target: StreamTarget, options: UpstreamRequestOptions
    ) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        kwargs = {}
        if target.is_tls:
            try:
                kwargs["ssl"] = build_ssl_context(options.tls or TlsOptions(server_name=target.host))
            except (OSError, ValueError) as e:
                raise UpstreamError(UpstreamErrorKind.CONNECTION_REFUSED, f"TLS setup failed: {e}") from e
            server_name = options.tls.server_name if options.tls else None
            kwargs["server_hostname"] = server_name or target.host

        try:
            return await asyncio.wait_for(
                asyncio.open_connection(target.host, target.port, **kwargs),
                timeout=options.connect_timeout,
            )
        except UPSTREAM_FAILURES as e:
            raise classify_exception(e, f"Connecting to {target.netloc}") from e

    @staticmethod
    async def _close_writer(writer: asyncio.StreamWriter) -> None:
        writer.close()
        try:
            await writer.wait_closed()
        except (OSError, ssl.SSLError) as e:
            logger.debug("Ignoring error while closing upstream socket: %s", e)

    @staticmethod
    async def _read(reader: asyncio.StreamReader, size: int, timeout: float) -> bytes:
        try:
            return await asyncio.wait_for(reader.read(size), timeout=timeout)
        except UPSTREAM_FAILURES as e:
            raise classify_exception(e, "Reading upstream socket") from e

    async def _iter_socket(
        self,
        reader: asyncio.StreamReader,
        options: UpstreamRequestOptions,
        first: bytes = b"",
    ) -> AsyncIterator[bytes]:
        if first:
            yield first
        while True:
            chunk = await self._read(reader, options.chunk_size, options.read_timeout)
            if not chunk:
                return
            yield chunk


class LegacyDialect(SocketDialect):
    """
    Minimal GET over a raw socket for pre-RFC ICY servers.

    Whatever precedes the first blank line is treated as a loose header
    block when it starts with a status line; otherwise every byte received
    is audio. No Icy-MetaData is requested, but an announced icy-metaint is
    still honoured by the caller.
    """

    name = DialectName.LEGACY

    def __init__(self, prefix_limit: int = 4096):
        self._prefix_limit = prefix_limit

    def build_request(self, target: StreamTarget, options: UpstreamRequestOptions) -> bytes:
        lines = [f"GET {target.request_path} HTTP/1.0", f"Host: {target.netloc}"]
        if options.user_agent:
            lines.append(f"User-Agent: {options.user_agent}")
        if "Authorization" in options.headers:
            lines.append(f"Authorization: {options.headers['Authorization']}")
        return ("\r\n".join(lines) + "\r\n\r\n").encode("latin-1")

    async def connect(
        self, target: StreamTarget, options: UpstreamRequestOptions
    ) -> UpstreamResponse:
        reader, writer = await self._open(target, options)
        try:
            writer.write(self.build_request(target, options))
            await writer.drain()
            prefix = await self._read_prefix(reader, options)
            status, headers, body_start = parse_legacy_prefix(prefix)
        except UPSTREAM_FAILURES as e:
            await self._close_writer(writer)
            raise classify_exception(e, f"Legacy GET {target.url}") from e
        except BaseException:
            await self._close_writer(writer)
            raise

        upstream = UpstreamResponse(
            status_code=status,
            headers=headers,
            body=self._iter_socket(reader, options, first=prefix[body_start:]),
            dialect=self.name,
            closer=lambda: self._close_writer(writer),
        )
        if not upstream.is_audio:
            await upstream.aclose()
            raise UpstreamError(
                UpstreamErrorKind.NON_AUDIO_RESPONSE,
                f"legacy status {status} with Content-Type {upstream.content_type!r}",
            )

        logger.debug("Legacy dialect connected to %s: status %d", target.url, status)
        return upstream

    async def _read_prefix(self, reader: asyncio.StreamReader, options: UpstreamRequestOptions) -> bytes:
        """Read until a header block ends, the prefix limit is hit, or EOF."""
        prefix = b""
        while len(prefix) < self._prefix_limit:
            data = await self._read(reader, self._prefix_limit - len(prefix), options.read_timeout)
            if not data:
                break
            prefix += data
            if status_line_pending(prefix):
                continue
            if not looks_like_status_line(prefix) or find_header_end(prefix)[0] >= 0:
                break
        if not prefix:
            raise UpstreamError(UpstreamErrorKind.PROTOCOL_MISMATCH, "upstream closed without data")
        return prefix


def looks_like_status_line(data: bytes) -> bool:
    return data.startswith((b"ICY", b"HTTP/"))


def status_line_pending(data: bytes) -> bool:
    """Too few bytes yet to tell whether a status line is coming."""
    return len(data) < 5 and (b"ICY".startswith(data[:3]) or b"HTTP/".startswith(data))


def find_header_end(data: bytes) -> Tuple[int, int]:
    """Position and length of the earliest blank-line terminator, or (-1, 0)."""
    found = [(data.find(end), len(end)) for end in HEADER_BLOCK_ENDS]
    found = [(pos, size) for pos, size in found if pos >= 0]
    if not found:
        return -1, 0
    return min(found)


def parse_legacy_prefix(prefix: bytes) -> Tuple[int, CIMultiDictProxy, int]:
    """
    Split a legacy response prefix into (status, headers, body offset).

    Raises:
        UpstreamError: if a header block is present but its status line is
            unparsable.
    """
    empty = CIMultiDictProxy(CIMultiDict())
    if not looks_like_status_line(prefix):
        return 200, empty, 0

    end, size = find_header_end(prefix)
    if end < 0:
        # No header block within the prefix: all of it is audio
        return 200, empty, 0

    lines = prefix[:end].replace(b"\r\n", b"\n").split(b"\n")
    match = STATUS_LINE_RE.match(lines[0].strip())
    if match is None:
        raise UpstreamError(
            UpstreamErrorKind.PROTOCOL_MISMATCH,
            f"unparsable status line {lines[0][:80]!r}",
        )

    headers = CIMultiDict()
    for line in lines[1:]:
        name, sep, value = line.decode("latin-1").partition(":")
        if sep and name.strip():
            headers.add(name.strip(), value.strip())
    return int(match.group(2)), CIMultiDictProxy(headers), end + size


class RawRelayDialect(SocketDialect):
    """Last resort: send a simple GET and forward every byte unparsed."""

    name = DialectName.RAW

    def build_request(self, target: StreamTarget, options: UpstreamRequestOptions) -> bytes:
        request = (
            f"GET {target.request_path} HTTP/1.0\r\n"
            f"Host: {target.netloc}\r\n"
            f"Icy-MetaData: 1\r\n"
            f"User-Agent: {options.user_agent}\r\n"
            "\r\n"
        )
        return request.encode("latin-1")

    async def connect(
        self, target: StreamTarget, options: UpstreamRequestOptions
    ) -> UpstreamResponse:
        reader, writer = await self._open(target, options)
        try:
            writer.write(self.build_request(target, options))
            await writer.drain()
            first = await self._read(reader, options.chunk_size, options.read_timeout)
        except UPSTREAM_FAILURES as e:
            await self._close_writer(writer)
            raise classify_exception(e, f"Raw GET {target.url}") from e
        except BaseException:
            await self._close_writer(writer)
            raise

        if not first:
            await self._close_writer(writer)
            raise UpstreamError(UpstreamErrorKind.PROTOCOL_MISMATCH, "upstream closed without data")

        logger.debug("Raw relay connected to %s", target.url)
        return UpstreamResponse(
            status_code=200,
            headers=CIMultiDictProxy(CIMultiDict()),
            body=self._iter_socket(reader, options, first=first),
            dialect=self.name,
            closer=lambda: self._close_writer(writer),
        )


def default_dialects(prefix_limit: int = 4096) -> Tuple[UpstreamDialect, UpstreamDialect, UpstreamDialect]:
    """The standard -> legacy -> raw fallback order."""
    return StandardDialect(), LegacyDialect(prefix_limit), RawRelayDialect()
