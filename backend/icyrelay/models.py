"""
Data model for the relay core and API-facing pydantic models.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, Optional

from multidict import CIMultiDict, CIMultiDictProxy
from pydantic import BaseModel

# Content types that are accepted as an audio body even without audio/*
AUDIO_LIKE_CONTENT_TYPES = ("application/octet-stream", "application/ogg", "video/mp2t")

DEFAULT_CONTENT_TYPE = "audio/mpeg"


class UpstreamErrorKind(str, Enum):
    CONNECTION_REFUSED = "connection_refused"
    TIMEOUT = "timeout"
    PROTOCOL_MISMATCH = "protocol_mismatch"
    NON_AUDIO_RESPONSE = "non_audio_response"


class DialectName(str, Enum):
    STANDARD = "standard"  # HTTP/1.x with ICY headers
    LEGACY = "legacy"  # bare status line, HTTP/0.9 style
    RAW = "raw"  # unparsed byte relay


class RelayState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    FAILED = "failed"
    EXHAUSTED = "exhausted"
    TERMINAL = "terminal"


@dataclass(frozen=True)
class StreamTarget:
    """A resolved upstream stream location."""
    scheme: str  # http or https
    host: str
    port: int
    path: str = "/"
    query: str = ""
    username: Optional[str] = None
    password: Optional[str] = None

    @property
    def is_tls(self) -> bool:
        return self.scheme == "https"

    @property
    def default_port(self) -> int:
        return 443 if self.is_tls else 80

    @property
    def netloc(self) -> str:
        host = f"[{self.host}]" if ":" in self.host else self.host
        if self.port == self.default_port:
            return host
        return f"{host}:{self.port}"

    @property
    def origin(self) -> str:
        return f"{self.scheme}://{self.netloc}"

    @property
    def request_path(self) -> str:
        """Path plus query as written on a request line."""
        path = self.path or "/"
        if self.query:
            return f"{path}?{self.query}"
        return path

    @property
    def url(self) -> str:
        return f"{self.origin}{self.request_path}"

    @property
    def has_mount(self) -> bool:
        """False for a bare origin whose stream path still has to be discovered."""
        return self.path not in ("", "/") or bool(self.query)

    def with_mount(self, path_and_query: str) -> "StreamTarget":
        """Return a copy pointing at a discovered mount."""
        path, _, query = path_and_query.partition("?")
        return replace(self, path=path or "/", query=query)


@dataclass(frozen=True)
class TlsOptions:
    server_name: Optional[str] = None
    client_cert: Optional[str] = None
    client_key: Optional[str] = None
    verify_peer: bool = True


@dataclass
class UpstreamRequestOptions:
    """Options for exactly one upstream attempt. Rebuilt for every attempt."""
    headers: CIMultiDict = field(default_factory=CIMultiDict)
    follow_redirects: bool = True
    max_redirects: int = 5
    connect_timeout: float = 10.0
    read_timeout: float = 15.0
    chunk_size: int = 8192
    tls: Optional[TlsOptions] = None

    @property
    def user_agent(self) -> str:
        return self.headers.get("User-Agent", "")


@dataclass
class UpstreamResponse:
    """Headers plus a lazy body stream, whatever the dialect."""
    status_code: int
    headers: CIMultiDictProxy
    body: AsyncIterator[bytes]
    dialect: DialectName
    closer: Optional[Callable[[], Awaitable[None]]] = None
    closed: bool = False

    @property
    def content_type(self) -> str:
        return self.headers.get("Content-Type", "").split(";")[0].strip().lower()

    @property
    def has_icy_headers(self) -> bool:
        return any(name.lower().startswith("icy-") for name in self.headers.keys())

    @property
    def is_audio(self) -> bool:
        """Whether the response looks like an audio stream."""
        content_type = self.content_type
        return (
            not content_type
            or content_type.startswith("audio/")
            or content_type in AUDIO_LIKE_CONTENT_TYPES
            or self.has_icy_headers
        )

    @property
    def negotiated_content_type(self) -> str:
        """Content-Type to hand downstream: upstream's if audio, else audio/mpeg."""
        raw = self.headers.get("Content-Type", "").strip()
        if self.content_type.startswith("audio/") or self.content_type in AUDIO_LIKE_CONTENT_TYPES:
            return raw
        return DEFAULT_CONTENT_TYPE

    @property
    def is_finite(self) -> bool:
        """True when the upstream declared a body length (not a live stream)."""
        return "Content-Length" in self.headers

    async def aclose(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self.closer is not None:
            await self.closer()
        aclose_body = getattr(self.body, "aclose", None)
        if aclose_body is not None:
            await aclose_body()


# API models
class HealthStatus(BaseModel):
    status: str


class RelayStatus(BaseModel):
    """Summary of the relay configuration exposed for debugging."""
    user_agents: int
    max_retries: int
    base_backoff_ms: int
    max_backoff_budget_ms: int
    idle_timeout_ms: int
    resolve_mounts: bool

