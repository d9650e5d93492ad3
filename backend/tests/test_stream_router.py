"""Front door tests: routing, status codes and headers seen by a browser."""

import asyncio
from contextlib import ExitStack

import pytest
from fastapi.testclient import TestClient

from fakes import FakeUpstream, FixedResolver, SleepRecorder, fake_dialects, icy_body
from icyrelay.errors import UpstreamError
from icyrelay.main import create_app
from icyrelay.models import UpstreamErrorKind
from icyrelay.routers import stream as stream_router
from icyrelay.routers.stream import MISSING_TARGET_MESSAGE, open_unless_disconnected
from icyrelay.services.relay_service import RelayOrchestrator

ICY_BODY = icy_body(8, [(b"AAAAAAAA", b"StreamTitle='Song';")]) + b"BBBBBBBB"


@pytest.fixture
def make_client(settings):
    """Client factory wired to scripted upstreams."""
    stack = ExitStack()

    def factory(standard=(), legacy=(), raw=()):
        dialects = fake_dialects(standard=standard, legacy=legacy, raw=raw)
        orchestrator = RelayOrchestrator(
            settings, dialects=dialects, resolver=FixedResolver(), sleep=SleepRecorder()
        )
        client = stack.enter_context(TestClient(create_app(settings, orchestrator)))
        return client, dialects

    yield factory

    stack.close()


def icy_upstream():
    return FakeUpstream([ICY_BODY[:12], ICY_BODY[12:]], headers={"Content-Type": "audio/mpeg", "icy-metaint": "8"})


class TestHealth:
    def test_health(self, make_client):
        client, _ = make_client()
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    def test_relay_status(self, make_client, settings):
        client, _ = make_client()
        data = client.get("/relay/status").json()
        assert data["user_agents"] == 1
        assert data["max_retries"] == settings.max_retries
        assert data["max_backoff_budget_ms"] == 31000


class TestBadRequests:
    def test_missing_url(self, make_client):
        client, dialects = make_client()
        response = client.get("/")
        assert response.status_code == 400
        assert response.text == MISSING_TARGET_MESSAGE
        assert dialects[0].calls == []

    def test_unrelated_path(self, make_client):
        client, _ = make_client()
        response = client.get("/favicon.ico")
        assert response.status_code == 400
        assert response.text == MISSING_TARGET_MESSAGE

    def test_unsupported_scheme(self, make_client):
        client, dialects = make_client()
        response = client.get("/stream", params={"url": "ftp://example.com/live"})
        assert response.status_code == 400
        assert "ftp" in response.text
        assert dialects[0].calls == []


class TestRelay:
    def test_query_form(self, make_client):
        client, _ = make_client(standard=[icy_upstream()])
        response = client.get("/", params={"url": "http://radio.example.com:8000/live"})

        assert response.status_code == 200
        assert response.headers["content-type"] == "audio/mpeg"
        assert response.headers["cache-control"] == "no-cache, no-store"
        assert response.content == b"AAAAAAAABBBBBBBB"

    def test_stream_route(self, make_client):
        client, dialects = make_client(standard=[icy_upstream()])
        response = client.get("/stream", params={"url": "icy://radio.example.com/live"})
        assert response.content == b"AAAAAAAABBBBBBBB"
        assert dialects[0].calls[0][0].url == "http://radio.example.com/live"

    def test_path_form_keeps_upstream_query(self, make_client):
        client, dialects = make_client(standard=[icy_upstream()])
        response = client.get("/http://radio.example.com:8000/;?sid=1")

        assert response.status_code == 200
        assert response.content == b"AAAAAAAABBBBBBBB"
        assert dialects[0].calls[0][0].url == "http://radio.example.com:8000/;?sid=1"

    def test_cors_headers(self, make_client):
        client, _ = make_client(standard=[icy_upstream()])
        response = client.get(
            "/", params={"url": "http://radio.example.com/live"}, headers={"Origin": "http://player.example"}
        )
        assert response.headers["access-control-allow-origin"] == "*"

    def test_cors_preflight(self, make_client):
        client, _ = make_client()
        response = client.options(
            "/stream",
            headers={
                "Origin": "http://player.example",
                "Access-Control-Request-Method": "GET",
                "Access-Control-Request-Headers": "Range",
            },
        )
        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "*"
        assert "GET" in response.headers["access-control-allow-methods"]

    def test_range_passthrough(self, make_client):
        upstream = FakeUpstream(
            [b"0123456789"],
            status=206,
            headers={"Content-Type": "audio/mpeg", "Content-Range": "bytes 0-9/1000"},
        )
        client, dialects = make_client(standard=[upstream])
        response = client.get(
            "/", params={"url": "http://files.example.com/show.mp3"}, headers={"Range": "bytes=0-9"}
        )

        assert response.status_code == 206
        assert response.headers["content-range"] == "bytes 0-9/1000"
        assert response.content == b"0123456789"
        assert dialects[0].calls[0][1].headers["Range"] == "bytes=0-9"

    def test_legacy_fallback_gets_default_content_type(self, make_client):
        mismatch = UpstreamError(UpstreamErrorKind.PROTOCOL_MISMATCH, "bad status line")
        client, _ = make_client(standard=[mismatch], legacy=[FakeUpstream([b"mp3"], headers={})])

        response = client.get("/", params={"url": "http://old.example.com/"})
        assert response.headers["content-type"] == "audio/mpeg"
        assert response.content == b"mp3"

    def test_unreachable_upstream(self, make_client):
        client, dialects = make_client()
        response = client.get("/", params={"url": "http://down.example.com/live"})

        assert response.status_code == 502
        assert response.text.startswith("Upstream unavailable:")
        assert len(dialects[0].calls) == 6


class DisconnectingRequest:
    """Request whose client has gone once ``left`` is set."""

    def __init__(self, left: asyncio.Event):
        self.left = left

    async def is_disconnected(self) -> bool:
        await self.left.wait()
        return True


class ClosableStream:
    def __init__(self):
        self.closed = False

    async def aclose(self):
        self.closed = True


class TestOpenUnlessDisconnected:
    @pytest.fixture(autouse=True)
    def fast_polling(self, monkeypatch):
        monkeypatch.setattr(stream_router, "DISCONNECT_POLL_INTERVAL", 0.01)

    async def test_disconnect_cancels_opening(self):
        left = asyncio.Event()
        left.set()
        cancelled = asyncio.Event()

        async def opening():
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        assert await open_unless_disconnected(DisconnectingRequest(left), opening()) is None
        assert cancelled.is_set()

    async def test_stream_opened_while_client_leaves_is_closed(self):
        left = asyncio.Event()
        stream = ClosableStream()

        async def opening():
            await asyncio.sleep(0.05)
            # The disconnect is noticed only after the stream is open
            left.set()
            return stream

        assert await open_unless_disconnected(DisconnectingRequest(left), opening()) is None
        assert stream.closed
