"""
Relay service - drives upstream attempts for one client request.

State machine per request:

    IDLE -> CONNECTING -> STREAMING
              |   ^           |
              v   |           v (stall / upstream lost)
             FAILED ----> CONNECTING ...
              |
              v
          EXHAUSTED -> TERMINAL

Strategies are tried in a fixed plan: the standard dialect once per
configured User-Agent (each with exponential backoff retries), then the
legacy dialect, then the raw relay, each of those at most once.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional, Sequence

from icyrelay.config.settings import RelaySettings
from icyrelay.errors import RelayExhaustedError, UpstreamError
from icyrelay.models import (
    RelayState,
    StreamTarget,
    UpstreamErrorKind,
    UpstreamResponse,
)
from icyrelay.services.dialect_client import UpstreamDialect, default_dialects
from icyrelay.services.metadata_stripper import IcyMetadataStripper, parse_meta_interval
from icyrelay.services.mount_resolver import MountResolver
from icyrelay.services.target_service import build_request_options, parse_target

logger = logging.getLogger(__name__)

# Upstream headers worth handing to the client
PASSTHROUGH_HEADERS = ("Content-Range", "Accept-Ranges")


@dataclass
class RetryState:
    """Retries of the current strategy."""
    attempt_count: int = 0
    next_backoff_ms: int = 0

    def schedule(self, base_backoff_ms: int) -> int:
        """Record a failure and return the delay before the next attempt."""
        self.next_backoff_ms = base_backoff_ms * 2 ** self.attempt_count
        self.attempt_count += 1
        return self.next_backoff_ms


@dataclass(frozen=True)
class Strategy:
    dialect: UpstreamDialect
    user_agent: str
    retryable: bool

    def describe(self) -> str:
        return f"{self.dialect.name.value} ({self.user_agent})"


class RelayStream:
    """
    One client request's upstream connection and audio stream.

    Call ``connect`` once before sending anything to the client; after that
    ``iter_audio`` yields metadata-free audio and reconnects transparently.
    If reconnecting fails for good, ``iter_audio`` raises
    RelayExhaustedError so the caller can drop the client connection
    instead of ending the response cleanly.
    """

    def __init__(
        self,
        target: StreamTarget,
        plan: Sequence[Strategy],
        settings: RelaySettings,
        range_header: Optional[str] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.target = target
        self.range_header = range_header
        self.state = RelayState.IDLE
        self.retry = RetryState()
        self.bytes_sent = 0
        self.reconnects = 0
        self.last_error: Optional[UpstreamError] = None

        self._plan = list(plan)
        self._settings = settings
        self._sleep = sleep
        self._response: Optional[UpstreamResponse] = None
        self._accepted_index = 0
        self._status_code = 200
        self._content_type: Optional[str] = None
        self._passthrough: Dict[str, str] = {}

    @property
    def status_code(self) -> int:
        return self._status_code

    @property
    def content_type(self) -> Optional[str]:
        """Negotiated on the first accepted connection and then fixed."""
        return self._content_type

    @property
    def response_headers(self) -> Dict[str, str]:
        return dict(self._passthrough)

    @property
    def accepted_strategy(self) -> Optional[Strategy]:
        if self._response is None:
            return None
        return self._plan[self._accepted_index]

    @property
    def _fallback_index(self) -> int:
        """First strategy that is not a standard-dialect identity."""
        for index, strategy in enumerate(self._plan):
            if not strategy.retryable:
                return index
        return len(self._plan)

    async def connect(self) -> None:
        """Open the upstream for the first time.

        Raises:
            RelayExhaustedError: if every strategy failed.
        """
        response = await self._run_attempts(0)
        self._accept(response, first=True)

    async def iter_audio(self) -> AsyncIterator[bytes]:
        if self._response is None:
            raise RuntimeError("connect() must succeed before streaming")

        idle_timeout = self._settings.idle_timeout_ms / 1000
        try:
            while True:
                response = self._response
                stripper = IcyMetadataStripper(parse_meta_interval(response.headers))
                received = False
                failure: Optional[UpstreamError] = None
                body = response.body.__aiter__()

                try:
                    while True:
                        try:
                            chunk = await asyncio.wait_for(body.__anext__(), timeout=idle_timeout)
                        except StopAsyncIteration:
                            break
                        except asyncio.TimeoutError:
                            raise UpstreamError(
                                UpstreamErrorKind.TIMEOUT,
                                f"no data for {self._settings.idle_timeout_ms} ms",
                            ) from None
                        if not chunk:
                            continue
                        if not received:
                            received = True
                            self.state = RelayState.STREAMING
                            self.retry = RetryState()
                        audio = stripper.process_chunk(chunk)
                        if audio:
                            self.bytes_sent += len(audio)
                            yield audio
                except UpstreamError as e:
                    failure = e
                finally:
                    await response.aclose()

                if failure is None:
                    logger.info("Upstream %s finished after %d bytes", self.target.url, self.bytes_sent)
                    return
                if response.is_finite:
                    # A sized body can't be resumed by reconnecting
                    raise RelayExhaustedError(
                        f"Upstream {self.target.url} broke off a sized body: {failure}",
                        last_error=failure,
                    )
                # Live streams restart from "now"; a byte range no longer applies
                self.range_header = None

                self.reconnects += 1
                logger.warning(
                    "Lost upstream %s via %s (%s), reconnecting",
                    self.target.url, self._plan[self._accepted_index].describe(), failure,
                )
                if received:
                    # The connection worked; start over at the strategy that served it
                    next_response = await self._run_attempts(self._accepted_index)
                else:
                    next_response = await self._run_attempts(self._accepted_index, failure)
                self._accept(next_response, first=False)
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        """Release the upstream. Safe to call more than once."""
        if self._response is not None:
            await self._response.aclose()
        self.state = RelayState.TERMINAL

    def _accept(self, response: UpstreamResponse, first: bool) -> None:
        self._response = response
        if first:
            self._content_type = response.negotiated_content_type
            if response.status_code == 206 and self.range_header:
                self._status_code = 206
            self._passthrough = {
                name: response.headers[name] for name in PASSTHROUGH_HEADERS if name in response.headers
            }
        logger.info(
            "Accepted upstream %s via %s (HTTP %d, %s)",
            self.target.url,
            self._plan[self._accepted_index].describe(),
            response.status_code,
            self._content_type,
        )

    async def _run_attempts(self, index: int, failure: Optional[UpstreamError] = None) -> UpstreamResponse:
        """
        Walk the plan from ``index`` until a strategy connects.

        Args:
            index: Plan position to start at
            failure: Failure already charged to the strategy at ``index``
        """
        while True:
            if failure is not None:
                index = await self._handle_failure(index, failure)
                failure = None

            if index >= len(self._plan):
                self.state = RelayState.EXHAUSTED
                logger.error("All strategies exhausted for %s: %s", self.target.url, self.last_error)
                raise RelayExhaustedError(
                    f"Could not connect to {self.target.url}: {self.last_error}",
                    last_error=self.last_error,
                )

            strategy = self._plan[index]
            options = build_request_options(
                self.target, self._settings, strategy.user_agent, self.range_header
            )
            self.state = RelayState.CONNECTING
            logger.debug(
                "Connecting to %s via %s (retry %d)",
                self.target.url, strategy.describe(), self.retry.attempt_count,
            )
            try:
                response = await strategy.dialect.connect(self.target, options)
            except UpstreamError as e:
                failure = e
                continue

            self._accepted_index = index
            return response

    async def _handle_failure(self, index: int, error: UpstreamError) -> int:
        """Back off and retry, or pick the next strategy. Returns the plan index to try."""
        strategy = self._plan[index]
        self.state = RelayState.FAILED
        self.last_error = error
        logger.warning("Attempt via %s on %s failed: %s", strategy.describe(), self.target.url, error)

        if strategy.retryable and error.retryable and self.retry.attempt_count < self._settings.max_retries:
            delay_ms = self.retry.schedule(self._settings.base_backoff_ms)
            logger.debug("Retrying %s in %d ms", strategy.describe(), delay_ms)
            await self._sleep(delay_ms / 1000)
            return index

        self.retry = RetryState()
        if strategy.retryable and error.kind is UpstreamErrorKind.PROTOCOL_MISMATCH:
            # The HTTP parser choked: this origin needs the legacy dialect
            return max(index + 1, self._fallback_index)
        return index + 1


class RelayOrchestrator:
    """Builds RelayStreams for client requests. Shared, holds no per-request state."""

    def __init__(
        self,
        settings: RelaySettings,
        dialects: Optional[Sequence[UpstreamDialect]] = None,
        resolver: Optional[MountResolver] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._settings = settings
        self._dialects = list(dialects or default_dialects(settings.legacy_prefix_limit))
        self._resolver = resolver or MountResolver(settings)
        self._sleep = sleep

    @property
    def settings(self) -> RelaySettings:
        return self._settings

    def build_plan(self) -> List[Strategy]:
        """Standard dialect per identity, then each fallback dialect once."""
        standard, *fallbacks = self._dialects
        plan = [Strategy(standard, user_agent, retryable=True) for user_agent in self._settings.user_agents]
        plan.extend(
            Strategy(dialect, self._settings.user_agents[0], retryable=False) for dialect in fallbacks
        )
        return plan

    async def resolve_target(self, raw_target: str) -> StreamTarget:
        """Normalize the client's target and discover its mount if needed.

        Raises:
            InvalidTargetError: if the target is unusable.
        """
        target = parse_target(raw_target)
        if self._settings.resolve_mounts and not target.has_mount:
            target = target.with_mount(await self._resolver.resolve(target))
        return target

    async def open_stream(self, raw_target: str, range_header: Optional[str] = None) -> RelayStream:
        """
        Resolve the target and connect to it.

        Raises:
            InvalidTargetError: bad target, nothing attempted.
            RelayExhaustedError: every strategy failed.
        """
        target = await self.resolve_target(raw_target)
        logger.info("Relaying %s", target.url)
        stream = RelayStream(target, self.build_plan(), self._settings, range_header, self._sleep)
        await stream.connect()
        return stream
