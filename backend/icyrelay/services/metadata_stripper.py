"""
ICY metadata stripping for Shoutcast/Icecast streams.

When a client sends ``Icy-MetaData: 1`` the server interleaves metadata
frames with the audio:

1. Server responds with header: icy-metaint: N (bytes between metadata)
2. After every N audio bytes the server inserts a metadata frame:
   - 1 byte: length prefix (actual_length = byte_value * 16)
   - actual_length bytes: metadata string (StreamTitle='...';), null padded
   - If no metadata changed: a single 0x00 byte

The stripper removes those frames so only audio reaches the client. The
frames are discarded, never parsed. Chunks arrive with arbitrary sizes, so
the countdowns live in a small state object that survives chunk boundaries,
including a length byte or metadata frame split across two chunks.
"""

import logging
from dataclasses import dataclass
from typing import Mapping

logger = logging.getLogger(__name__)


@dataclass
class MetaIntervalState:
    """Countdowns for one upstream connection.

    bytes_until_meta == 0 with metadata_bytes_remaining == 0 means the next
    byte is the metadata length byte.
    """
    meta_interval: int
    bytes_until_meta: int = 0
    metadata_bytes_remaining: int = 0

    def __post_init__(self):
        if self.meta_interval < 0:
            raise ValueError("meta_interval must be >= 0")
        if self.bytes_until_meta == 0 and self.metadata_bytes_remaining == 0:
            self.bytes_until_meta = self.meta_interval

    @property
    def enabled(self) -> bool:
        return self.meta_interval > 0


def parse_meta_interval(headers: Mapping[str, str]) -> int:
    """Read icy-metaint from response headers; absent or invalid means 0."""
    raw = headers.get("icy-metaint")
    if raw is None:
        return 0
    try:
        value = int(str(raw).strip())
    except ValueError:
        logger.warning("Ignoring invalid icy-metaint header: %r", raw)
        return 0
    if value < 0:
        logger.warning("Ignoring negative icy-metaint header: %r", raw)
        return 0
    return value


def strip_metadata(state: MetaIntervalState, chunk: bytes) -> bytes:
    """
    Remove ICY metadata frames from one chunk, updating state in place.

    Args:
        state: Countdown state carried over from the previous chunk
        chunk: Raw bytes as received from the upstream

    Returns:
        The audio bytes of the chunk, in order
    """
    if not state.enabled or not chunk:
        return chunk

    view = memoryview(chunk)
    length = len(view)
    offset = 0
    audio = []

    while offset < length:
        if state.metadata_bytes_remaining > 0:
            # Inside a metadata frame - skip it
            skip = min(state.metadata_bytes_remaining, length - offset)
            offset += skip
            state.metadata_bytes_remaining -= skip
        elif state.bytes_until_meta == 0:
            # Length byte
            state.metadata_bytes_remaining = view[offset] * 16
            state.bytes_until_meta = state.meta_interval
            offset += 1
        else:
            take = min(state.bytes_until_meta, length - offset)
            audio.append(view[offset:offset + take])
            offset += take
            state.bytes_until_meta -= take

    if len(audio) == 1:
        return audio[0].tobytes()
    return b"".join(audio)


class IcyMetadataStripper:
    """
    Stateful wrapper around strip_metadata for one upstream connection.

    Usage:
        stripper = IcyMetadataStripper(parse_meta_interval(response.headers))

        async for chunk in response.body:
            audio = stripper.process_chunk(chunk)
            if audio:
                yield audio
    """

    def __init__(self, meta_interval: int = 0):
        """
        Args:
            meta_interval: Value of the icy-metaint header. 0 disables
                           stripping and chunks pass through untouched.
        """
        self.state = MetaIntervalState(meta_interval)

    @property
    def meta_interval(self) -> int:
        return self.state.meta_interval

    def process_chunk(self, data: bytes) -> bytes:
        return strip_metadata(self.state, data)
