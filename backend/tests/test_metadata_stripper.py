"""Tests for ICY metadata stripping (pure logic, no network)."""

import random

import pytest

from fakes import icy_body
from icyrelay.services.metadata_stripper import (
    IcyMetadataStripper,
    MetaIntervalState,
    parse_meta_interval,
    strip_metadata,
)


def split_at(data: bytes, cuts) -> list:
    cuts = sorted(set(c for c in cuts if 0 < c < len(data)))
    pieces = []
    start = 0
    for cut in cuts:
        pieces.append(data[start:cut])
        start = cut
    pieces.append(data[start:])
    return pieces


def run(meta_interval: int, chunks) -> bytes:
    stripper = IcyMetadataStripper(meta_interval)
    return b"".join(stripper.process_chunk(chunk) for chunk in chunks)


class TestStripMetadata:
    def test_single_frame(self):
        raw = b"AAAAAAAA" + bytes([1]) + b"StreamTitle='x';" + b"BBBBBBBB"
        assert run(8, [raw]) == b"AAAAAAAABBBBBBBB"

    def test_zero_length_frame_resets_countdown(self):
        state = MetaIntervalState(4)
        out = strip_metadata(state, b"abcd\x00")
        assert out == b"abcd"
        assert state.metadata_bytes_remaining == 0
        assert state.bytes_until_meta == 4

    def test_zero_length_frames_back_to_back(self):
        raw = b"abcd\x00efgh\x00ijkl\x00"
        assert run(4, [raw]) == b"abcdefghijkl"

    def test_length_byte_split_across_chunks(self):
        state = MetaIntervalState(4)
        assert strip_metadata(state, b"abcd") == b"abcd"
        # Countdown exhausted; the next byte is the length byte
        assert state.bytes_until_meta == 0
        assert strip_metadata(state, b"\x01") == b""
        assert state.metadata_bytes_remaining == 16
        assert strip_metadata(state, b"m" * 16 + b"efgh") == b"efgh"

    def test_metadata_frame_split_across_chunks(self):
        meta = b"StreamTitle='Artist - Song';".ljust(32, b"\x00")
        raw = b"1234" + bytes([2]) + meta + b"5678"
        chunks = [raw[:7], raw[7:20], raw[20:36], raw[36:]]
        assert run(4, chunks) == b"12345678"

    def test_one_byte_chunks(self):
        raw = icy_body(3, [(b"abc", b"T"), (b"def", b""), (b"ghi", b"x" * 20)])
        assert run(3, [bytes([b]) for b in raw]) == b"abcdefghi"

    def test_trailing_partial_audio(self):
        raw = icy_body(4, [(b"abcd", b"meta")]) + b"ef"
        stripper = IcyMetadataStripper(4)
        assert stripper.process_chunk(raw) == b"abcdef"
        assert stripper.state.bytes_until_meta == 2

    @pytest.mark.parametrize("seed", range(20))
    def test_any_chunking_yields_audio_only(self, seed):
        rng = random.Random(seed)
        meta_interval = rng.randint(1, 64)
        frames = []
        for _ in range(rng.randint(1, 12)):
            audio = bytes(rng.randrange(256) for _ in range(meta_interval))
            metadata = bytes(rng.randrange(1, 256) for _ in range(rng.choice([0, 5, 16, 40])))
            frames.append((audio, metadata))
        raw = icy_body(meta_interval, frames)
        cuts = [rng.randrange(1, len(raw)) for _ in range(rng.randint(0, 30))]

        assert run(meta_interval, split_at(raw, cuts)) == b"".join(a for a, _ in frames)


class TestPassThrough:
    @pytest.mark.parametrize("cuts", [[], [1], [3, 4, 5], [2, 9, 10]])
    def test_zero_interval_leaves_stream_alone(self, cuts):
        raw = b"AAAA\x01not metadata at all"
        chunks = split_at(raw, cuts)
        stripper = IcyMetadataStripper(0)
        assert [stripper.process_chunk(c) for c in chunks] == chunks

    def test_empty_chunk(self):
        assert IcyMetadataStripper(8).process_chunk(b"") == b""

    def test_negative_interval_rejected(self):
        with pytest.raises(ValueError):
            MetaIntervalState(-1)


class TestParseMetaInterval:
    def test_present(self):
        assert parse_meta_interval({"icy-metaint": "16000"}) == 16000

    def test_absent(self):
        assert parse_meta_interval({}) == 0

    @pytest.mark.parametrize("value", ["abc", "-5", ""])
    def test_invalid_disables_stripping(self, value):
        assert parse_meta_interval({"icy-metaint": value}) == 0
