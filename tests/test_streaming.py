"""
Tests for the streaming frame writer.
"""

from unittest.mock import AsyncMock, MagicMock

import numpy as np
import pytest

from src.voicecall.calls.base import BROWSER_AUDIO_SPEC, TELEPHONY_AUDIO_SPEC, CallClosedError
from src.voicecall.streaming import AudioPipelineError, StreamingFrameWriter, accumulate


def _fake_call(spec):
    call = MagicMock()
    call.audio_spec = spec
    call.push_audio = AsyncMock()
    return call


async def _agen(chunks):
    for chunk in chunks:
        yield chunk


async def _collect(agen):
    return [item async for item in agen]


class TestAccumulate:
    """Re-chunking provider bytes into fixed units."""

    @pytest.mark.asyncio
    async def test_exact_units_and_remainder(self):
        units = await _collect(accumulate(_agen([b"a" * 7, b"b" * 5]), 4, 1))
        assert [len(u) for u in units] == [4, 4, 4]
        assert b"".join(units) == b"a" * 7 + b"b" * 5

    @pytest.mark.asyncio
    async def test_remainder_padded_to_sample_width(self):
        units = await _collect(accumulate(_agen([b"\x01\x02\x03"]), 48000, 2))
        assert units == [b"\x01\x02\x03\x00"]

    @pytest.mark.asyncio
    async def test_sync_source(self):
        units = await _collect(accumulate([b"xy", b"z"], 2, 1))
        assert units == [b"xy", b"z"]

    @pytest.mark.asyncio
    async def test_empty_source(self):
        assert await _collect(accumulate(_agen([]), 4, 2)) == []


class TestStreamingFrameWriter:
    """End-to-end framing to a call."""

    @pytest.mark.asyncio
    async def test_pcm_stream_becomes_float_frames(self):
        call = _fake_call(BROWSER_AUDIO_SPEC)
        writer = StreamingFrameWriter(call)
        pcm = np.full(3000, 16383, dtype="<i2").tobytes()

        pushed = await writer.write(_agen([pcm[:1001], pcm[1001:]]))

        assert pushed == 3
        frames = [c.args[0] for c in call.push_audio.await_args_list]
        assert [len(f) for f in frames] == [1024, 1024, 952]
        assert frames[0].dtype == np.float32
        assert np.allclose(frames[0], 16383 / 32767)

    @pytest.mark.asyncio
    async def test_short_stream_still_flushes(self):
        call = _fake_call(BROWSER_AUDIO_SPEC)
        writer = StreamingFrameWriter(call)

        pushed = await writer.write(_agen([b"\x10\x00" * 10]))

        assert pushed == 1
        assert len(call.push_audio.await_args.args[0]) == 10

    @pytest.mark.asyncio
    async def test_mulaw_passthrough(self):
        call = _fake_call(TELEPHONY_AUDIO_SPEC)
        writer = StreamingFrameWriter(call)
        audio = bytes(range(256)) * 2

        pushed = await writer.write([audio])

        frames = [c.args[0] for c in call.push_audio.await_args_list]
        assert pushed == 4
        assert [len(f) for f in frames] == [160, 160, 160, 32]
        assert b"".join(frames) == audio

    @pytest.mark.asyncio
    async def test_should_continue_truncates(self):
        call = _fake_call(TELEPHONY_AUDIO_SPEC)
        writer = StreamingFrameWriter(call)
        allowed = iter([True, True, False])

        pushed = await writer.write([b"\xff" * 1600], should_continue=lambda: next(allowed))

        assert pushed == 2
        assert call.push_audio.await_count == 2

    @pytest.mark.asyncio
    async def test_push_failure_raises_pipeline_error(self):
        call = _fake_call(TELEPHONY_AUDIO_SPEC)
        call.push_audio = AsyncMock(side_effect=CallClosedError("closed"))
        writer = StreamingFrameWriter(call)

        with pytest.raises(AudioPipelineError) as exc_info:
            await writer.write([b"\xff" * 320])

        assert isinstance(exc_info.value.__cause__, CallClosedError)

    @pytest.mark.asyncio
    async def test_source_failure_raises_pipeline_error(self):
        call = _fake_call(TELEPHONY_AUDIO_SPEC)
        writer = StreamingFrameWriter(call)

        async def failing():
            yield b"\xff" * 100
            raise RuntimeError("provider dropped")

        with pytest.raises(AudioPipelineError):
            await writer.write(failing())

        call.push_audio.assert_not_awaited()
