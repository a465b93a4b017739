"""
Tests for the browser (client-side VAD) call.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import numpy as np
import pytest

from src.voicecall.calls import browser_vad
from src.voicecall.calls.base import CallClosedError, CallEventHandler
from src.voicecall.calls.browser_vad import (
    BrowserVADCall,
    READY_BANNER,
    SERVER_REQUEST_CLEAR_BUFFER,
    SERVER_START_LISTENING,
)
from src.voicecall.stt import TranscriptionError


class RecordingHandler(CallEventHandler):
    def __init__(self):
        self.messages = []
        self.interrupts = 0
        self.ended = 0

    async def on_user_message(self, text: str) -> None:
        self.messages.append(text)

    async def on_call_ended(self) -> None:
        self.ended += 1

    async def on_interrupt(self) -> None:
        self.interrupts += 1


class SuspendingTransport:
    """Transport whose sends yield to the loop, like a real socket."""

    def __init__(self):
        self.sent = []
        self.close_calls = 0

    async def send_text(self, data: str) -> None:
        await asyncio.sleep(0)
        self.sent.append(data)

    async def send_bytes(self, data: bytes) -> None:
        await asyncio.sleep(0)
        self.sent.append(data)

    async def close(self, code: int = 1000) -> None:
        self.close_calls += 1

    @property
    def binaries(self):
        return [m for m in self.sent if isinstance(m, bytes)]


@pytest.fixture
def call(transport, fake_stt):
    call = BrowserVADCall(transport, fake_stt)
    return call


@pytest.fixture
def handler(call):
    handler = RecordingHandler()
    call.attach(handler)
    return handler


class TestEndOfSpeech:
    """Utterance boundaries from the browser."""

    @pytest.mark.asyncio
    async def test_eos_transcribes_accumulated_frames_once(self, call, handler, fake_stt, transport, float_frame):
        await call.handle_bytes(float_frame(0.1))
        await call.handle_bytes(float_frame(0.2))
        await call.handle_text("EOS")

        # Accumulator is swapped out before transcription starts.
        assert call.pending_frames == 0

        await call.drain()

        fake_stt.transcribe.assert_awaited_once()
        frames = fake_stt.transcribe.await_args.args[0]
        assert len(frames) == 2
        assert np.allclose(frames[0], 0.1)
        assert np.allclose(frames[1], 0.2)
        assert handler.messages == ["hello there"]
        assert transport.texts == [SERVER_REQUEST_CLEAR_BUFFER]

    @pytest.mark.asyncio
    async def test_eos_without_frames_is_ignored(self, call, handler, fake_stt, transport):
        await call.handle_text("EOS")
        await call.drain()

        fake_stt.transcribe.assert_not_awaited()
        assert handler.messages == []
        assert transport.sent == []

    @pytest.mark.asyncio
    async def test_frames_after_eos_start_new_utterance(self, call, handler, fake_stt, float_frame):
        gate = asyncio.Event()

        async def slow_transcribe(frames):
            await gate.wait()
            return f"{len(frames)} frames"

        fake_stt.transcribe = AsyncMock(side_effect=slow_transcribe)

        await call.handle_bytes(float_frame())
        await call.handle_bytes(float_frame())
        await call.handle_text("EOS")
        await call.handle_bytes(float_frame())

        assert call.pending_frames == 1

        await call.handle_text("EOS")
        gate.set()
        await call.drain()

        assert handler.messages == ["2 frames", "1 frames"]

    @pytest.mark.asyncio
    async def test_long_utterance_keeps_most_recent_frames(self, monkeypatch, transport, fake_stt, float_frame):
        monkeypatch.setattr(browser_vad, "MAX_PENDING_FRAMES", 3)
        call = BrowserVADCall(transport, fake_stt)

        for value in (0.1, 0.2, 0.3, 0.4, 0.5):
            await call.handle_bytes(float_frame(value))

        assert call.pending_frames == 3

        await call.handle_text("EOS")
        await call.drain()

        frames = fake_stt.transcribe.await_args.args[0]
        assert [round(float(f[0]), 1) for f in frames] == [0.3, 0.4, 0.5]
        assert call.pending_frames == 0

    def test_frame_cap_is_bounded_in_time(self):
        assert browser_vad.MAX_PENDING_FRAMES == 60 * 24000 // 1024

    @pytest.mark.asyncio
    async def test_transcription_failure_drops_utterance(self, call, handler, fake_stt, transport, float_frame):
        fake_stt.transcribe = AsyncMock(side_effect=TranscriptionError("boom"))

        await call.handle_bytes(float_frame())
        await call.handle_text("EOS")
        await call.drain()

        assert handler.messages == []
        assert not call.is_closed
        assert transport.sent == []

    @pytest.mark.asyncio
    async def test_empty_transcription_not_emitted(self, call, handler, fake_stt, float_frame):
        fake_stt.transcribe = AsyncMock(return_value="   ")

        await call.handle_bytes(float_frame())
        await call.handle_text("EOS")
        await call.drain()

        assert handler.messages == []


class TestControlTokens:
    """INT and unknown text tokens."""

    @pytest.mark.asyncio
    async def test_interrupt_does_not_touch_accumulator(self, call, handler, fake_stt, float_frame):
        await call.handle_bytes(float_frame())
        await call.handle_text("INT")
        await call.drain()

        assert handler.interrupts == 1
        assert call.pending_frames == 1
        fake_stt.transcribe.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_token_is_ignored(self, call, handler):
        await call.handle_text("HELLO")
        await call.drain()

        assert handler.messages == []
        assert handler.interrupts == 0

    @pytest.mark.asyncio
    async def test_tokens_are_case_sensitive(self, call, handler, float_frame):
        await call.handle_bytes(float_frame())
        await call.handle_text("eos")
        await call.drain()

        assert call.pending_frames == 1


class TestOutbound:
    """Audio and metadata sent to the browser."""

    @pytest.mark.asyncio
    async def test_start_plays_tone(self, call, transport):
        await call.start()

        # 0.5s at 24kHz in 1024-sample frames
        assert len(transport.binaries) == 12
        assert len(transport.binaries[0]) == 1024 * 4

    @pytest.mark.asyncio
    async def test_indicate_ready(self, call, transport):
        await call.indicate_ready()

        assert transport.texts == [READY_BANNER, SERVER_START_LISTENING]

    @pytest.mark.asyncio
    async def test_push_audio_sends_float32(self, call, transport):
        frame = np.array([0.5, -0.5], dtype=np.float32)
        await call.push_audio(frame)

        assert transport.binaries == [frame.astype("<f4").tobytes()]


class TestEnd:
    """Call teardown."""

    @pytest.mark.asyncio
    async def test_end_plays_tone_closes_and_emits_once(self, call, handler, transport, fake_stt):
        await call.end()
        await call.end()

        assert transport.closed
        assert len(transport.binaries) == 12
        assert handler.ended == 1
        fake_stt.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_concurrent_end_runs_teardown_once(self, handler, fake_stt):
        transport = SuspendingTransport()
        call = BrowserVADCall(transport, fake_stt)
        call.attach(handler)

        await asyncio.gather(call.end(), call.end(), call.handle_transport_closed())

        assert len(transport.binaries) == 12
        assert transport.close_calls == 1
        assert handler.ended == 1
        fake_stt.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_transport_closed_emits_once(self, call, handler, transport):
        await call.handle_transport_closed()
        await call.handle_transport_closed()
        await call.end()

        assert handler.ended == 1
        assert not transport.closed

    @pytest.mark.asyncio
    async def test_push_after_close_raises(self, call, handler):
        await call.end()

        with pytest.raises(CallClosedError):
            await call.push_meta("late")
        with pytest.raises(CallClosedError):
            await call.push_audio(np.zeros(4, dtype=np.float32))

    @pytest.mark.asyncio
    async def test_send_failure_raises_call_closed(self, call):
        transport = MagicMock()
        transport.send_text = AsyncMock(side_effect=RuntimeError("gone"))
        call._transport = transport

        with pytest.raises(CallClosedError):
            await call.push_meta("hello")

    @pytest.mark.asyncio
    async def test_only_one_handler(self, call, handler):
        with pytest.raises(ValueError):
            call.attach(RecordingHandler())
