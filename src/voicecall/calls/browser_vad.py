"""
Browser call with client-side voice activity detection.

The browser frames each utterance itself: it streams float32 microphone frames
as binary messages and sends `EOS` when the caller stops talking, or `INT`
when the caller talks over the assistant. The server accumulates frames
between boundaries and transcribes each utterance once.
"""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Deque, List, Protocol, Sequence

import numpy as np
import structlog

from src.voicecall.audio import (
    BROWSER_FRAME_LENGTH,
    BROWSER_SAMPLE_RATE,
    END_TONE_HZ,
    START_TONE_HZ,
    TONE_DURATION_S,
    Frame,
    float_bytes_to_samples,
    iter_frames,
    samples_to_float_bytes,
    synthesize_tone,
)
from src.voicecall.calls.base import BROWSER_AUDIO_SPEC, Call, CallClosedError, CallTransport
from src.voicecall.stt import TranscriptionError

logger = structlog.get_logger(__name__)

SERVER_START_LISTENING = "RDY"
CLIENT_END_OF_SPEECH = "EOS"
CLIENT_INTERRUPT = "INT"
SERVER_REQUEST_CLEAR_BUFFER = "CLR"

READY_BANNER = "--- Assistant Ready ---"

# One utterance is capped at 60 seconds of 1024-sample frames; older frames are dropped.
MAX_PENDING_FRAMES = 60 * BROWSER_SAMPLE_RATE // BROWSER_FRAME_LENGTH


class Transcriber(Protocol):
    async def transcribe(self, frames: Sequence[np.ndarray]) -> str: ...

    async def close(self) -> None: ...


class BrowserVADCall(Call):
    """Call over a browser WebSocket (float32 24kHz frames + text tokens)."""

    audio_spec = BROWSER_AUDIO_SPEC

    def __init__(self, transport: CallTransport, stt: Transcriber):
        super().__init__(transport)
        self._stt = stt
        self._pending: Deque[np.ndarray] = self._new_accumulator()
        self._dropped_frames = 0
        self._transcribe_lock = asyncio.Lock()

    @staticmethod
    def _new_accumulator() -> Deque[np.ndarray]:
        return deque(maxlen=MAX_PENDING_FRAMES)

    @property
    def pending_frames(self) -> int:
        return len(self._pending)

    async def start(self) -> None:
        await self._play_tone(START_TONE_HZ)

    async def push_audio(self, frame: Frame) -> None:
        if isinstance(frame, (bytes, bytearray)):
            await self._send_bytes(bytes(frame))
            return
        await self._send_bytes(samples_to_float_bytes(frame))

    async def push_meta(self, text: str) -> None:
        await self._send_text(text)

    async def indicate_ready(self) -> None:
        await self.push_meta(READY_BANNER)
        await self.push_meta(SERVER_START_LISTENING)

    async def handle_bytes(self, data: bytes) -> None:
        """One binary message is one float32 microphone frame."""
        if self._closed:
            return
        samples = float_bytes_to_samples(data)
        if not samples.size:
            return
        if len(self._pending) == self._pending.maxlen:
            self._dropped_frames += 1
            if self._dropped_frames == 1:
                logger.warning(
                    "Utterance too long, dropping oldest frames",
                    max_frames=self._pending.maxlen,
                )
        self._pending.append(samples)

    async def handle_text(self, message: str) -> None:
        if message == CLIENT_END_OF_SPEECH:
            self._end_of_speech()
            return

        if message == CLIENT_INTERRUPT:
            logger.info("Client reported interrupt")
            self._emit_interrupt()
            return

        logger.warning("Unknown browser message", message=message[:50])

    def _end_of_speech(self) -> None:
        if not self._pending:
            logger.warning("Got EOS but no audio")
            return

        # Frames arriving from here on belong to the next utterance.
        frames, self._pending = list(self._pending), self._new_accumulator()
        if self._dropped_frames:
            logger.warning("Utterance truncated", dropped_frames=self._dropped_frames)
            self._dropped_frames = 0
        self._spawn(self._transcribe_utterance(frames))

    async def _transcribe_utterance(self, frames: List[np.ndarray]) -> None:
        async with self._transcribe_lock:
            if self._closed:
                return
            try:
                text = await self._stt.transcribe(frames)
            except TranscriptionError as e:
                logger.error("Transcription failed, utterance dropped", error=str(e), frames=len(frames))
                return

        try:
            await self.push_meta(SERVER_REQUEST_CLEAR_BUFFER)
        except CallClosedError:
            return

        text = (text or "").strip()
        if not text:
            logger.warning("Empty transcription, utterance dropped", frames=len(frames))
            return

        logger.info("User utterance", text=text[:80])
        self._emit_user_message(text)

    async def _play_tone(self, frequency: float) -> None:
        tone = synthesize_tone(frequency, TONE_DURATION_S, self.audio_spec.sample_rate)
        for frame in iter_frames(tone, self.audio_spec.frame_length):
            await self.push_audio(frame)

    async def _before_close(self) -> None:
        await self._play_tone(END_TONE_HZ)

    async def _release(self) -> None:
        self._pending.clear()
        try:
            await self._stt.close()
        except Exception as e:
            logger.warning("Error closing transcriber", error=str(e))
