"""
Transport-agnostic call abstraction.

A Call moves audio and text between one remote party and the server. It
pushes frames/metadata out, and reports three things back to its attached
handler: a transcribed user utterance, an interrupt (barge-in), and the end of
the call.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Coroutine, Optional, Protocol, Set

import structlog

from src.voicecall.audio import (
    BROWSER_FRAME_LENGTH,
    BROWSER_SAMPLE_RATE,
    SAMPLE_WIDTH,
    TWILIO_FRAME_SIZE,
    TWILIO_SAMPLE_RATE,
    Frame,
)
from src.voicecall.tts_types import TTSAudioFormat

logger = structlog.get_logger(__name__)


class CallClosedError(Exception):
    """Raised when pushing to a call whose transport is closed."""
    pass


@dataclass(frozen=True)
class AudioSpec:
    """Outbound audio format a transport expects."""

    encoding: str  # "pcm_float" or "mulaw"
    sample_rate: int
    sample_width: int
    frame_length: int  # samples for pcm_float, bytes for mulaw

    @property
    def min_unit_bytes(self) -> int:
        """One second of provider audio."""
        return self.sample_rate * self.sample_width

    @property
    def tts_format(self) -> TTSAudioFormat:
        if self.encoding == "mulaw":
            return TTSAudioFormat.MULAW_8K
        return TTSAudioFormat.PCM_24K


BROWSER_AUDIO_SPEC = AudioSpec(
    encoding="pcm_float",
    sample_rate=BROWSER_SAMPLE_RATE,
    sample_width=SAMPLE_WIDTH,
    frame_length=BROWSER_FRAME_LENGTH,
)

TELEPHONY_AUDIO_SPEC = AudioSpec(
    encoding="mulaw",
    sample_rate=TWILIO_SAMPLE_RATE,
    sample_width=1,
    frame_length=TWILIO_FRAME_SIZE,
)


class CallTransport(Protocol):
    """The socket side of a call. A Starlette WebSocket satisfies this."""

    async def send_text(self, data: str) -> None: ...

    async def send_bytes(self, data: bytes) -> None: ...

    async def close(self, code: int = 1000) -> None: ...


class CallEventHandler(ABC):
    """Receiver for the events a Call emits."""

    @abstractmethod
    async def on_user_message(self, text: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def on_call_ended(self) -> None:
        raise NotImplementedError

    @abstractmethod
    async def on_interrupt(self) -> None:
        raise NotImplementedError


class Call(ABC):
    """
    Base class for call transports.

    `on_call_ended` is delivered exactly once and awaited. User messages and
    interrupts are dispatched as tracked tasks so the transport's receive loop
    is never blocked by a conversation turn.
    """

    audio_spec: AudioSpec = BROWSER_AUDIO_SPEC

    def __init__(self, transport: CallTransport):
        self._transport = transport
        self._handler: Optional[CallEventHandler] = None
        self._closed = False
        self._ended_emitted = False
        self._ending = False
        self._end_done = asyncio.Event()
        self._tasks: Set[asyncio.Task] = set()

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def handler(self) -> Optional[CallEventHandler]:
        return self._handler

    def attach(self, handler: CallEventHandler) -> None:
        if self._handler is not None and self._handler is not handler:
            raise ValueError("Call already has an event handler attached")
        self._handler = handler

    def detach(self) -> None:
        self._handler = None

    async def start(self) -> None:
        """Called once the transport is accepted."""
        return None

    @abstractmethod
    async def push_audio(self, frame: Frame) -> None:
        raise NotImplementedError

    @abstractmethod
    async def push_meta(self, text: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def indicate_ready(self) -> None:
        raise NotImplementedError

    async def end(self) -> None:
        """
        End the call from our side. Safe to call more than once.

        Concurrent callers wait for the first teardown to finish instead of
        running it again.
        """
        if self._ending:
            await self._end_done.wait()
            return
        if self._closed:
            return
        self._ending = True

        try:
            try:
                await self._before_close()
            except CallClosedError:
                logger.debug("Transport closed before farewell", call=type(self).__name__)

            self._closed = True
            await self._release()
            try:
                await self._transport.close()
            except Exception as e:
                logger.debug("Transport close failed", error=str(e))

            await self._emit_call_ended()
        finally:
            self._end_done.set()

    async def handle_transport_closed(self) -> None:
        """The remote side went away (or the receive loop stopped)."""
        if self._ending:
            await self._end_done.wait()
            return
        if not self._closed:
            self._closed = True
            await self._release()
        await self._emit_call_ended()

    async def drain(self) -> None:
        """Wait for in-flight event dispatches to settle."""
        current = asyncio.current_task()
        while True:
            pending = [t for t in self._tasks if t is not current and not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def _before_close(self) -> None:
        """Runs while the transport is still open, on `end()` only."""
        return None

    async def _release(self) -> None:
        """Free timers and provider connections."""
        return None

    async def _send_text(self, text: str) -> None:
        if self._closed:
            raise CallClosedError("Call is closed")
        try:
            await self._transport.send_text(text)
        except Exception as e:
            raise CallClosedError(f"send_text failed: {e}") from e

    async def _send_bytes(self, data: bytes) -> None:
        if self._closed:
            raise CallClosedError("Call is closed")
        try:
            await self._transport.send_bytes(data)
        except Exception as e:
            raise CallClosedError(f"send_bytes failed: {e}") from e

    def _emit_user_message(self, text: str) -> None:
        handler = self._handler
        if handler is None or self._closed:
            logger.debug("User message dropped, no listener", chars=len(text))
            return
        self._spawn(handler.on_user_message(text))

    def _emit_interrupt(self) -> None:
        handler = self._handler
        if handler is None or self._closed:
            return
        self._spawn(handler.on_interrupt())

    async def _emit_call_ended(self) -> None:
        if self._ended_emitted:
            return
        self._ended_emitted = True
        logger.info("Call ended", call=type(self).__name__)

        handler = self._handler
        if handler is None:
            return
        try:
            await handler.on_call_ended()
        except Exception as e:
            logger.error("Call-ended handler failed", error=str(e), error_type=type(e).__name__)

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Call event handler failed",
                error=str(exc),
                error_type=type(exc).__name__,
            )
