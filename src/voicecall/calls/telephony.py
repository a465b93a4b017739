"""
Telephony call over Twilio Media Streams.

Inbound mu-law 8kHz media is streamed straight into a Deepgram live
transcriber. Utterance boundaries come from Deepgram's UtteranceEnd events;
barge-in is inferred from SpeechStarted while the assistant is (estimated to
be) speaking.

The "assistant speaking" flag is a best-effort estimate computed from the
byte length of outbound audio at 8000 bytes per second. It is not a playback
acknowledgment from Twilio.
"""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Any, Deque, List, Optional

import structlog

from src.voicecall.audio import TWILIO_SAMPLE_RATE, Frame, get_audio_duration_ms
from src.voicecall.calls.base import TELEPHONY_AUDIO_SPEC, Call, CallClosedError, CallTransport
from src.voicecall.providers import Providers
from src.voicecall.stt import DeepgramLiveTranscriber, TranscriptionResult
from src.voicecall.twilio_protocol import (
    TwilioEventType,
    TwilioStream,
    parse_twilio_message,
)

logger = structlog.get_logger(__name__)

# 10 seconds of 20ms Twilio media chunks held while the live socket opens.
MAX_PENDING_MEDIA_CHUNKS = 500


class TelephonyCall(Call):
    """Call bound to one Twilio Media Stream WebSocket."""

    audio_spec = TELEPHONY_AUDIO_SPEC

    def __init__(
        self,
        transport: CallTransport,
        providers: Providers,
        *,
        transcriber: Optional[Any] = None,
        barge_in_delay_ms: Optional[int] = None,
    ):
        super().__init__(transport)
        config = providers.config
        self._twilio = providers.twilio
        self._barge_in_delay_s = (
            barge_in_delay_ms if barge_in_delay_ms is not None else config.barge_in_delay_ms
        ) / 1000.0

        self._transcriber = transcriber or DeepgramLiveTranscriber(
            config.deepgram_api_key,
            model=config.telephony_stt_model,
            encoding="mulaw",
            sample_rate=TWILIO_SAMPLE_RATE,
            on_transcript=self.handle_transcript,
            on_speech_started=self.handle_speech_started,
            on_utterance_end=self.handle_utterance_end,
            keepalive_interval_s=config.keepalive_interval_s,
        )

        self.stream = TwilioStream()
        self._pending_media: Deque[bytes] = deque(maxlen=MAX_PENDING_MEDIA_CHUNKS)
        self._fragments: List[str] = []
        self._remote_stopped = False

        self._assistant_speaking = False
        self._speaking_until = 0.0
        self._speaking_handle: Optional[asyncio.TimerHandle] = None
        self._barge_in_task: Optional[asyncio.Task] = None

    @property
    def assistant_speaking(self) -> bool:
        return self._assistant_speaking

    async def start(self) -> None:
        if not await self._transcriber.connect():
            logger.error("Live transcription unavailable, ending call")
            await self.end()

    # ---- outbound -------------------------------------------------------

    async def push_audio(self, frame: Frame) -> None:
        payload = bytes(frame)
        message = self.stream.media(payload)
        if message is None:
            if self._closed:
                raise CallClosedError("Call is closed")
            logger.warning("Dropping outbound audio, stream not started", bytes=len(payload))
            return

        await self._send_text(message)
        self._extend_speaking(payload)

    async def push_meta(self, text: str) -> None:
        if self._closed:
            raise CallClosedError("Call is closed")
        logger.debug("Meta line (not sent to phone)", text=text[:80])

    async def indicate_ready(self) -> None:
        if self._closed:
            raise CallClosedError("Call is closed")
        logger.debug("Telephony call ready", stream_sid=self.stream.stream_sid)

    # ---- inbound Twilio frames -----------------------------------------

    async def handle_message(self, raw: str) -> None:
        try:
            event_type, event = parse_twilio_message(raw)
        except ValueError as e:
            logger.warning("Invalid Twilio message", error=str(e))
            return

        if event_type == TwilioEventType.MEDIA:
            if event.payload:
                self._pending_media.append(event.payload)
                await self._flush_media()

        elif event_type == TwilioEventType.START:
            self.stream.bind(event)
            logger.info(
                "Twilio stream started",
                stream_sid=event.stream_sid,
                call_sid=event.call_sid,
                tracks=event.tracks,
            )

        elif event_type == TwilioEventType.CONNECTED:
            logger.info("Twilio connected", protocol=event.get("protocol"))

        elif event_type == TwilioEventType.MARK:
            self.stream.marks_received += 1
            logger.debug("Twilio mark received", name=event.name)

        elif event_type == TwilioEventType.DTMF:
            logger.info("DTMF received", digit=event.digit)

        elif event_type == TwilioEventType.STOP:
            logger.info("Twilio stream stopped", stream_sid=self.stream.stream_sid)
            self.stream.is_active = False
            self._remote_stopped = True
            await self.end()

    async def _flush_media(self) -> None:
        if not self._pending_media or not self._transcriber.is_connected:
            return
        combined = b"".join(self._pending_media)
        self._pending_media.clear()
        await self._transcriber.send_audio(combined)

    # ---- live transcriber callbacks ------------------------------------

    async def handle_transcript(self, result: TranscriptionResult) -> None:
        if not result.is_final:
            return
        if result.speech_final:
            logger.debug("Speech final", text=result.text[:80])
        if result.text:
            self._fragments.append(result.text)

    async def handle_utterance_end(self) -> None:
        joined = " ".join(self._fragments)
        self._fragments = []
        if not joined.strip():
            logger.warning("Utterance end with no transcript")
            return

        logger.info("User utterance", text=joined[:80])
        self._emit_user_message(joined)

    async def handle_speech_started(self) -> None:
        self._cancel_barge_in()
        if self._assistant_speaking and not self._closed:
            self._barge_in_task = asyncio.create_task(self._barge_in_after_delay())

    async def _barge_in_after_delay(self) -> None:
        try:
            await asyncio.sleep(self._barge_in_delay_s)
            if not self._assistant_speaking or self._closed:
                return

            logger.info("Interruption detected", stream_sid=self.stream.stream_sid)
            self._emit_interrupt()
            await self._clear_client_audio()
            self._done_speaking()
        except asyncio.CancelledError:
            return

    async def _clear_client_audio(self) -> None:
        message = self.stream.clear()
        if message is None:
            return
        try:
            await self._send_text(message)
        except CallClosedError:
            logger.debug("Clear not delivered, call closed")

    # ---- speaking estimate ---------------------------------------------

    def _extend_speaking(self, payload: bytes) -> None:
        loop = asyncio.get_running_loop()
        now = loop.time()
        duration_s = get_audio_duration_ms(payload) / 1000.0
        self._speaking_until = max(now, self._speaking_until) + duration_s
        self._assistant_speaking = True

        if self._speaking_handle is not None:
            self._speaking_handle.cancel()
        self._speaking_handle = loop.call_later(self._speaking_until - now, self._done_speaking)

    def _done_speaking(self) -> None:
        self._assistant_speaking = False
        self._speaking_until = 0.0
        if self._speaking_handle is not None:
            self._speaking_handle.cancel()
            self._speaking_handle = None

    def _cancel_barge_in(self) -> None:
        task = self._barge_in_task
        self._barge_in_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    # ---- teardown -------------------------------------------------------

    async def _before_close(self) -> None:
        if self._remote_stopped or self._twilio is None or not self.stream.call_sid:
            return

        call_sid = self.stream.call_sid
        try:
            await asyncio.to_thread(
                lambda: self._twilio.calls(call_sid).update(status="completed")
            )
            logger.info("Call hung up", call_sid=call_sid)
        except Exception as e:
            logger.error("Failed to hang up call", call_sid=call_sid, error=str(e))

    async def _release(self) -> None:
        self._cancel_barge_in()
        self._done_speaking()
        self._pending_media.clear()
        self._fragments = []
        try:
            await self._transcriber.finish()
        except Exception as e:
            logger.warning("Error closing live transcriber", error=str(e))
