"""
Speech-to-Text clients.

Two shapes of transcription are used by the call transports:
- Batch: the browser call hands over one finished utterance (float frames) and
  waits for its text. Backed by OpenAI Whisper, Deepgram prerecorded, or a
  Deepgram live socket used one utterance at a time.
- Live: the telephony call streams mu-law 8kHz continuously into a Deepgram
  live socket and reacts to transcript / SpeechStarted / UtteranceEnd events.
"""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, Sequence
from urllib.parse import urlencode

import numpy as np
import structlog
import websockets

from src.voicecall.audio import BROWSER_SAMPLE_RATE, float_to_wav, to_pcm16
from src.voicecall.config import ConfigError
from src.voicecall.providers import Providers

logger = structlog.get_logger(__name__)

DEEPGRAM_LISTEN_URL = "https://api.deepgram.com/v1/listen"
DEEPGRAM_LIVE_URL = "wss://api.deepgram.com/v1/listen"

STT_MODELS = [
    "openai/whisper-1",
    "deepgram/nova-2",
    "deepgram/whisper",
    "deepgram:live/nova-2",
]

KEEPALIVE_MESSAGE = json.dumps({"type": "KeepAlive"})
CLOSE_STREAM_MESSAGE = json.dumps({"type": "CloseStream"})


class TranscriptionError(Exception):
    """Raised when a transcription request fails."""
    pass


@dataclass
class TranscriptionResult:
    """Result from live STT."""
    text: str
    is_final: bool
    speech_final: bool = False
    confidence: float = 0.0
    timestamp: float = field(default_factory=time.time)


def parse_model_id(model_id: str) -> tuple[str, str]:
    """Split a "provider/model" identifier."""
    provider, _, model = model_id.partition("/")
    return provider, model


def _join_alternatives(alternatives: list) -> str:
    return "".join(alt.get("transcript", "") for alt in alternatives)


class DeepgramLiveTranscriber:
    """
    Deepgram live STT client using a raw WebSocket.

    Audio is sent as it arrives; results come back through the callbacks.
    A keep-alive message is sent periodically so silent stretches don't close
    the socket.
    """

    def __init__(
        self,
        api_key: str,
        *,
        model: str = "nova-2",
        encoding: str = "mulaw",
        sample_rate: int = 8000,
        on_transcript: Optional[Callable[[TranscriptionResult], Awaitable[None]]] = None,
        on_speech_started: Optional[Callable[[], Awaitable[None]]] = None,
        on_utterance_end: Optional[Callable[[], Awaitable[None]]] = None,
        keepalive_interval_s: float = 5.0,
    ):
        if not api_key:
            raise ConfigError("DEEPGRAM_API_KEY is required to use deepgram for SpeechToText")

        self._api_key = api_key
        self.model = model
        self.encoding = encoding
        self.sample_rate = sample_rate
        self._on_transcript = on_transcript
        self._on_speech_started = on_speech_started
        self._on_utterance_end = on_utterance_end
        self._keepalive_interval_s = keepalive_interval_s
        self._ws = None
        self._is_connected = False
        self._receive_task: Optional[asyncio.Task] = None
        self._keepalive_task: Optional[asyncio.Task] = None

    @property
    def is_connected(self) -> bool:
        return self._is_connected

    @property
    def url(self) -> str:
        params = {
            "model": self.model,
            "encoding": self.encoding,
            "sample_rate": self.sample_rate,
            "channels": 1,
            "smart_format": "false",
            "interim_results": "true",
            "numerals": "true",
            "endpointing": 200,
            "vad_events": "true",
            "utterance_end_ms": 1000,
        }
        return f"{DEEPGRAM_LIVE_URL}?{urlencode(params)}"

    async def connect(self) -> bool:
        """Open the live socket. Returns False (logged) on failure."""
        if self._is_connected:
            return True

        try:
            self._ws = await websockets.connect(
                self.url,
                additional_headers={"Authorization": f"Token {self._api_key}"},
                open_timeout=10,
            )
        except Exception as e:
            logger.error(
                "Deepgram live connection failed",
                error_type=type(e).__name__,
                error=str(e),
            )
            self._ws = None
            return False

        self._is_connected = True
        self._receive_task = asyncio.create_task(self._receive_loop())
        self._keepalive_task = asyncio.create_task(self._keepalive_loop())
        logger.info("Deepgram live connection opened", model=self.model, encoding=self.encoding)
        return True

    async def send_audio(self, audio_bytes: bytes) -> None:
        """Send audio data to Deepgram."""
        if not self._is_connected or not self._ws:
            return

        try:
            await self._ws.send(audio_bytes)
        except Exception as e:
            logger.error("Failed to send audio to Deepgram", error=str(e))

    async def finish(self) -> None:
        """Flush and close the live socket; cancels the background tasks."""
        was_connected = self._is_connected
        self._is_connected = False

        if self._keepalive_task:
            self._keepalive_task.cancel()

        if self._ws and was_connected:
            try:
                await self._ws.send(CLOSE_STREAM_MESSAGE)
            except Exception as e:
                logger.debug("CloseStream not delivered", error=str(e))

        if self._receive_task:
            self._receive_task.cancel()

        for task in (self._keepalive_task, self._receive_task):
            if task is None:
                continue
            try:
                await task
            except asyncio.CancelledError:
                pass

        if self._ws:
            try:
                await self._ws.close()
            except Exception as e:
                logger.warning("Error closing Deepgram connection", error=str(e))

        self._ws = None
        self._receive_task = None
        self._keepalive_task = None
        if was_connected:
            logger.info("Deepgram live connection closed")

    async def _keepalive_loop(self) -> None:
        try:
            while self._is_connected and self._ws:
                await asyncio.sleep(self._keepalive_interval_s)
                if not self._is_connected or not self._ws:
                    break
                await self._ws.send(KEEPALIVE_MESSAGE)
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.warning("Deepgram keep-alive stopped", error=str(e))

    async def _receive_loop(self) -> None:
        """Receive and process messages from Deepgram."""
        try:
            async for message in self._ws:
                if not self._is_connected:
                    break

                try:
                    data = json.loads(message)
                    await self.handle_message(data)
                except json.JSONDecodeError:
                    logger.warning("Invalid JSON from Deepgram")
                except Exception as e:
                    logger.error("Error processing Deepgram message", error=str(e))

        except websockets.exceptions.ConnectionClosed:
            logger.info("Deepgram connection closed")
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error("Deepgram receive loop error", error=str(e))
        finally:
            self._is_connected = False

    async def handle_message(self, data: dict) -> None:
        """Dispatch one decoded Deepgram message to the callbacks."""
        msg_type = data.get("type", "")

        if msg_type == "Results":
            alternatives = data.get("channel", {}).get("alternatives", [])
            if not alternatives:
                return

            result = TranscriptionResult(
                text=_join_alternatives(alternatives),
                is_final=bool(data.get("is_final", False)),
                speech_final=bool(data.get("speech_final", False)),
                confidence=alternatives[0].get("confidence", 0.0),
            )
            logger.debug(
                "STT transcript",
                text=result.text[:50],
                is_final=result.is_final,
                speech_final=result.speech_final,
            )
            if self._on_transcript:
                await self._on_transcript(result)

        elif msg_type == "SpeechStarted":
            logger.debug("STT speech started")
            if self._on_speech_started:
                await self._on_speech_started()

        elif msg_type == "UtteranceEnd":
            logger.debug("Utterance end detected")
            if self._on_utterance_end:
                await self._on_utterance_end()

        elif msg_type == "Error":
            logger.error(
                "Deepgram error",
                error=data.get("description") or data.get("message", "Unknown"),
                details=data,
            )


class SpeechToText:
    """
    Batch transcription of one utterance at a time.

    Input is the browser call's accumulated float frames (24kHz mono).
    """

    def __init__(
        self,
        model_id: Optional[str],
        providers: Providers,
        *,
        live_wait_s: float = 1.0,
    ):
        model_id = model_id or "openai/whisper-1"
        if model_id not in STT_MODELS:
            raise ConfigError(f"Unsupported STT model: {model_id}")

        self.model_id = model_id
        self.provider, self.model = parse_model_id(model_id)
        self._providers = providers
        self._live_wait_s = live_wait_s
        self._live: Optional[DeepgramLiveTranscriber] = None
        self._live_results: asyncio.Queue[TranscriptionResult] = asyncio.Queue()

        config = providers.config
        if self.provider == "openai":
            if not config.openai_api_key or providers.openai is None:
                raise ConfigError("OPENAI_API_KEY is required to use openai for SpeechToText")
        elif self.provider.startswith("deepgram"):
            if not config.deepgram_api_key:
                raise ConfigError("DEEPGRAM_API_KEY is required to use deepgram for SpeechToText")
            if self.provider == "deepgram:live":
                self._live = DeepgramLiveTranscriber(
                    config.deepgram_api_key,
                    model=self.model,
                    encoding="linear16",
                    sample_rate=BROWSER_SAMPLE_RATE,
                    on_transcript=self._live_results.put,
                    keepalive_interval_s=config.keepalive_interval_s,
                )

    async def transcribe(self, frames: Sequence[np.ndarray]) -> str:
        """
        Transcribe one utterance.

        Args:
            frames: Float32 frames in arrival order

        Returns:
            The transcribed text

        Raises:
            TranscriptionError: If the provider call fails
        """
        if not frames:
            return ""
        samples = np.concatenate([np.asarray(f, dtype=np.float32) for f in frames])

        start = time.time()
        try:
            if self.provider == "openai":
                text = await self._transcribe_openai(samples)
            elif self.provider == "deepgram":
                text = await self._transcribe_deepgram(samples)
            else:
                text = await self._transcribe_live(samples)
        except TranscriptionError:
            raise
        except Exception as e:
            raise TranscriptionError(f"{self.model_id} transcription failed: {e}") from e

        logger.info(
            "Utterance transcribed",
            model=self.model_id,
            samples=len(samples),
            latency_ms=round((time.time() - start) * 1000, 2),
        )
        return text

    async def close(self) -> None:
        if self._live is not None:
            await self._live.finish()

    async def _transcribe_openai(self, samples: np.ndarray) -> str:
        wav = float_to_wav(samples, BROWSER_SAMPLE_RATE)
        transcription = await self._providers.openai.audio.transcriptions.create(
            model=self.model,
            file=("audio.wav", wav, "audio/wav"),
        )
        return transcription.text

    async def _transcribe_deepgram(self, samples: np.ndarray) -> str:
        wav = float_to_wav(samples, BROWSER_SAMPLE_RATE)
        response = await self._providers.http.post(
            DEEPGRAM_LISTEN_URL,
            params={"model": self.model, "smart_format": "false"},
            headers={
                "Authorization": f"Token {self._providers.config.deepgram_api_key}",
                "Content-Type": "audio/wav",
            },
            content=wav,
        )
        if response.status_code != 200:
            raise TranscriptionError(
                f"Deepgram returned status {response.status_code}: {response.text[:200]}"
            )
        channels = response.json().get("results", {}).get("channels", [])
        if not channels:
            return ""
        return _join_alternatives(channels[0].get("alternatives", []))

    async def _transcribe_live(self, samples: np.ndarray) -> str:
        live = self._live
        if not await live.connect():
            raise TranscriptionError("Deepgram live connection not open")

        # Drop anything left over from a previous utterance.
        while not self._live_results.empty():
            self._live_results.get_nowait()

        await live.send_audio(to_pcm16(samples).astype("<i2").tobytes())

        collected: list[str] = []
        pending = ""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._live_wait_s
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            try:
                result = await asyncio.wait_for(self._live_results.get(), timeout=remaining)
            except asyncio.TimeoutError:
                break
            if result.is_final:
                if result.text:
                    collected.append(result.text)
                pending = ""
            else:
                pending = result.text
            if result.speech_final:
                break

        if pending:
            collected.append(pending)
        return " ".join(collected)
