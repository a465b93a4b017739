"""
Tests for speech-to-text clients.
"""

import json
from unittest.mock import AsyncMock, MagicMock
from urllib.parse import parse_qs, urlparse

import numpy as np
import pytest

from src.voicecall.audio import WAV_HEADER_SIZE
from src.voicecall.config import Config, ConfigError
from src.voicecall.providers import Providers
from src.voicecall.stt import (
    KEEPALIVE_MESSAGE,
    DeepgramLiveTranscriber,
    SpeechToText,
    TranscriptionError,
    TranscriptionResult,
    parse_model_id,
)


def _frames(n=2, length=1024):
    return [np.full(length, 0.1, dtype=np.float32) for _ in range(n)]


class TestModelSelection:
    """Model id validation and credentials."""

    def test_parse_model_id(self):
        assert parse_model_id("deepgram:live/nova-2") == ("deepgram:live", "nova-2")

    def test_unsupported_model(self, providers):
        with pytest.raises(ConfigError, match="Unsupported STT model"):
            SpeechToText("acme/ears-1", providers)

    def test_default_model(self, providers):
        assert SpeechToText(None, providers).model_id == "openai/whisper-1"

    def test_openai_requires_key(self):
        providers = Providers(config=Config(openai_api_key=""), openai=None, http=MagicMock())
        with pytest.raises(ConfigError, match="OPENAI_API_KEY"):
            SpeechToText("openai/whisper-1", providers)

    def test_deepgram_requires_key(self):
        providers = Providers(config=Config(deepgram_api_key=""), http=MagicMock())
        with pytest.raises(ConfigError, match="DEEPGRAM_API_KEY"):
            SpeechToText("deepgram/nova-2", providers)


class TestBatchTranscription:
    """One utterance per request."""

    @pytest.mark.asyncio
    async def test_openai_whisper(self, providers):
        providers.openai.audio.transcriptions.create = AsyncMock(
            return_value=MagicMock(text="hello world")
        )
        stt = SpeechToText("openai/whisper-1", providers)

        text = await stt.transcribe(_frames())

        assert text == "hello world"
        kwargs = providers.openai.audio.transcriptions.create.await_args.kwargs
        assert kwargs["model"] == "whisper-1"
        name, wav, mime = kwargs["file"]
        assert name == "audio.wav"
        assert wav[:4] == b"RIFF"
        assert len(wav) == WAV_HEADER_SIZE + 2048 * 2

    @pytest.mark.asyncio
    async def test_deepgram_prerecorded(self, providers):
        response = MagicMock(status_code=200)
        response.json.return_value = {
            "results": {"channels": [{"alternatives": [{"transcript": "good morning"}]}]}
        }
        providers.http.post = AsyncMock(return_value=response)
        stt = SpeechToText("deepgram/nova-2", providers)

        text = await stt.transcribe(_frames())

        assert text == "good morning"
        kwargs = providers.http.post.await_args.kwargs
        assert kwargs["params"]["model"] == "nova-2"
        assert kwargs["headers"]["Authorization"] == "Token test_deepgram_key"

    @pytest.mark.asyncio
    async def test_deepgram_error_status(self, providers):
        providers.http.post = AsyncMock(return_value=MagicMock(status_code=401, text="unauthorized"))
        stt = SpeechToText("deepgram/whisper", providers)

        with pytest.raises(TranscriptionError, match="401"):
            await stt.transcribe(_frames())

    @pytest.mark.asyncio
    async def test_provider_exception_wrapped(self, providers):
        providers.openai.audio.transcriptions.create = AsyncMock(side_effect=RuntimeError("timeout"))
        stt = SpeechToText("openai/whisper-1", providers)

        with pytest.raises(TranscriptionError) as exc_info:
            await stt.transcribe(_frames())

        assert isinstance(exc_info.value.__cause__, RuntimeError)

    @pytest.mark.asyncio
    async def test_no_frames(self, providers):
        stt = SpeechToText("openai/whisper-1", providers)
        assert await stt.transcribe([]) == ""

    @pytest.mark.asyncio
    async def test_live_variant_collects_finals(self, providers):
        stt = SpeechToText("deepgram:live/nova-2", providers, live_wait_s=0.5)
        live = stt._live

        async def connect():
            return True

        async def send_audio(data):
            await live.handle_message(_results("book a", is_final=True))
            await live.handle_message(_results("table", is_final=True, speech_final=True))

        live.connect = connect
        live.send_audio = send_audio

        assert await stt.transcribe(_frames()) == "book a table"

    @pytest.mark.asyncio
    async def test_live_variant_connection_failure(self, providers):
        stt = SpeechToText("deepgram:live/nova-2", providers)
        stt._live.connect = AsyncMock(return_value=False)

        with pytest.raises(TranscriptionError, match="not open"):
            await stt.transcribe(_frames())


def _results(text, is_final=False, speech_final=False):
    return {
        "type": "Results",
        "is_final": is_final,
        "speech_final": speech_final,
        "channel": {"alternatives": [{"transcript": text, "confidence": 0.9}]},
    }


class TestDeepgramLiveTranscriber:
    """Live socket message handling."""

    def test_requires_api_key(self):
        with pytest.raises(ConfigError):
            DeepgramLiveTranscriber("")

    def test_url_params(self):
        transcriber = DeepgramLiveTranscriber("key", model="nova-2", encoding="mulaw", sample_rate=8000)
        query = parse_qs(urlparse(transcriber.url).query)

        assert query["model"] == ["nova-2"]
        assert query["encoding"] == ["mulaw"]
        assert query["sample_rate"] == ["8000"]
        assert query["interim_results"] == ["true"]
        assert query["vad_events"] == ["true"]
        assert query["utterance_end_ms"] == ["1000"]
        assert query["endpointing"] == ["200"]

    @pytest.mark.asyncio
    async def test_dispatches_events(self):
        on_transcript = AsyncMock()
        on_speech_started = AsyncMock()
        on_utterance_end = AsyncMock()
        transcriber = DeepgramLiveTranscriber(
            "key",
            on_transcript=on_transcript,
            on_speech_started=on_speech_started,
            on_utterance_end=on_utterance_end,
        )

        await transcriber.handle_message(_results("hi", is_final=True))
        await transcriber.handle_message({"type": "SpeechStarted"})
        await transcriber.handle_message({"type": "UtteranceEnd"})
        await transcriber.handle_message({"type": "Error", "description": "bad"})

        result = on_transcript.await_args.args[0]
        assert isinstance(result, TranscriptionResult)
        assert result.text == "hi"
        assert result.is_final is True
        on_speech_started.assert_awaited_once()
        on_utterance_end.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_results_without_alternatives_ignored(self):
        on_transcript = AsyncMock()
        transcriber = DeepgramLiveTranscriber("key", on_transcript=on_transcript)

        await transcriber.handle_message({"type": "Results", "channel": {"alternatives": []}})

        on_transcript.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_send_audio_when_disconnected_is_noop(self):
        transcriber = DeepgramLiveTranscriber("key")
        transcriber._ws = AsyncMock()

        await transcriber.send_audio(b"\xff" * 160)

        transcriber._ws.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_finish_sends_close_stream(self):
        transcriber = DeepgramLiveTranscriber("key")
        ws = AsyncMock()
        transcriber._ws = ws
        transcriber._is_connected = True

        await transcriber.finish()

        sent = ws.send.await_args.args[0]
        assert json.loads(sent) == {"type": "CloseStream"}
        ws.close.assert_awaited_once()
        assert not transcriber.is_connected

    def test_keepalive_message(self):
        assert json.loads(KEEPALIVE_MESSAGE) == {"type": "KeepAlive"}
