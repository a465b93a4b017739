from __future__ import annotations

import time
from typing import AsyncIterator

import structlog

from src.voicecall.config import ConfigError
from src.voicecall.providers import Providers
from src.voicecall.stt import parse_model_id
from src.voicecall.tts_providers.base import TTSProvider
from src.voicecall.tts_providers.deepgram import DeepgramTTS
from src.voicecall.tts_providers.elevenlabs import ElevenLabsTTS
from src.voicecall.tts_providers.openai_tts import OpenAITTS
from src.voicecall.tts_providers.playht import PlayHTTTS
from src.voicecall.tts_types import TTSAudioFormat, TTSError

logger = structlog.get_logger(__name__)

TTS_MODELS = [
    "elevenlabs/eleven_monolingual_v1",
    "elevenlabs/eleven_turbo_v2",
    "elevenlabs/eleven_multilingual_v2",
    "openai/tts-1",
    "openai/tts-1-hd",
    "playht/PlayHT2.0-turbo",
    "playht/PlayHT2.0",
    "playht/PlayHT1.0",
    "deepgram/aura",
]


class TextToSpeech:
    """
    Speech synthesis for one model/voice/format combination.

    - `openai/*`: OpenAI Audio Speech API (pcm_24000 only)
    - `elevenlabs/*`: ElevenLabs streaming endpoint
    - `playht/*`: PlayHT v2 streaming endpoint, model is the voice engine
    - `deepgram/aura`: Deepgram Aura, voice given separately (e.g. `asteria-en`)

    Audio comes back as raw bytes in `fmt`; no container, no header.
    """

    def __init__(
        self,
        model_id: str,
        voice: str,
        providers: Providers,
        fmt: TTSAudioFormat = TTSAudioFormat.PCM_24K,
    ):
        if model_id not in TTS_MODELS:
            raise ConfigError(f"Unsupported TTS model: {model_id}")

        self.model_id = model_id
        self.provider_name, self.model = parse_model_id(model_id)
        self.voice = voice
        self.format = TTSAudioFormat(fmt)
        self._provider = self._build_provider(providers)

        if self.format not in self._provider.supported_formats:
            raise ConfigError(
                f"{model_id} cannot produce {self.format.value} audio"
            )

    def _build_provider(self, providers: Providers) -> TTSProvider:
        config = providers.config

        if self.provider_name == "openai":
            if not config.openai_api_key or providers.openai is None:
                raise ConfigError("OPENAI_API_KEY is required to use openai for TextToSpeech")
            return OpenAITTS(providers.openai, self.model)

        if self.provider_name == "elevenlabs":
            if not config.elevenlabs_api_key:
                raise ConfigError(
                    "ELEVEN_LABS_API_KEY is required to use elevenlabs for TextToSpeech"
                )
            return ElevenLabsTTS(providers.http, config.elevenlabs_api_key, self.model)

        if self.provider_name == "playht":
            if not config.playht_user_id or not config.playht_api_key:
                raise ConfigError(
                    "PLAYHT_USER_ID and PLAYHT_API_KEY are required to use playht for TextToSpeech"
                )
            return PlayHTTTS(providers.http, config.playht_user_id, config.playht_api_key, self.model)

        if not config.deepgram_api_key:
            raise ConfigError("DEEPGRAM_API_KEY is required to use deepgram for TextToSpeech")
        return DeepgramTTS(providers.http, config.deepgram_api_key, self.model)

    async def stream(self, text: str) -> AsyncIterator[bytes]:
        """
        Stream synthesized audio for `text` as it arrives from the provider.

        Raises:
            TTSError: If the provider fails before or during the body
        """
        start = time.time()
        first_chunk_ms = None
        total = 0
        try:
            async for chunk in self._provider.stream(text, voice=self.voice, fmt=self.format):
                if first_chunk_ms is None:
                    first_chunk_ms = round((time.time() - start) * 1000, 2)
                total += len(chunk)
                yield chunk
        except TTSError:
            raise
        except Exception as e:
            raise TTSError(f"{self.model_id} synthesis failed: {e}") from e

        logger.info(
            "TTS synthesis complete",
            model=self.model_id,
            voice=self.voice,
            format=self.format.value,
            bytes=total,
            first_chunk_ms=first_chunk_ms,
            total_ms=round((time.time() - start) * 1000, 2),
        )

    async def synthesize(self, text: str) -> bytes:
        """Synthesize `text` into a single buffer."""
        chunks = [chunk async for chunk in self.stream(text)]
        return b"".join(chunks)
