from __future__ import annotations

from typing import AsyncIterator

import httpx
import structlog

from src.voicecall.tts_providers.base import TTSProvider
from src.voicecall.tts_types import TTSAudioFormat, TTSError

logger = structlog.get_logger(__name__)

ELEVENLABS_TTS_URL = "https://api.elevenlabs.io/v1/text-to-speech"

_OUTPUT_FORMATS = {
    TTSAudioFormat.PCM_24K: "pcm_24000",
    TTSAudioFormat.MULAW_8K: "ulaw_8000",
}


class ElevenLabsTTS(TTSProvider):
    """ElevenLabs streaming TTS over HTTP (`/stream` endpoint)."""

    supported_formats = (TTSAudioFormat.PCM_24K, TTSAudioFormat.MULAW_8K)

    def __init__(self, http: httpx.AsyncClient, api_key: str, model: str):
        self._http = http
        self._api_key = api_key
        self.model = model

    async def stream(
        self,
        text: str,
        *,
        voice: str,
        fmt: TTSAudioFormat,
    ) -> AsyncIterator[bytes]:
        body = {
            "text": text,
            "model_id": self.model,
            "voice_settings": {
                "stability": 0.5,
                "similarity_boost": 0.8,
                "style": 0,
            },
        }
        async with self._http.stream(
            "POST",
            f"{ELEVENLABS_TTS_URL}/{voice}/stream",
            params={"output_format": _OUTPUT_FORMATS[fmt]},
            headers={"xi-api-key": self._api_key},
            json=body,
        ) as response:
            if response.status_code != 200:
                detail = (await response.aread())[:200]
                logger.error(
                    "Failed to generate audio",
                    status_code=response.status_code,
                    detail=detail.decode("utf-8", errors="replace"),
                )
                raise TTSError(f"ElevenLabs returned status {response.status_code}")

            async for chunk in response.aiter_bytes():
                if chunk:
                    yield chunk
