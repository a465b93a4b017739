from __future__ import annotations

from typing import AsyncIterator

import httpx
import structlog

from src.voicecall.tts_providers.base import TTSProvider
from src.voicecall.tts_types import TTSAudioFormat, TTSError

logger = structlog.get_logger(__name__)

DEEPGRAM_SPEAK_URL = "https://api.deepgram.com/v1/speak"


class DeepgramTTS(TTSProvider):
    """
    Deepgram Aura TTS.

    Deepgram names voices `{model}-{voice}` (e.g. `aura-asteria-en`); callers
    configure the model (`aura`) and voice (`asteria-en`) separately.
    """

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
        params = {
            "model": f"{self.model}-{voice}",
            "encoding": "linear16" if fmt is TTSAudioFormat.PCM_24K else "mulaw",
            "sample_rate": fmt.sample_rate,
            "container": "none",
        }
        async with self._http.stream(
            "POST",
            DEEPGRAM_SPEAK_URL,
            params=params,
            headers={"Authorization": f"Token {self._api_key}"},
            json={"text": text},
        ) as response:
            if response.status_code != 200:
                detail = (await response.aread())[:200]
                logger.error(
                    "Failed to generate audio",
                    status_code=response.status_code,
                    detail=detail.decode("utf-8", errors="replace"),
                )
                raise TTSError(f"Deepgram returned status {response.status_code}")

            async for chunk in response.aiter_bytes():
                if chunk:
                    yield chunk
