from __future__ import annotations

from typing import AsyncIterator

import httpx
import structlog

from src.voicecall.audio import WAV_HEADER_SIZE
from src.voicecall.tts_providers.base import TTSProvider
from src.voicecall.tts_types import TTSAudioFormat, TTSError

logger = structlog.get_logger(__name__)

PLAYHT_STREAM_URL = "https://api.play.ht/api/v2/tts/stream"


class PlayHTTTS(TTSProvider):
    """
    PlayHT streaming TTS.

    PCM is requested as WAV and the 44-byte header is stripped from the front
    of the stream. mu-law is streamed as is.
    """

    supported_formats = (TTSAudioFormat.PCM_24K, TTSAudioFormat.MULAW_8K)

    def __init__(self, http: httpx.AsyncClient, user_id: str, api_key: str, voice_engine: str):
        self._http = http
        self._user_id = user_id
        self._api_key = api_key
        self.voice_engine = voice_engine

    async def stream(
        self,
        text: str,
        *,
        voice: str,
        fmt: TTSAudioFormat,
    ) -> AsyncIterator[bytes]:
        is_pcm = fmt is TTSAudioFormat.PCM_24K
        body = {
            "text": text,
            "voice": voice,
            "voice_engine": self.voice_engine,
            "speed": 1,
            "output_format": "wav" if is_pcm else "mulaw",
            "sample_rate": fmt.sample_rate,
        }
        headers = {
            "AUTHORIZATION": self._api_key,
            "X-USER-ID": self._user_id,
            "accept": "audio/wav" if is_pcm else "audio/basic",
        }

        async with self._http.stream("POST", PLAYHT_STREAM_URL, headers=headers, json=body) as response:
            if response.status_code != 200:
                detail = (await response.aread())[:200]
                logger.error(
                    "Failed to generate audio",
                    status_code=response.status_code,
                    detail=detail.decode("utf-8", errors="replace"),
                )
                raise TTSError(f"PlayHT returned status {response.status_code}")

            header_left = WAV_HEADER_SIZE if is_pcm else 0
            async for chunk in response.aiter_bytes():
                if header_left:
                    skipped = min(header_left, len(chunk))
                    chunk = chunk[skipped:]
                    header_left -= skipped
                if chunk:
                    yield chunk
