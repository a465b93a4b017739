from __future__ import annotations

from typing import AsyncIterator

import structlog
from openai import AsyncOpenAI

from src.voicecall.tts_providers.base import TTSProvider
from src.voicecall.tts_types import TTSAudioFormat

logger = structlog.get_logger(__name__)


class OpenAITTS(TTSProvider):
    """
    OpenAI Audio Speech provider.

    Requests `pcm` (24kHz 16-bit mono) and streams the response body as it
    arrives. OpenAI has no mu-law output, so telephony needs another provider.
    """

    supported_formats = (TTSAudioFormat.PCM_24K,)

    def __init__(self, client: AsyncOpenAI, model: str):
        self._client = client
        self.model = model

    async def stream(
        self,
        text: str,
        *,
        voice: str,
        fmt: TTSAudioFormat,
    ) -> AsyncIterator[bytes]:
        async with self._client.audio.speech.with_streaming_response.create(
            model=self.model,
            voice=voice,
            input=text,
            response_format="pcm",
        ) as response:
            async for chunk in response.iter_bytes():
                if chunk:
                    yield chunk
