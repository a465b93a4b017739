from __future__ import annotations

from abc import ABC, abstractmethod
from typing import AsyncIterator

from src.voicecall.tts_types import TTSAudioFormat


class TTSProvider(ABC):
    """A speech provider that streams raw audio bytes in one fixed format."""

    supported_formats: tuple[TTSAudioFormat, ...] = (TTSAudioFormat.PCM_24K,)

    @abstractmethod
    def stream(
        self,
        text: str,
        *,
        voice: str,
        fmt: TTSAudioFormat,
    ) -> AsyncIterator[bytes]:
        raise NotImplementedError
