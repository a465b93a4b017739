from __future__ import annotations

from enum import Enum

from src.voicecall.audio import BROWSER_SAMPLE_RATE, SAMPLE_WIDTH, TWILIO_SAMPLE_RATE


class TTSAudioFormat(str, Enum):
    """
    Raw output formats requested from TTS providers.

    `pcm_24000` is 16-bit signed little-endian mono PCM at 24kHz (browser);
    `mulaw_8000` is Twilio-ready mu-law at 8kHz.
    """

    PCM_24K = "pcm_24000"
    MULAW_8K = "mulaw_8000"

    @property
    def sample_rate(self) -> int:
        return BROWSER_SAMPLE_RATE if self is TTSAudioFormat.PCM_24K else TWILIO_SAMPLE_RATE

    @property
    def sample_width(self) -> int:
        return SAMPLE_WIDTH if self is TTSAudioFormat.PCM_24K else 1


class TTSError(Exception):
    """Raised when a TTS provider fails to produce audio."""
    pass
