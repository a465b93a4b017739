"""
Audio conversion utilities for the voice call transports.

Two wire formats are in play:
- Browser: normalized float32 samples, 24kHz mono, sent in 1024-sample frames.
- Twilio: mu-law 8kHz bytes, passed straight through to Deepgram and back
  (no conversion needed on the telephony path).

Speech providers speak 16-bit signed PCM, so the only conversions are
PCM16 <-> float32 and the WAV container required by batch transcription.
"""

import struct
from typing import Iterator, Sequence, Union

import numpy as np

BROWSER_SAMPLE_RATE = 24000
BROWSER_FRAME_LENGTH = 1024  # samples per float32 frame
SAMPLE_WIDTH = 2  # bytes per PCM16 sample
CHANNELS = 1

TWILIO_SAMPLE_RATE = 8000
FRAME_DURATION_MS = 20
TWILIO_FRAME_SIZE = int(TWILIO_SAMPLE_RATE * FRAME_DURATION_MS / 1000)  # 160 bytes for 20ms

WAV_HEADER_SIZE = 44

TONE_VOLUME = 0.07
TONE_DURATION_S = 0.5
START_TONE_HZ = 440
END_TONE_HZ = 180

PCM16_POSITIVE_SCALE = 32767
PCM16_NEGATIVE_SCALE = 32768

Frame = Union[np.ndarray, bytes]


def to_pcm16(samples: Union[np.ndarray, Sequence[float]]) -> np.ndarray:
    """
    Convert normalized float samples to 16-bit signed PCM.

    Samples are clamped to [-1, 1]. Negative values scale by 32768 and
    non-negative values by 32767, so both ends of the int16 range are reachable.

    Args:
        samples: Float samples (nominally in [-1, 1])

    Returns:
        int16 array of the same length
    """
    clipped = np.clip(np.asarray(samples, dtype=np.float64), -1.0, 1.0)
    scaled = np.where(
        clipped < 0,
        clipped * PCM16_NEGATIVE_SCALE,
        clipped * PCM16_POSITIVE_SCALE,
    )
    # Truncate toward zero like a typed-array store.
    return np.trunc(scaled).astype(np.int16)


def to_float(samples: Union[np.ndarray, Sequence[int]]) -> np.ndarray:
    """
    Convert 16-bit signed PCM to float32 samples.

    Divides by 32767; -32768 maps slightly below -1.0.
    """
    return (np.asarray(samples, dtype=np.float32) / PCM16_POSITIVE_SCALE).astype(np.float32)


def pcm16_bytes_to_float(pcm_bytes: bytes) -> np.ndarray:
    """
    Convert little-endian PCM16 bytes to float32 samples.

    A trailing odd byte is not a whole sample and is ignored.
    """
    if not pcm_bytes:
        return np.zeros(0, dtype=np.float32)
    usable = len(pcm_bytes) - (len(pcm_bytes) % SAMPLE_WIDTH)
    samples = np.frombuffer(pcm_bytes[:usable], dtype="<i2")
    return to_float(samples)


def float_bytes_to_samples(data: bytes) -> np.ndarray:
    """Decode a browser frame (little-endian float32 bytes) into samples."""
    usable = len(data) - (len(data) % 4)
    return np.frombuffer(data[:usable], dtype="<f4").astype(np.float32)


def samples_to_float_bytes(samples: np.ndarray) -> bytes:
    """Encode float samples as little-endian float32 bytes for the browser."""
    return np.asarray(samples, dtype="<f4").tobytes()


def build_wav_header(
    sample_rate: int,
    channels: int,
    bytes_per_sample: int,
    data_size: int,
) -> bytes:
    """
    Build the canonical 44-byte RIFF/WAVE header for raw PCM.

    Layout (little-endian unless noted):
        0-3   "RIFF"
        4-7   36 + data_size
        8-11  "WAVE"
        12-15 "fmt "
        16-19 16 (fmt chunk length)
        20-21 1 (PCM)
        22-23 channels
        24-27 sample rate
        28-31 byte rate
        32-33 block align
        34-35 bits per sample
        36-39 "data"
        40-43 data_size
    """
    block_align = channels * bytes_per_sample
    byte_rate = sample_rate * block_align
    return struct.pack(
        "<4sI4s4sIHHIIHH4sI",
        b"RIFF",
        36 + data_size,
        b"WAVE",
        b"fmt ",
        16,
        1,
        channels,
        sample_rate,
        byte_rate,
        block_align,
        bytes_per_sample * 8,
        b"data",
        data_size,
    )


def float_to_wav(samples: np.ndarray, sample_rate: int = BROWSER_SAMPLE_RATE) -> bytes:
    """Wrap float samples as a mono 16-bit PCM WAV byte string."""
    pcm = to_pcm16(samples).astype("<i2").tobytes()
    header = build_wav_header(sample_rate, CHANNELS, SAMPLE_WIDTH, len(pcm))
    return header + pcm


def synthesize_tone(frequency: float, duration_seconds: float, sample_rate: int) -> np.ndarray:
    """
    Generate a low-volume sine tone (call start/end cues).

    Pure function of its inputs.
    """
    num_samples = int(sample_rate * duration_seconds)
    t = np.arange(num_samples, dtype=np.float64) / sample_rate
    return (np.sin(2 * np.pi * frequency * t) * TONE_VOLUME).astype(np.float32)


def iter_frames(audio: Frame, frame_length: int) -> Iterator[Frame]:
    """
    Slice audio into fixed-length frames.

    Works on sample arrays and raw bytes alike. The last frame may be shorter;
    nothing is padded.

    Args:
        audio: Samples or bytes
        frame_length: Frame length in samples (arrays) or bytes

    Yields:
        Frames in order
    """
    if frame_length <= 0:
        raise ValueError("frame_length must be > 0")
    for i in range(0, len(audio), frame_length):
        yield audio[i:i + frame_length]


def get_audio_duration_ms(
    audio_bytes: bytes,
    sample_rate: int = TWILIO_SAMPLE_RATE,
    sample_width: int = 1,
) -> float:
    """
    Calculate the duration of audio in milliseconds.

    Args:
        audio_bytes: Audio bytes
        sample_rate: Sample rate in Hz
        sample_width: Bytes per sample (1 for mu-law, 2 for PCM16)

    Returns:
        Duration in milliseconds
    """
    if not audio_bytes:
        return 0.0

    num_samples = len(audio_bytes) // sample_width
    return num_samples / sample_rate * 1000
