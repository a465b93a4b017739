"""
Provider audio to transport frames.

The writer runs three async-generator stages, each pulling from the previous:

    accumulate (1s units) -> convert (pcm16 -> float32, or passthrough) -> sink

The sink slices each converted unit into the transport's frame length and
awaits `call.push_audio(frame)` in order, so a slow transport holds back the
provider stream instead of buffering unboundedly.
"""

from __future__ import annotations

from typing import AsyncIterable, AsyncIterator, Callable, Iterable, Optional, Union

import structlog

from src.voicecall.audio import Frame, iter_frames, pcm16_bytes_to_float
from src.voicecall.calls.base import AudioSpec, Call

logger = structlog.get_logger(__name__)

AudioSource = Union[AsyncIterable[bytes], Iterable[bytes]]


class AudioPipelineError(Exception):
    """Raised when one utterance's audio could not be delivered."""
    pass


async def _aiter(source: AudioSource) -> AsyncIterator[bytes]:
    if hasattr(source, "__aiter__"):
        async for chunk in source:
            yield chunk
    else:
        for chunk in source:
            yield chunk


async def accumulate(
    source: AudioSource,
    min_unit_bytes: int,
    sample_width: int = 1,
) -> AsyncIterator[bytes]:
    """
    Re-chunk a byte stream into units of exactly `min_unit_bytes`.

    The remainder is flushed at the end, zero-padded to a whole sample.
    """
    if min_unit_bytes <= 0:
        raise ValueError("min_unit_bytes must be > 0")

    buffer = bytearray()
    async for chunk in _aiter(source):
        if not chunk:
            continue
        buffer.extend(chunk)
        while len(buffer) >= min_unit_bytes:
            yield bytes(buffer[:min_unit_bytes])
            del buffer[:min_unit_bytes]

    if buffer:
        remainder = len(buffer) % sample_width
        if remainder:
            buffer.extend(b"\x00" * (sample_width - remainder))
        yield bytes(buffer)


async def convert(units: AsyncIterable[bytes], spec: AudioSpec) -> AsyncIterator[Frame]:
    """pcm16 units become float32 samples; mu-law passes through untouched."""
    async for unit in units:
        if spec.encoding == "pcm_float":
            yield pcm16_bytes_to_float(unit)
        else:
            yield unit


class StreamingFrameWriter:
    """Writes one utterance's provider audio to a call as fixed-size frames."""

    def __init__(self, call: Call, spec: Optional[AudioSpec] = None):
        self.call = call
        self.spec = spec or call.audio_spec

    async def write(
        self,
        source: AudioSource,
        should_continue: Optional[Callable[[], bool]] = None,
    ) -> int:
        """
        Stream `source` to the call.

        Args:
            source: Raw provider audio (async or sync iterable of bytes)
            should_continue: Checked before every frame; returning False stops
                the utterance early

        Returns:
            Number of frames pushed

        Raises:
            AudioPipelineError: If any stage fails
        """
        units = accumulate(source, self.spec.min_unit_bytes, self.spec.sample_width)
        converted = convert(units, self.spec)
        frames_pushed = 0
        truncated = False

        try:
            async for unit in converted:
                for frame in iter_frames(unit, self.spec.frame_length):
                    if should_continue is not None and not should_continue():
                        truncated = True
                        break
                    await self.call.push_audio(frame)
                    frames_pushed += 1
                if truncated:
                    break
        except Exception as e:
            raise AudioPipelineError(
                f"Audio pipeline failed after {frames_pushed} frames: {e}"
            ) from e
        finally:
            await converted.aclose()
            await units.aclose()

        if truncated:
            logger.info("Playback truncated", frames_pushed=frames_pushed)
        else:
            logger.debug("Utterance streamed", frames_pushed=frames_pushed)
        return frames_pushed
