"""WAV assembly for synthesized PCM chunks."""

from __future__ import annotations

import io
import logging
import wave
from typing import Iterable

logger = logging.getLogger(__name__)

# Output format of the synthesis endpoint: mono, 16-bit, 24 kHz PCM
SAMPLE_RATE = 24000
CHANNELS = 1
SAMPLE_WIDTH = 2
WAV_HEADER_SIZE = 44


def align_pcm(buffer: bytes) -> bytes:
    """Pad an odd-length buffer with one zero byte to keep 16-bit alignment."""

    if len(buffer) % SAMPLE_WIDTH:
        logger.warning(
            "Padding %d-byte PCM buffer to keep 16-bit sample alignment",
            len(buffer),
        )
        return buffer + b"\x00"
    return buffer


def stitch_pcm(buffers: Iterable[bytes]) -> bytes:
    """Concatenate PCM buffers in the given order."""

    return b"".join(align_pcm(buffer) for buffer in buffers)


def pcm_to_wav(pcm: bytes, sample_rate: int = SAMPLE_RATE) -> bytes:
    """Wrap raw PCM samples in a standard 44-byte WAV header."""

    out = io.BytesIO()
    with wave.open(out, "wb") as wav:
        wav.setnchannels(CHANNELS)
        wav.setsampwidth(SAMPLE_WIDTH)
        wav.setframerate(sample_rate)
        wav.writeframes(align_pcm(pcm))
    return out.getvalue()


def assemble_wav(ordered_pcm_buffers: Iterable[bytes]) -> bytes:
    """Stitch ordered PCM buffers into one playable WAV file.

    Callers pass buffers in original chunk order; failed chunks are simply
    left out. An empty sequence produces a valid WAV with no sample data.
    """

    return pcm_to_wav(stitch_pcm(ordered_pcm_buffers))


__all__ = [
    "CHANNELS",
    "SAMPLE_RATE",
    "SAMPLE_WIDTH",
    "WAV_HEADER_SIZE",
    "align_pcm",
    "assemble_wav",
    "pcm_to_wav",
    "stitch_pcm",
]
