"""Tests for stitching PCM chunks into a WAV file."""

import io
import wave

from speechpool.services.audio import (
    SAMPLE_RATE,
    WAV_HEADER_SIZE,
    align_pcm,
    assemble_wav,
    stitch_pcm,
)


def _read_wav(data: bytes):
    with wave.open(io.BytesIO(data), "rb") as wav:
        return wav.getparams(), wav.readframes(wav.getnframes())


def test_assemble_wav_writes_mono_16bit_24khz_header():
    audio = assemble_wav([b"\x01\x00\x02\x00"])

    assert audio[:4] == b"RIFF"
    assert audio[8:12] == b"WAVE"
    assert len(audio) == WAV_HEADER_SIZE + 4

    params, frames = _read_wav(audio)
    assert params.nchannels == 1
    assert params.sampwidth == 2
    assert params.framerate == SAMPLE_RATE
    assert frames == b"\x01\x00\x02\x00"


def test_buffers_are_concatenated_in_given_order():
    audio = assemble_wav([b"AA", b"BB", b"CC"])

    _, frames = _read_wav(audio)
    assert frames == b"AABBCC"


def test_odd_length_buffer_is_padded_before_concatenation():
    assert align_pcm(b"\x01\x02\x03") == b"\x01\x02\x03\x00"
    assert stitch_pcm([b"\x01", b"\x02\x03"]) == b"\x01\x00\x02\x03"


def test_empty_input_produces_valid_empty_wav():
    audio = assemble_wav([])

    assert len(audio) == WAV_HEADER_SIZE
    params, frames = _read_wav(audio)
    assert params.nframes == 0
    assert frames == b""
