"""Minimal 16-bit PCM container used for recorded alignment artifacts.

Recordings are exchanged as canonical mono RIFF/WAVE files: the ``data`` chunk
tag sits at byte 36, its byte length at byte 40 and the little-endian int16
samples start at byte 44.
"""

from __future__ import annotations

import io
import logging
import struct
import wave
from typing import Final

import numpy as np

from tonesync.errors import DecodeError

logger = logging.getLogger(__name__)

DATA_TAG: Final[bytes] = b"data"
DATA_TAG_OFFSET: Final[int] = 36
DATA_LENGTH_OFFSET: Final[int] = 40
HEADER_SIZE: Final[int] = 44
INT16_SCALE: Final[float] = 32767.0


def encode(samples: np.ndarray, sample_rate: int) -> bytes:
    """Encode float samples in [-1, 1] as a mono 16-bit WAV file.

    Args:
        samples: Float samples; values outside [-1, 1] are clipped.
        sample_rate: Sample rate written to the header.

    Returns:
        The complete file contents.
    """
    clipped = np.clip(np.asarray(samples, dtype=np.float64).ravel(), -1.0, 1.0)
    pcm = np.round(clipped * INT16_SCALE).astype("<i2")
    return encode_pcm(pcm.tobytes(), sample_rate)


def encode_pcm(pcm: bytes, sample_rate: int) -> bytes:
    """Wrap raw little-endian int16 mono PCM bytes in a WAV header."""
    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as writer:
        writer.setnchannels(1)
        writer.setsampwidth(2)
        writer.setframerate(sample_rate)
        writer.writeframes(pcm)
    return buffer.getvalue()


def decode(artifact: bytes) -> np.ndarray:
    """Decode a recorded artifact into float samples.

    Only the largest power-of-two number of samples present is returned, so
    the result can be fed straight into a power-of-two transform.

    Args:
        artifact: Complete container bytes.

    Returns:
        float32 samples, each ``int16 / 32767``.

    Raises:
        DecodeError: If the data tag is missing or no samples are present.
    """
    if len(artifact) < HEADER_SIZE:
        raise DecodeError(f"Recording too short for a WAV header ({len(artifact)} bytes)")
    if artifact[DATA_TAG_OFFSET : DATA_TAG_OFFSET + 4] != DATA_TAG:
        raise DecodeError("WAV data chunk identifier not found at byte 36")

    (data_length,) = struct.unpack_from("<I", artifact, DATA_LENGTH_OFFSET)
    available = min(data_length, len(artifact) - HEADER_SIZE) // 2
    if available < 1:
        raise DecodeError("Recording contains no samples")

    count = 1 << (available.bit_length() - 1)
    logger.debug(
        "Using %d samples out of %d (%.2f %%)",
        count,
        data_length // 2,
        100.0 * count / max(data_length // 2, 1),
    )
    pcm = np.frombuffer(artifact, dtype="<i2", count=count, offset=HEADER_SIZE)
    return (pcm / INT16_SCALE).astype(np.float32)
