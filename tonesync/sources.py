"""Recording sources for long alignments that do not need audio hardware.

A recording source returns a finished WAV artifact, so real devices, files
and synthetic buffers all go through the same decode path. The device-backed
source lives in tonesync.audio.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Protocol

import numpy as np

from tonesync import wav


class RecordingSource(Protocol):
    """Something a long alignment can record from."""

    async def record(self, duration: float, sample_rate: int) -> bytes:
        """Record mono audio for duration seconds and return a WAV artifact."""
        ...


class BufferSource:
    """Recording source backed by samples already in memory.

    Useful for offline alignment of existing recordings and for tests. The
    samples are returned as recorded; ``simulate_duration`` makes record()
    wait like a real device would.
    """

    def __init__(self, samples: np.ndarray, *, simulate_duration: bool = False) -> None:
        """Initialize the source.

        Args:
            samples: Float samples in [-1, 1] at the recording sample rate.
            simulate_duration: Sleep for the requested duration before returning.
        """
        self._samples = np.asarray(samples, dtype=np.float32)
        self._simulate_duration = simulate_duration

    async def record(self, duration: float, sample_rate: int) -> bytes:
        """Return the buffered samples as a WAV artifact."""
        if self._simulate_duration:
            await asyncio.sleep(duration)
        return wav.encode(self._samples, sample_rate)


class FileSource:
    """Recording source that replays an existing mono 16-bit WAV file."""

    def __init__(self, path: Path) -> None:
        """Initialize the source with the file to replay."""
        self._path = path

    async def record(self, duration: float, sample_rate: int) -> bytes:
        """Return the file contents unchanged."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._path.read_bytes)
