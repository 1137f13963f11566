"""One-shot long alignment of two recorded sources.

A long alignment records both sources simultaneously for a few seconds at a
fixed 16 kHz, decodes the recordings and cross-correlates them once. The
result is the offset of source B relative to source A in seconds. It is used
to bootstrap the continuous synchronizer and for manual re-anchoring.
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TYPE_CHECKING, Final

import numpy as np

from tonesync import wav
from tonesync.correlation import CrossCorrelator
from tonesync.errors import CorrelationFailure, DecodeError, InvalidInput
from tonesync.utils import create_task

if TYPE_CHECKING:
    from tonesync.sources import RecordingSource

logger = logging.getLogger(__name__)

ALIGNMENT_SAMPLE_RATE: Final[int] = 16_000
"""Sample rate of long-alignment recordings."""


class AlignmentPhase(Enum):
    """Lifecycle of one long alignment."""

    RECORDING = "recording"
    """Both sources are being recorded."""

    PROCESSING = "processing"
    """Recordings are being decoded and correlated."""

    READY = "ready"
    """The offset is available in the result."""

    FAILED = "failed"
    """Decoding or correlation failed; the result is NaN."""


@dataclass(slots=True)
class AlignmentState:
    """Progress and outcome of a long alignment.

    Attributes:
        phase: Current phase.
        duration: Requested recording duration in seconds.
        result: Offset of source B relative to source A in seconds, NaN if unset.
        artifacts: Raw recorded artifacts (A, B), kept for inspection/playback.
        correlation: Correlation trace of the final computation, if any.
        error: Description of the failure in the FAILED phase.
    """

    phase: AlignmentPhase
    duration: float
    result: float = math.nan
    artifacts: tuple[bytes | None, bytes | None] = (None, None)
    correlation: np.ndarray | None = field(default=None, repr=False)
    error: str | None = None

    @property
    def finished(self) -> bool:
        """True once the alignment reached READY or FAILED."""
        return self.phase in (AlignmentPhase.READY, AlignmentPhase.FAILED)

    @property
    def result_samples(self) -> float:
        """Result expressed in samples at the alignment sample rate."""
        return self.result * ALIGNMENT_SAMPLE_RATE

    @property
    def percent(self) -> int:
        """Coarse progress indicator for display."""
        if self.phase is AlignmentPhase.READY:
            return 100
        if self.phase is AlignmentPhase.PROCESSING:
            return 75
        return 0

    def describe(self) -> str:
        """Return a human-friendly description of the state."""
        if self.phase is AlignmentPhase.READY:
            return f"ready: {self.result:.5f}s"
        if self.phase is AlignmentPhase.FAILED:
            return f"failed: {self.error}" if self.error else "failed"
        return self.phase.value


ProgressCallback = Callable[[AlignmentState], None]


class LongAlignmentPipeline:
    """Records two sources and estimates their offset with one correlation.

    Decoding and correlation run in the default executor so the event loop
    keeps ticking. cancel() makes a running alignment stop at its next
    suspension point without reporting a result.
    """

    def __init__(
        self,
        correlator: CrossCorrelator | None = None,
        sample_rate: int = ALIGNMENT_SAMPLE_RATE,
    ) -> None:
        """Initialize the pipeline.

        Args:
            correlator: Correlator to use; a private one is created if omitted.
            sample_rate: Recording sample rate in Hz.
        """
        self._correlator = correlator or CrossCorrelator()
        self._sample_rate = sample_rate
        self._cancelled = False

    def cancel(self) -> None:
        """Request cancellation of the running alignment."""
        self._cancelled = True

    def _check_cancelled(self) -> None:
        if self._cancelled:
            logger.debug("Long alignment cancelled")
            raise asyncio.CancelledError

    async def run(
        self,
        duration: float,
        source_a: RecordingSource,
        source_b: RecordingSource,
        on_progress: ProgressCallback | None = None,
    ) -> AlignmentState:
        """Run one long alignment.

        Args:
            duration: Recording duration in seconds.
            source_a: Reference source (local audio).
            source_b: Source whose offset is measured (peer audio).
            on_progress: Called with a snapshot of the state on each phase change.

        Returns:
            The terminal state (READY or FAILED).

        Raises:
            asyncio.CancelledError: If cancel() was called or the task was cancelled.
        """
        self._cancelled = False
        state = AlignmentState(phase=AlignmentPhase.RECORDING, duration=duration)

        def report() -> None:
            if on_progress is not None:
                on_progress(replace(state))

        report()
        loop = asyncio.get_running_loop()

        recordings = [
            create_task(source_a.record(duration, self._sample_rate), name="tonesync-record-a"),
            create_task(source_b.record(duration, self._sample_rate), name="tonesync-record-b"),
        ]
        try:
            recorded = await asyncio.gather(*recordings)
        except Exception as err:
            logger.exception("Recording failed")
            # Close the other device stream before reporting the failure
            for task in recordings:
                task.cancel()
            await asyncio.gather(*recordings, return_exceptions=True)
            state.phase = AlignmentPhase.FAILED
            state.error = f"recording failed: {err}"
            report()
            return state
        self._check_cancelled()
        state.artifacts = (recorded[0], recorded[1])
        state.phase = AlignmentPhase.PROCESSING
        report()

        try:
            data_a, data_b = await loop.run_in_executor(
                None, _decode_pair, recorded[0], recorded[1]
            )
            self._check_cancelled()
            correlation = await loop.run_in_executor(
                None, self._correlator.correlate, data_a, data_b
            )
            self._check_cancelled()
        except (DecodeError, InvalidInput, CorrelationFailure) as err:
            logger.warning("Long alignment failed: %s", err)
            state.phase = AlignmentPhase.FAILED
            state.error = str(err)
            report()
            return state

        state.result = correlation.refined_peak / self._sample_rate
        state.correlation = correlation.trace
        state.phase = AlignmentPhase.READY
        logger.info(
            "Long alignment finished: %.5fs (%.2f samples, peak %.3f)",
            state.result,
            correlation.refined_peak,
            correlation.peak_magnitude,
        )
        report()
        return state


def _decode_pair(artifact_a: bytes, artifact_b: bytes) -> tuple[np.ndarray, np.ndarray]:
    """Decode both artifacts and truncate them to the shorter length."""
    data_a = wav.decode(artifact_a)
    data_b = wav.decode(artifact_b)
    n = min(data_a.shape[0], data_b.shape[0])
    if data_a.shape[0] != data_b.shape[0]:
        logger.debug("Truncating recordings to %d samples", n)
    return data_a[:n], data_b[:n]
