"""Normalized FFT cross-correlation with sub-sample peak refinement.

The correlator answers one question: by how many samples is signal B shifted
relative to signal A? It computes the circular cross-correlation of the two
signals through the frequency domain, normalizes it by the RMS amplitude of
both inputs and refines the position of the strongest peak with quadratic
interpolation.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Final

import numpy as np

from tonesync.errors import CorrelationFailure, InvalidInput
from tonesync.fft import FFTEngine

logger = logging.getLogger(__name__)

RMS_EPSILON: Final[float] = 1e-6
"""Substitute for a zero RMS amplitude (silent input)."""


@dataclass(frozen=True, slots=True)
class CorrelationResult:
    """Outcome of one cross-correlation.

    Attributes:
        trace: Normalized correlation values, one per lag (length N).
        peak_magnitude: Signed trace value at the strongest lag.
        peak_index: Strongest lag, wrapped into [-N/2, N/2).
        refined_peak: peak_index plus the sub-sample interpolation correction.
    """

    trace: np.ndarray
    peak_magnitude: float
    peak_index: int
    refined_peak: float

    @property
    def size(self) -> int:
        """Transform size N used for this result."""
        return int(self.trace.shape[0])


@dataclass(slots=True)
class _FFTCache:
    engine: FFTEngine
    padded_a: np.ndarray
    padded_b: np.ndarray


def rms(signal: np.ndarray) -> float:
    """Root-mean-square amplitude of a signal."""
    return float(np.sqrt(np.mean(np.square(signal, dtype=np.float64))))


def interpolate_peak(prev_value: float, peak_value: float, next_value: float) -> float:
    """Quadratic interpolation of a peak from three equally spaced samples.

    Returns the offset of the true maximum relative to the middle sample, in
    samples. A flat neighbourhood has no defined vertex and yields 0.0.
    """
    denominator = prev_value - 2.0 * peak_value + next_value
    if denominator == 0.0:
        return 0.0
    return 0.5 * (prev_value - next_value) / denominator


class CrossCorrelator:
    """Cross-correlates pairs of signals, reusing transforms across equal sizes.

    The FFT engine and padding buffers for the most recently used size are
    kept on the instance and replaced when the size changes. Calls are
    serialized with a lock, so one correlator may be shared by the event loop
    and executor threads even when they correlate signals of different sizes.
    """

    def __init__(self) -> None:
        """Initialize the correlator with an empty transform cache."""
        self._cache: _FFTCache | None = None
        self._lock = threading.Lock()

    def _cache_for(self, n: int) -> _FFTCache:
        if self._cache is None or self._cache.engine.size != n:
            logger.debug("Creating FFT engine for size %d", n)
            self._cache = _FFTCache(
                engine=FFTEngine(n),
                padded_a=np.zeros(n, dtype=np.float64),
                padded_b=np.zeros(n, dtype=np.float64),
            )
        return self._cache

    def correlate(
        self,
        signal_a: np.ndarray,
        signal_b: np.ndarray,
        pad_with_zeros: bool = True,
    ) -> CorrelationResult:
        """Cross-correlate two signals.

        A positive peak means signal A runs ahead of signal B by that many
        samples at the peak lag; the result for a B that lags A is negative.

        Args:
            signal_a: First signal.
            signal_b: Second signal.
            pad_with_zeros: Zero-extend both signals to twice the longer length
                so the circular correlation does not wrap. When False both
                signals must already have the same power-of-two length.

        Returns:
            The correlation trace and its refined peak.

        Raises:
            InvalidInput: On empty inputs, mismatched lengths without padding,
                or a transform size that is not a power of two.
            CorrelationFailure: If the normalized trace is not finite.
        """
        a = np.asarray(signal_a, dtype=np.float64).ravel()
        b = np.asarray(signal_b, dtype=np.float64).ravel()
        if a.size == 0 or b.size == 0:
            raise InvalidInput("Cannot correlate an empty signal")

        length = max(a.size, b.size)
        if pad_with_zeros:
            n = 2 * length
        elif a.size != b.size:
            raise InvalidInput(
                f"Signals must have the same length without padding ({a.size} != {b.size})"
            )
        else:
            n = a.size

        rms_a = rms(a) or RMS_EPSILON
        rms_b = rms(b) or RMS_EPSILON

        with self._lock:
            cache = self._cache_for(n)
            cache.padded_a[: a.size] = a
            cache.padded_a[a.size :] = 0.0
            cache.padded_b[: b.size] = b
            cache.padded_b[b.size :] = 0.0

            real_a, imag_a = cache.engine.forward(cache.padded_a)
            real_b, imag_b = cache.engine.forward(cache.padded_b)

            # spectrum of A times the complex conjugate of B
            cross_real = real_a * real_b + imag_a * imag_b
            cross_imag = real_b * imag_a - real_a * imag_b

            # inverse() yields the raw correlation sum per lag. Dividing by the
            # unpadded length rather than the FFT size keeps the zero-lag
            # autocorrelation at 1 whether or not the inputs were padded.
            with np.errstate(over="ignore", invalid="ignore", divide="ignore"):
                trace = cache.engine.inverse(cross_real, cross_imag) / (
                    rms_a * rms_b * length
                )

        if not np.all(np.isfinite(trace)):
            raise CorrelationFailure("Cross-correlation produced non-finite values")

        peak_raw = int(np.argmax(np.abs(trace)))
        correction = interpolate_peak(
            float(trace[peak_raw - 1]),  # index -1 wraps to the last lag
            float(trace[peak_raw]),
            float(trace[(peak_raw + 1) % n]),
        )
        peak_index = peak_raw if peak_raw < n // 2 else peak_raw - n

        return CorrelationResult(
            trace=trace,
            peak_magnitude=float(trace[peak_raw]),
            peak_index=peak_index,
            refined_peak=peak_index + correction,
        )
