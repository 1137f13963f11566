"""Real-time peak tracking on live audio windows.

The tracker is the entry point for the live pipeline: it is fed the most
recent window of the local and the peer channel, correlates them, smooths the
correlation trace over successive calls and turns the smoothed peak into a
PeakReport for the synchronizer.
"""

from __future__ import annotations

import logging
import time
from typing import Final

import numpy as np

from tonesync.analysis import AnalysisResult, SignalAnalyzer
from tonesync.correlation import CrossCorrelator
from tonesync.synchronizer import PeakReport, PeakReportKind

logger = logging.getLogger(__name__)


class LiveCorrelationTracker:
    """Tracks the correlation peak between two live streams.

    Attributes:
        sample_rate: Sample rate of the analysed windows in Hz.
        peak_threshold: Fraction of the trace range a valid peak must reach.
        peak_width: Exclusion zone around the peak, in samples.
    """

    SMOOTHING_WEIGHT: Final[float] = 0.1
    """Weight of the newest trace in the exponential trace smoothing."""

    def __init__(
        self,
        sample_rate: float,
        *,
        peak_threshold: float = 0.8,
        peak_width_seconds: float = 0.003,
        correlator: CrossCorrelator | None = None,
    ) -> None:
        """Initialize the tracker.

        Args:
            sample_rate: Sample rate of the live windows in Hz.
            peak_threshold: Validity threshold passed to the analyzer.
            peak_width_seconds: Exclusion zone around the peak in seconds.
            correlator: Correlator to use; a private one is created if omitted.
        """
        self.sample_rate = sample_rate
        self.peak_threshold = peak_threshold
        self.peak_width = peak_width_seconds * sample_rate
        self._correlator = correlator or CrossCorrelator()
        self._analyzer = SignalAnalyzer()
        self._smoothed: np.ndarray | None = None
        self._last_analysis: AnalysisResult | None = None
        self.runs = 0

    @property
    def smoothed_trace(self) -> np.ndarray | None:
        """Smoothed correlation trace, None before the first window."""
        return self._smoothed

    @property
    def last_analysis(self) -> AnalysisResult | None:
        """Analysis of the most recent window."""
        return self._last_analysis

    def reset(self) -> None:
        """Forget the smoothed trace (e.g. after a stream change)."""
        self._smoothed = None

    def process(
        self,
        own: np.ndarray,
        peer: np.ndarray,
        applied_delay: float = 0.0,
        now: float | None = None,
    ) -> PeakReport:
        """Correlate one pair of windows and report the smoothed peak.

        Args:
            own: Latest window of the local channel.
            peer: Latest window of the peer channel, same length as own.
            applied_delay: Delay currently compensated by the caller's delay
                line, in seconds; the reported peak is relative to it.
            now: Detection time; defaults to the monotonic clock.

        Returns:
            A VALID or INVALID peak report.
        """
        correlation = self._correlator.correlate(own, peer)
        self.runs += 1

        trace = correlation.trace
        if self._smoothed is None or self._smoothed.shape != trace.shape:
            self._smoothed = trace.copy()
        else:
            self._smoothed *= 1.0 - self.SMOOTHING_WEIGHT
            self._smoothed += self.SMOOTHING_WEIGHT * trace

        n = self._smoothed.shape[0]
        peak_raw = int(np.argmax(np.abs(self._smoothed)))
        peak = peak_raw if peak_raw < n // 2 else peak_raw - n

        analysis = self._analyzer.analyse(
            self._smoothed, peak, self.peak_threshold, self.peak_width
        )
        self._last_analysis = analysis

        residual = peak - round(applied_delay * self.sample_rate)
        kind = PeakReportKind.VALID if analysis.is_valid_peak else PeakReportKind.INVALID
        return PeakReport(
            kind=kind,
            time=time.monotonic() if now is None else now,
            peak=float(residual),
            sample_rate=self.sample_rate,
        )
